"""
Clients for the router's live table of address-to-session bindings.

The router is an independently operated system. Every call carries a
timeout and failures surface as ``RouterUnreachable`` (retry later) or
``SyncConflict`` (the router refused, retrying will not help).
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

import httpx

from ..exceptions import RouterUnreachable, SyncConflict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouterTarget:
    """Connection details of a router, detached from the ORM session."""

    id: int
    name: str
    api_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_model(cls, router) -> "RouterTarget":
        return cls(
            id=router.id,
            name=router.name,
            api_url=router.api_url,
            username=router.username,
            password=router.password,
        )


@dataclass(frozen=True)
class RouterBinding:
    address: str
    session_id: Optional[str] = None


class RouterClient(Protocol):
    def pull_bindings(self, router: RouterTarget) -> List[RouterBinding]:
        ...

    def push_binding(self, router: RouterTarget, address: str, session_id: str) -> None:
        """Bind ``address`` to ``session_id``, dropping any other binding of that address."""
        ...

    def remove_binding(self, router: RouterTarget, address: str) -> None:
        ...


class InMemoryRouterClient:
    """
    Dictionary-backed router, used for development and tests.

    ``unreachable`` holds router ids that fail every call, and
    ``fail_next`` counts calls still to fail per router before succeeding.
    """

    def __init__(self):
        self.tables: Dict[int, Dict[str, Optional[str]]] = {}
        self.unreachable = set()
        self.fail_next: Dict[int, int] = {}
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def _check(self, router: RouterTarget, operation: str) -> None:
        self.calls.append((operation, router.id))
        if router.id in self.unreachable:
            raise RouterUnreachable(f"Router '{router.name}' is unreachable")
        remaining = self.fail_next.get(router.id, 0)
        if remaining > 0:
            self.fail_next[router.id] = remaining - 1
            raise RouterUnreachable(f"Router '{router.name}' timed out")

    def table(self, router_id: int) -> Dict[str, Optional[str]]:
        return self.tables.setdefault(router_id, {})

    def pull_bindings(self, router: RouterTarget) -> List[RouterBinding]:
        with self._lock:
            self._check(router, "pull")
            return [
                RouterBinding(address=address, session_id=session_id)
                for address, session_id in sorted(self.table(router.id).items())
            ]

    def push_binding(self, router: RouterTarget, address: str, session_id: str) -> None:
        with self._lock:
            self._check(router, "push")
            table = self.table(router.id)
            for bound_address, bound_session in list(table.items()):
                if bound_session == session_id and bound_address != address:
                    del table[bound_address]
            table[address] = session_id

    def remove_binding(self, router: RouterTarget, address: str) -> None:
        with self._lock:
            self._check(router, "remove")
            self.table(router.id).pop(address, None)


class RestRouterClient:
    """
    RouterOS-style REST client.

    A subscriber session is a PPP secret whose ``name`` is the session id;
    the bound address lives in its ``remote-address`` property.
    """

    SECRETS_PATH = "/rest/ppp/secret"

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None,
                 verify: bool = True):
        self.timeout = timeout
        self.transport = transport
        self.verify = verify

    def _client(self, router: RouterTarget) -> httpx.Client:
        if not router.api_url:
            raise SyncConflict(f"Router '{router.name}' has no API URL configured")
        auth = (router.username, router.password or "") if router.username else None
        return httpx.Client(
            base_url=router.api_url.rstrip("/"),
            auth=auth,
            timeout=self.timeout,
            transport=self.transport,
            verify=self.verify,
        )

    def _request(self, client: httpx.Client, router: RouterTarget, method: str, path: str, **kwargs):
        try:
            response = client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise RouterUnreachable(f"Router '{router.name}' unreachable: {e}") from e

        if response.status_code >= 500:
            raise RouterUnreachable(
                f"Router '{router.name}' answered {response.status_code} for {method} {path}"
            )
        if response.status_code >= 400:
            raise SyncConflict(
                f"Router '{router.name}' rejected {method} {path}: {response.status_code} {response.text}"
            )
        if not response.content:
            return None
        return response.json()

    def _secrets(self, client, router: RouterTarget, **params) -> list:
        return self._request(client, router, "GET", self.SECRETS_PATH, params=params or None) or []

    def _unset_address(self, client, router: RouterTarget, secret_id: str) -> None:
        self._request(
            client, router, "POST", f"{self.SECRETS_PATH}/unset",
            json={"numbers": secret_id, "value-name": "remote-address"},
        )

    def pull_bindings(self, router: RouterTarget) -> List[RouterBinding]:
        with self._client(router) as client:
            secrets = self._secrets(client, router)
        if not isinstance(secrets, list):
            raise SyncConflict(
                f"Router '{router.name}' returned {type(secrets).__name__} instead of a secret list"
            )

        bindings = []
        for secret in secrets:
            if not isinstance(secret, dict):
                logger.warning("Router %s: ignoring malformed secret entry %r", router.name, secret)
                continue
            address = secret.get("remote-address")
            if address:
                bindings.append(RouterBinding(address=address, session_id=secret.get("name")))
        logger.debug("Pulled %d bindings from router %s", len(bindings), router.name)
        return bindings

    def push_binding(self, router: RouterTarget, address: str, session_id: str) -> None:
        with self._client(router) as client:
            matches = self._secrets(client, router, name=session_id)
            if not matches:
                raise SyncConflict(
                    f"Session '{session_id}' has no PPP secret on router '{router.name}'"
                )

            for holder in self._secrets(client, router, **{"remote-address": address}):
                if holder.get("name") != session_id:
                    self._unset_address(client, router, holder[".id"])

            self._request(
                client, router, "PATCH", f"{self.SECRETS_PATH}/{matches[0]['.id']}",
                json={"remote-address": address},
            )
        logger.info("Router %s: bound %s to %s", router.name, address, session_id)

    def remove_binding(self, router: RouterTarget, address: str) -> None:
        with self._client(router) as client:
            for holder in self._secrets(client, router, **{"remote-address": address}):
                self._unset_address(client, router, holder[".id"])
        logger.info("Router %s: removed binding of %s", router.name, address)
