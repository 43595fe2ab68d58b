"""Lookups against the subscriber-management system."""
import logging
from typing import Iterable, Optional, Protocol

import httpx

from ..exceptions import SessionLookupFailed

logger = logging.getLogger(__name__)


class SessionDirectory(Protocol):
    def session_exists(self, session_id: str) -> bool:
        ...


class StaticSessionDirectory:
    """
    In-memory directory.

    Built without a set of known sessions it is permissive and reports
    every session as existing, so nothing is ever treated as orphaned.
    """

    def __init__(self, known: Optional[Iterable[str]] = None):
        self.known = set(known) if known is not None else None

    def add(self, session_id: str) -> None:
        if self.known is None:
            self.known = set()
        self.known.add(session_id)

    def discard(self, session_id: str) -> None:
        if self.known is not None:
            self.known.discard(session_id)

    def session_exists(self, session_id: str) -> bool:
        if self.known is None:
            return True
        return session_id in self.known


class HttpSessionDirectory:
    """Asks the subscriber API whether ``GET {base_url}/sessions/{id}`` exists."""

    def __init__(self, base_url: str, timeout: float = 5.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def session_exists(self, session_id: str) -> bool:
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.get(f"/sessions/{session_id}")
        except httpx.TransportError as e:
            raise SessionLookupFailed(f"Session lookup for '{session_id}' failed: {e}") from e

        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise SessionLookupFailed(
                f"Session lookup for '{session_id}' answered {response.status_code}"
            )
        return True
