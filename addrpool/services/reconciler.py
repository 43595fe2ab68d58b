"""
Router reconciliation.

The store is authoritative for ownership intent, the router for what is
actually configured on the network. Differences are pushed from the store
when the router simply lacks a binding, adopted from the router when the
store has never heard of it, and reported as conflicts when both sides hold
a different owner. An unreachable router is a transient fault and never a
reason to release or delete anything.
"""
import ipaddress
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings
from ..events import ADDRESS_ASSIGNED, SYNC_CONFLICT, EventBus
from ..exceptions import RouterNotFound, RouterUnreachable, SessionLookupFailed, SyncConflict
from ..models import AddressRecord, AddressStatus, Pool, Router
from .pool_registry import PoolRegistryService
from .router_client import RouterBinding, RouterClient, RouterTarget
from .sessions import SessionDirectory

logger = logging.getLogger(__name__)

# A record that keeps changing underneath its push is left flagged after this
MAX_PUSH_ROUNDS = 5


@dataclass
class SyncDetail:
    kind: str
    message: str
    address: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class SyncReport:
    router_id: int
    reachable: bool = True
    pushed: int = 0
    pulled: int = 0
    removed: int = 0
    conflicts: int = 0
    failed: int = 0
    detail: List[SyncDetail] = field(default_factory=list)

    def note(self, kind: str, message: str, address: Optional[str] = None,
             session_id: Optional[str] = None) -> None:
        self.detail.append(SyncDetail(kind=kind, message=message, address=address, session_id=session_id))


@dataclass(frozen=True)
class _RecordState:
    id: int
    pool_id: int
    address: str
    status: str
    owner_session_id: Optional[str]
    needs_sync: bool


def _locked_record(db: Session, **criteria) -> Optional[AddressRecord]:
    stmt = select(AddressRecord).filter_by(**criteria).with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def normalize_address(value) -> Optional[str]:
    """Dotted-quad form of a router-supplied address, or None if it is not one."""
    try:
        return str(ipaddress.IPv4Address(str(value).strip()))
    except ValueError:
        return None


class RouterReconciler:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        router_client: RouterClient,
        session_directory: SessionDirectory,
        event_bus: EventBus,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.router_client = router_client
        self.session_directory = session_directory
        self.event_bus = event_bus
        self.sleep = sleep
        self._address_locks: Dict[int, threading.RLock] = {}
        self._address_locks_guard = threading.Lock()

    def _address_lock(self, address_id: int) -> threading.RLock:
        """Router calls for one record never interleave."""
        with self._address_locks_guard:
            lock = self._address_locks.get(address_id)
            if lock is None:
                lock = self._address_locks[address_id] = threading.RLock()
            return lock

    def _call_with_retry(self, call: Callable, attempts: Optional[int] = None):
        """Run a router call, retrying RouterUnreachable with exponential backoff."""
        attempts = max(1, attempts or self.settings.router_retry_attempts)
        backoff = self.settings.router_retry_backoff_seconds
        for attempt in range(attempts):
            try:
                return call()
            except RouterUnreachable as e:
                if attempt == attempts - 1:
                    raise
                delay = backoff * (2 ** attempt)
                logger.warning(
                    "Router call failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt + 1, attempts, delay, e,
                )
                if delay > 0:
                    self.sleep(delay)

    def push_record(self, address_id: int, attempts: Optional[int] = None) -> bool:
        """
        Bring the router in line with one record.

        Assigned records are pushed as bindings, anything else has its
        binding removed. If the record changes while the call is in flight
        the new state is pushed in turn. Returns True when the record no
        longer needs sync.
        """
        with self._address_lock(address_id):
            for _ in range(MAX_PUSH_ROUNDS):
                with self.session_factory() as db:
                    record = db.get(AddressRecord, address_id)
                    if record is None:
                        return True
                    if not record.needs_sync:
                        return True
                    state = _RecordState(
                        id=record.id,
                        pool_id=record.pool_id,
                        address=record.address,
                        status=record.status,
                        owner_session_id=record.owner_session_id,
                        needs_sync=record.needs_sync,
                    )
                    target = RouterTarget.from_model(record.pool.router)

                try:
                    if state.status == AddressStatus.ASSIGNED:
                        self._call_with_retry(
                            lambda: self.router_client.push_binding(target, state.address, state.owner_session_id),
                            attempts,
                        )
                    else:
                        self._call_with_retry(
                            lambda: self.router_client.remove_binding(target, state.address),
                            attempts,
                        )
                except (RouterUnreachable, SyncConflict) as e:
                    logger.warning("Router sync of %s failed: %s", state.address, e)
                    self._flag_failed(state, str(e))
                    return False

                if self._mark_synced(state):
                    return True
                logger.info("Record %s changed during router push, pushing again", state.address)

        logger.warning("Record %d kept changing during router push, left flagged", address_id)
        return False

    def _mark_synced(self, state: _RecordState) -> bool:
        """
        Clear the sync flag if the row still holds what was sent to the router.

        A row that moved on keeps (or regains) its flag and False is returned.
        """
        with self.session_factory() as db, db.begin():
            record = _locked_record(db, id=state.id)
            if record is None:
                return True
            if record.status == state.status and record.owner_session_id == state.owner_session_id:
                record.needs_sync = False
                record.sync_attempts = 0
                record.sync_flagged_at = None
                return True
            record.needs_sync = True
            if record.sync_flagged_at is None:
                record.sync_flagged_at = datetime.now(timezone.utc)
            return False

    def _settle(self, state: _RecordState) -> bool:
        """Mark a record synced, or push it again if it changed meanwhile."""
        if self._mark_synced(state):
            return True
        return self.push_record(state.id)

    def _flag_failed(self, state: _RecordState, reason: str) -> None:
        now = datetime.now(timezone.utc)
        with self.session_factory() as db, db.begin():
            record = _locked_record(db, id=state.id)
            if record is not None:
                record.needs_sync = True
                record.sync_attempts = (record.sync_attempts or 0) + 1
                if record.sync_flagged_at is None:
                    record.sync_flagged_at = now
            db.execute(
                update(Pool)
                .where(Pool.id == state.pool_id)
                .values(degraded=True, degraded_reason=f"Router push failed for {state.address}: {reason}")
            )

    def _set_degraded(self, pool_ids: List[int], reason: Optional[str]) -> None:
        if not pool_ids:
            return
        with self.session_factory() as db, db.begin():
            db.execute(
                update(Pool)
                .where(Pool.id.in_(pool_ids))
                .values(degraded=reason is not None, degraded_reason=reason)
            )

    def _session_is_known(self, session_id: str) -> bool:
        try:
            return self.session_directory.session_exists(session_id)
        except SessionLookupFailed as e:
            logger.warning("Could not resolve session %s: %s", session_id, e)
            return False

    def sync_with_router(self, router_id: int) -> SyncReport:
        report = SyncReport(router_id=router_id)

        with self.session_factory() as db:
            router = db.get(Router, router_id)
            if not router:
                raise RouterNotFound(f"Router {router_id} not found")
            target = RouterTarget.from_model(router)
            pools = list(router.pools)
        pool_ids = [pool.id for pool in pools]

        logger.info("Syncing router %s (%d pools)", target.name, len(pool_ids))
        try:
            bindings = self._call_with_retry(lambda: self.router_client.pull_bindings(target))
        except (RouterUnreachable, SyncConflict) as e:
            logger.error("Router %s unreachable, nothing changed: %s", target.name, e)
            report.reachable = False
            report.note("unreachable", str(e))
            self._set_degraded(pool_ids, f"Router unreachable during sync: {e}")
            return report

        # One consistent snapshot of the store for this router's pools
        with self.session_factory() as db, db.begin():
            rows = db.execute(
                select(AddressRecord).where(AddressRecord.pool_id.in_(pool_ids))
            ).scalars().all() if pool_ids else []
            snapshot: Dict[str, _RecordState] = {
                row.address: _RecordState(
                    id=row.id,
                    pool_id=row.pool_id,
                    address=row.address,
                    status=row.status,
                    owner_session_id=row.owner_session_id,
                    needs_sync=row.needs_sync,
                )
                for row in rows
            }

        router_table: Dict[str, RouterBinding] = {}
        for binding in bindings:
            address = normalize_address(binding.address)
            if address is None:
                message = f"router {target.name} binds unparseable address {binding.address!r}"
                logger.warning("Skipping binding: %s", message)
                report.conflicts += 1
                report.note("invalid_binding", message, str(binding.address), binding.session_id)
                continue
            router_table[address] = RouterBinding(address=address, session_id=binding.session_id)

        conflicting_pools = set()
        failed_pools = set()

        for address, state in snapshot.items():
            binding = router_table.get(address)
            if state.status == AddressStatus.ASSIGNED:
                if binding is None or (binding.session_id is None and state.needs_sync):
                    if self._push(target, state, report):
                        report.pushed += 1
                    else:
                        failed_pools.add(state.pool_id)
                elif binding.session_id is None:
                    continue
                elif binding.session_id != state.owner_session_id:
                    self._report_conflict(
                        report, address, state.owner_session_id,
                        f"store assigns {address} to {state.owner_session_id}, "
                        f"router binds it to {binding.session_id}",
                        pool_id=state.pool_id,
                        router_session_id=binding.session_id,
                    )
                    conflicting_pools.add(state.pool_id)
                elif state.needs_sync:
                    self._settle(state)
            elif state.needs_sync:
                if binding is None:
                    self._settle(state)
                elif self._remove(target, state, report):
                    report.removed += 1
                else:
                    failed_pools.add(state.pool_id)

        for address, binding in router_table.items():
            state = snapshot.get(address)
            if state is not None and (state.status != AddressStatus.AVAILABLE or state.needs_sync):
                continue
            pool = PoolRegistryService.pool_for_address(pools, address)
            if pool is None:
                self._report_conflict(
                    report, address, binding.session_id,
                    f"router binds {address} outside every pool of router {target.name}",
                    router_id=target.id,
                )
                continue
            if self._adopt(pool.id, binding, report):
                report.pulled += 1

        now = datetime.now(timezone.utc)
        with self.session_factory() as db, db.begin():
            db.execute(update(Router).where(Router.id == target.id).values(last_sync_at=now))
            if pool_ids:
                db.execute(update(Pool).where(Pool.id.in_(pool_ids)).values(last_sync_at=now))

        healthy = [pid for pid in pool_ids if pid not in failed_pools and pid not in conflicting_pools]
        self._set_degraded(healthy, None)
        if conflicting_pools:
            self._set_degraded(sorted(conflicting_pools), "Router binding conflicts need operator review")
        if failed_pools:
            self._set_degraded(sorted(failed_pools), "Router pushes failed during sync")

        logger.info(
            "Router %s synced: pushed=%d pulled=%d removed=%d conflicts=%d failed=%d",
            target.name, report.pushed, report.pulled, report.removed, report.conflicts, report.failed,
        )
        return report

    def sync_all(self) -> List[SyncReport]:
        with self.session_factory() as db:
            router_ids = db.execute(
                select(Router.id).where(Router.active.is_(True)).order_by(Router.id)
            ).scalars().all()
        return [self.sync_with_router(router_id) for router_id in router_ids]

    def _push(self, target: RouterTarget, state: _RecordState, report: SyncReport) -> bool:
        with self._address_lock(state.id):
            try:
                self._call_with_retry(
                    lambda: self.router_client.push_binding(target, state.address, state.owner_session_id)
                )
            except (RouterUnreachable, SyncConflict) as e:
                report.failed += 1
                report.note("push_failed", str(e), state.address, state.owner_session_id)
                self._flag_failed(state, str(e))
                return False
            return self._settle(state)

    def _remove(self, target: RouterTarget, state: _RecordState, report: SyncReport) -> bool:
        with self._address_lock(state.id):
            try:
                self._call_with_retry(lambda: self.router_client.remove_binding(target, state.address))
            except (RouterUnreachable, SyncConflict) as e:
                report.failed += 1
                report.note("remove_failed", str(e), state.address)
                self._flag_failed(state, str(e))
                return False
            return self._settle(state)

    def _report_conflict(self, report: SyncReport, address: str, session_id: Optional[str],
                         message: str, **extra) -> None:
        logger.warning("Sync conflict: %s", message)
        report.conflicts += 1
        report.note("conflict", message, address, session_id)
        self.event_bus.emit(SYNC_CONFLICT, address=address, session_id=session_id, message=message, **extra)

    def _adopt(self, pool_id: int, binding: RouterBinding, report: SyncReport) -> bool:
        """
        Import a router binding the store does not know about.

        The binding becomes an assignment when its session resolves and owns
        nothing else; otherwise the address is reserved with a comment.
        """
        address = str(ipaddress.IPv4Address(binding.address))
        session_id = binding.session_id
        owner = None
        reason = None
        held = None

        if not session_id:
            reason = "router exposes no session"
        elif not self._session_is_known(session_id):
            reason = f"session {session_id} not found"

        try:
            with self.session_factory() as db, db.begin():
                record = _locked_record(db, address=address)
                if record is not None and (record.status != AddressStatus.AVAILABLE or record.needs_sync):
                    return False

                if reason is None:
                    held = db.execute(
                        select(AddressRecord.address).where(AddressRecord.owner_session_id == session_id)
                    ).scalar_one_or_none()
                    if held is not None:
                        reason = f"session {session_id} already holds {held}"
                    else:
                        owner = session_id

                if record is None:
                    record = AddressRecord(
                        pool_id=pool_id,
                        address=address,
                        address_int=int(ipaddress.IPv4Address(address)),
                    )
                    db.add(record)

                if owner:
                    record.status = AddressStatus.ASSIGNED
                    record.owner_session_id = owner
                    record.comment = "Imported from router binding"
                else:
                    record.status = AddressStatus.RESERVED
                    record.owner_session_id = None
                    record.comment = f"Unresolved external binding: {reason}"
                record.needs_sync = False
                record.sync_attempts = 0
                record.sync_flagged_at = None
        except IntegrityError as e:
            logger.warning("Could not adopt router binding %s: %s", address, e)
            report.note("adopt_failed", str(e.orig), address, session_id)
            return False

        if owner:
            report.note("adopted", f"{address} imported as assigned to {owner}", address, owner)
            self.event_bus.emit(ADDRESS_ASSIGNED, address=address, pool_id=pool_id,
                                session_id=owner, source="router")
        else:
            report.note("reserved", f"{address} reserved: {reason}", address, session_id)
            if held is not None:
                self._report_conflict(report, address, session_id, reason, pool_id=pool_id)
        return True
