import ipaddress
import logging
from concurrent.futures import Executor, Future
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..events import (
    ADDRESS_ASSIGNED,
    ADDRESS_RELEASED,
    ADDRESS_UPDATED,
    POOL_EXHAUSTED,
    SESSION_MOVED,
    EventBus,
)
from ..exceptions import (
    AddressNotAvailable,
    AddressNotFound,
    PoolEngineError,
    PoolExhausted,
    PoolInactive,
    PoolNotFound,
    SessionAlreadyAssigned,
)
from ..models import AddressRecord, AddressStatus, Pool
from .pool_registry import PoolRegistryService
from .reconciler import RouterReconciler

logger = logging.getLogger(__name__)

# A lost race on the conditional claim just means another request took the
# row first; pick the next candidate a bounded number of times.
MAX_CLAIM_ATTEMPTS = 8


def _log_push_outcome(future: Future) -> None:
    error = future.exception()
    if error is not None:
        logger.error("Background router push crashed: %r", error)


class AssignmentEngine:
    """
    Binds and unbinds addresses to subscriber sessions.

    Allocation rules:
    - Without a requested address the lowest free address of the pool wins
    - Selection and claim happen in one transaction, the claim being a
      conditional UPDATE that only succeeds while the row is still available
    - A session owns at most one address in the whole store
    - Router pushes run on the executor after commit and never fail the call
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        event_bus: EventBus,
        reconciler: RouterReconciler,
        executor: Executor,
    ):
        self.session_factory = session_factory
        self.event_bus = event_bus
        self.reconciler = reconciler
        self.executor = executor

    @staticmethod
    def _owned_record(db: Session, session_id: str, lock: bool = False) -> Optional[AddressRecord]:
        stmt = select(AddressRecord).where(AddressRecord.owner_session_id == session_id)
        if lock:
            stmt = stmt.with_for_update()
        return db.execute(stmt).scalar_one_or_none()

    def get_session_address(self, session_id: str) -> Optional[AddressRecord]:
        with self.session_factory() as db:
            return self._owned_record(db, session_id)

    def _claim(self, db: Session, pool: Pool, session_id: str,
               requested_address: Optional[str]) -> AddressRecord:
        for _ in range(MAX_CLAIM_ATTEMPTS):
            stmt = select(AddressRecord.id).where(
                AddressRecord.pool_id == pool.id,
                AddressRecord.status == AddressStatus.AVAILABLE,
            )
            if requested_address is not None:
                stmt = stmt.where(AddressRecord.address == requested_address)
            stmt = stmt.order_by(AddressRecord.address_int).limit(1).with_for_update(skip_locked=True)

            candidate_id = db.execute(stmt).scalar_one_or_none()
            if candidate_id is None:
                break

            now = datetime.now(timezone.utc)
            result = db.execute(
                update(AddressRecord)
                .where(
                    AddressRecord.id == candidate_id,
                    AddressRecord.status == AddressStatus.AVAILABLE,
                )
                .values(
                    status=AddressStatus.ASSIGNED,
                    owner_session_id=session_id,
                    needs_sync=True,
                    sync_attempts=0,
                    sync_flagged_at=now,
                    last_modified=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return db.execute(
                    select(AddressRecord)
                    .where(AddressRecord.id == candidate_id)
                    .execution_options(populate_existing=True)
                ).scalar_one()
            logger.debug("Lost claim race on address id %s, retrying", candidate_id)

        if requested_address is not None:
            raise AddressNotAvailable(
                f"Address {requested_address} is not available in pool '{pool.name}'"
            )
        raise PoolExhausted(f"Pool '{pool.name}' has no available addresses")

    @staticmethod
    def _normalize_requested(requested_address: Optional[str]) -> Optional[str]:
        if requested_address is None:
            return None
        try:
            return str(ipaddress.IPv4Address(requested_address))
        except ValueError:
            raise AddressNotAvailable(f"'{requested_address}' is not a valid IPv4 address")

    @staticmethod
    def _active_pool(db: Session, pool_id: int) -> Pool:
        pool = db.get(Pool, pool_id)
        if not pool:
            raise PoolNotFound(f"Pool {pool_id} not found")
        if not pool.active:
            raise PoolInactive(f"Pool '{pool.name}' is not active")
        return pool

    def assign(self, session_id: str, pool_id: int,
               requested_address: Optional[str] = None) -> AddressRecord:
        requested_address = self._normalize_requested(requested_address)

        try:
            with self.session_factory() as db, db.begin():
                pool = self._active_pool(db, pool_id)

                existing = self._owned_record(db, session_id)
                if existing is not None:
                    raise SessionAlreadyAssigned(
                        f"Session '{session_id}' already holds {existing.address}; release it first"
                    )

                record = self._claim(db, pool, session_id, requested_address)
        except PoolExhausted:
            logger.warning("Pool %s exhausted (session %s)", pool_id, session_id)
            self.event_bus.emit(POOL_EXHAUSTED, pool_id=pool_id, session_id=session_id)
            raise
        except IntegrityError:
            raise SessionAlreadyAssigned(f"Session '{session_id}' already holds an address")

        logger.info("Assigned %s to session %s (pool %s)", record.address, session_id, pool_id)
        self._schedule_push(record.id)
        self.event_bus.emit(
            ADDRESS_ASSIGNED,
            address=record.address,
            pool_id=record.pool_id,
            session_id=session_id,
        )
        return record

    @staticmethod
    def _release_locked(record: AddressRecord, comment: Optional[str] = None,
                        status: str = AddressStatus.AVAILABLE) -> str:
        now = datetime.now(timezone.utc)
        previous_owner = record.owner_session_id
        record.status = status
        record.owner_session_id = None
        record.needs_sync = True
        record.sync_attempts = 0
        record.sync_flagged_at = now
        if comment is not None:
            record.comment = comment
        return previous_owner

    def release(self, session_id: str) -> Optional[AddressRecord]:
        """Return the session's address to the pool. Unknown sessions are a no-op."""
        with self.session_factory() as db, db.begin():
            record = self._owned_record(db, session_id, lock=True)
            if record is None:
                logger.debug("Release of session %s: nothing assigned", session_id)
                return None
            self._release_locked(record)

        self._after_release(record, session_id)
        return record

    def release_record(self, address_id: int, expected_owner: Optional[str],
                       comment: Optional[str] = None) -> Optional[AddressRecord]:
        """
        Release a specific record if it still belongs to ``expected_owner``.

        Used by maintenance jobs working from a snapshot; a row that moved on
        since the snapshot is left alone. A reserved or blocked row that
        still carries an owner only loses the owner and keeps its status.
        """
        with self.session_factory() as db, db.begin():
            record = db.execute(
                select(AddressRecord).where(AddressRecord.id == address_id).with_for_update()
            ).scalar_one_or_none()
            if record is None or record.owner_session_id != expected_owner:
                return None
            if record.status == AddressStatus.ASSIGNED:
                self._release_locked(record, comment)
            elif record.owner_session_id is None:
                return None
            else:
                self._release_locked(record, comment, status=record.status)

        self._after_release(record, expected_owner)
        return record

    def _after_release(self, record: AddressRecord, session_id: Optional[str]) -> None:
        logger.info("Released %s from session %s", record.address, session_id)
        self._schedule_push(record.id)
        self.event_bus.emit(
            ADDRESS_RELEASED,
            address=record.address,
            pool_id=record.pool_id,
            session_id=session_id,
        )

    def _move(self, session_id: str, target_pool_id: int,
              requested_address: Optional[str]) -> Tuple[AddressRecord, bool]:
        requested_address = self._normalize_requested(requested_address)

        try:
            with self.session_factory() as db, db.begin():
                current = self._owned_record(db, session_id, lock=True)
                if current is None:
                    raise AddressNotFound(f"Session '{session_id}' holds no address")
                pool = self._active_pool(db, target_pool_id)

                if current.pool_id == pool.id:
                    if requested_address is None or requested_address == current.address:
                        return current, False
                else:
                    capacity = PoolRegistryService.check_pool_capacity(db, pool.id)
                    if not capacity["has_capacity"]:
                        raise PoolExhausted(
                            f"Pool '{pool.name}' has no room for moves "
                            f"({capacity['available']} free, {capacity['utilization']:.0%} used)"
                        )

                previous_id = current.id
                previous_address = current.address
                previous_pool_id = current.pool_id
                self._release_locked(current, comment=f"Session {session_id} moved to pool '{pool.name}'")
                # The owner column is unique; clear it before the claim sets it again
                db.flush()
                record = self._claim(db, pool, session_id, requested_address)
        except PoolExhausted:
            logger.warning("Pool %s exhausted moving session %s", target_pool_id, session_id)
            self.event_bus.emit(POOL_EXHAUSTED, pool_id=target_pool_id, session_id=session_id)
            raise
        except IntegrityError:
            raise SessionAlreadyAssigned(f"Session '{session_id}' already holds an address")

        logger.info("Moved session %s from %s to %s (pool %s)",
                    session_id, previous_address, record.address, record.pool_id)
        self._schedule_push(previous_id, record.id)
        self.event_bus.emit(
            SESSION_MOVED,
            address=record.address,
            pool_id=record.pool_id,
            session_id=session_id,
            from_address=previous_address,
            from_pool_id=previous_pool_id,
        )
        return record, True

    def move_session(self, session_id: str, target_pool_id: int,
                     requested_address: Optional[str] = None) -> AddressRecord:
        """
        Move a session's address into another pool in one transaction.

        The old address is freed and a new one claimed together, so the
        session never holds two addresses and keeps its old one if the claim
        fails. A session already in the target pool is returned unchanged.
        """
        record, _ = self._move(session_id, target_pool_id, requested_address)
        return record

    def bulk_move_sessions(self, session_ids: List[str], target_pool_id: int) -> Dict[str, list]:
        """Move each session on its own; one failure does not stop the rest."""
        result: Dict[str, list] = {"moved": [], "unchanged": [], "failed": []}
        for session_id in session_ids:
            try:
                record, moved = self._move(session_id, target_pool_id, None)
            except PoolEngineError as e:
                result["failed"].append({"session_id": session_id, "error": e.message})
                continue
            entry = {"session_id": session_id, "address": record.address}
            result["moved" if moved else "unchanged"].append(entry)

        logger.info(
            "Bulk move into pool %s: moved=%d unchanged=%d failed=%d",
            target_pool_id, len(result["moved"]), len(result["unchanged"]), len(result["failed"]),
        )
        return result

    def update_address(self, address_id: int, status: Optional[str] = None,
                       comment: Optional[str] = None) -> AddressRecord:
        """Operator edit of status (available/reserved/blocked) and comment."""
        if status == AddressStatus.ASSIGNED:
            raise AddressNotAvailable("Addresses become assigned only through an assignment")

        with self.session_factory() as db, db.begin():
            record = db.execute(
                select(AddressRecord).where(AddressRecord.id == address_id).with_for_update()
            ).scalar_one_or_none()
            if record is None:
                raise AddressNotFound(f"Address {address_id} not found")

            if status is not None and status != record.status:
                if record.status == AddressStatus.ASSIGNED:
                    raise AddressNotAvailable(
                        f"{record.address} is assigned to {record.owner_session_id}; release it first"
                    )
                record.status = status
            if comment is not None:
                record.comment = comment

        self.event_bus.emit(
            ADDRESS_UPDATED,
            address=record.address,
            pool_id=record.pool_id,
            status=record.status,
            comment=record.comment,
        )
        return record

    def _push_in_order(self, address_ids: Tuple[int, ...]) -> bool:
        results = [self.reconciler.push_record(address_id) for address_id in address_ids]
        return all(results)

    def _schedule_push(self, *address_ids: int) -> None:
        """Push records to the router one after another on a single worker."""
        try:
            if len(address_ids) == 1:
                future = self.executor.submit(self.reconciler.push_record, address_ids[0])
            else:
                future = self.executor.submit(self._push_in_order, address_ids)
        except RuntimeError as e:
            # Executor already shut down; the records stay flagged for the next sync
            logger.warning("Could not schedule router push for addresses %s: %s", address_ids, e)
            return
        future.add_done_callback(_log_push_outcome)
