"""
Batch consistency checks over every pool.

Non-destructive fixes (releases, re-pushes) are applied straight away since
they are always safe to redo. Each pass reads one transaction-scoped
snapshot and then re-checks every row under lock before touching it.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import sessionmaker

from ..config import Settings
from ..exceptions import SessionLookupFailed
from ..models import AddressRecord, AddressStatus
from .assignment import AssignmentEngine
from .reconciler import RouterReconciler
from .sessions import SessionDirectory

logger = logging.getLogger(__name__)

ORPHANED_OWNER = "orphaned_owner"
DUPLICATE_OWNER = "duplicate_owner"
OWNER_MISMATCH = "owner_mismatch"
STALE_SYNC = "stale_sync"


@dataclass
class Anomaly:
    kind: str
    address: str
    session_id: Optional[str]
    action: str
    fixed: bool


@dataclass
class VerificationReport:
    detail: List[Anomaly] = field(default_factory=list)

    @property
    def anomalies_found(self) -> int:
        return len(self.detail)

    @property
    def anomalies_fixed(self) -> int:
        return sum(1 for anomaly in self.detail if anomaly.fixed)

    def add(self, kind: str, address: str, session_id: Optional[str], action: str, fixed: bool) -> None:
        self.detail.append(Anomaly(kind=kind, address=address, session_id=session_id, action=action, fixed=fixed))


def pick_survivor(records: List[AddressRecord]) -> AddressRecord:
    """Of several records bound to one session keep an assigned one, the most recently modified."""
    epoch = datetime.min

    def sort_key(record):
        modified = record.last_modified
        if modified is not None and modified.tzinfo is not None:
            modified = modified.replace(tzinfo=None)
        return (record.status == AddressStatus.ASSIGNED, modified or epoch, record.id)

    return max(records, key=sort_key)


class ConsistencyVerifier:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        engine: AssignmentEngine,
        reconciler: RouterReconciler,
        session_directory: SessionDirectory,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.engine = engine
        self.reconciler = reconciler
        self.session_directory = session_directory

    def verify_assignments(self) -> VerificationReport:
        report = VerificationReport()
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.settings.sync_escalation_minutes)

        with self.session_factory() as db, db.begin():
            mismatched = db.execute(
                select(AddressRecord).where(
                    or_(
                        and_(AddressRecord.status == AddressStatus.ASSIGNED,
                             AddressRecord.owner_session_id.is_(None)),
                        and_(AddressRecord.status != AddressStatus.ASSIGNED,
                             AddressRecord.owner_session_id.is_not(None)),
                    )
                )
            ).scalars().all()

            duplicate_owners = db.execute(
                select(AddressRecord.owner_session_id)
                .where(AddressRecord.owner_session_id.is_not(None))
                .group_by(AddressRecord.owner_session_id)
                .having(func.count(AddressRecord.id) > 1)
            ).scalars().all()
            duplicates = {
                owner: db.execute(
                    select(AddressRecord).where(AddressRecord.owner_session_id == owner)
                ).scalars().all()
                for owner in duplicate_owners
            }

            assigned = db.execute(
                select(AddressRecord.id, AddressRecord.address, AddressRecord.owner_session_id)
                .where(AddressRecord.status == AddressStatus.ASSIGNED,
                       AddressRecord.owner_session_id.is_not(None))
                .order_by(AddressRecord.address_int)
            ).all()

            stale = db.execute(
                select(AddressRecord.id, AddressRecord.address, AddressRecord.owner_session_id)
                .where(AddressRecord.needs_sync.is_(True),
                       AddressRecord.sync_flagged_at.is_not(None),
                       AddressRecord.sync_flagged_at < cutoff)
                .order_by(AddressRecord.address_int)
            ).all()

        handled = set()

        for record in mismatched:
            released = self.engine.release_record(
                record.id, record.owner_session_id,
                comment="Owner/status mismatch normalized by verifier",
            )
            if record.status == AddressStatus.ASSIGNED:
                action = "released"
            else:
                action = f"owner cleared, kept {record.status}"
            report.add(OWNER_MISMATCH, record.address, record.owner_session_id,
                       action, released is not None)
            handled.add(record.id)

        for owner, records in duplicates.items():
            keep = pick_survivor(records)
            logger.warning(
                "SECURITY_ALERT session %s bound to %d addresses %s; keeping %s",
                owner, len(records), [r.address for r in records], keep.address,
            )
            for record in records:
                if record.id == keep.id or record.id in handled:
                    continue
                released = self.engine.release_record(
                    record.id, owner, comment=f"Duplicate binding of {owner} released by verifier",
                )
                report.add(DUPLICATE_OWNER, record.address, owner,
                           f"released, kept {keep.address}", released is not None)
                handled.add(record.id)

        for address_id, address, owner in assigned:
            if address_id in handled:
                continue
            try:
                exists = self.session_directory.session_exists(owner)
            except SessionLookupFailed as e:
                logger.warning("Skipping orphan check of %s: %s", address, e)
                continue
            if exists:
                continue
            released = self.engine.release_record(
                address_id, owner, comment=f"Owner session {owner} no longer exists",
            )
            report.add(ORPHANED_OWNER, address, owner, "released", released is not None)
            handled.add(address_id)

        for address_id, address, owner in stale:
            if address_id in handled:
                continue
            synced = self.reconciler.push_record(
                address_id, attempts=self.settings.router_retry_priority_attempts,
            )
            report.add(STALE_SYNC, address, owner, "escalated router push", synced)

        logger.info(
            "Verification finished: %d anomalies found, %d fixed",
            report.anomalies_found, report.anomalies_fixed,
        )
        return report
