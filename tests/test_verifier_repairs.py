"""
Verifier repairs of rows the schema constraints normally keep out.

The address table is created here without its unique and check constraints
so that duplicate owners and owner/status mismatches can be seeded the way
they would appear after a manual database edit or a constraint-less backend.
"""
import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from addrpool.database import build_engine, create_tables
from addrpool.models import AddressRecord
from addrpool.services.verifier import DUPLICATE_OWNER, OWNER_MISMATCH

RELAXED_ADDRESS_TABLE = """
CREATE TABLE address_records (
    id INTEGER NOT NULL PRIMARY KEY,
    pool_id INTEGER NOT NULL REFERENCES pools (id) ON DELETE CASCADE,
    address VARCHAR(15) NOT NULL,
    address_int BIGINT NOT NULL,
    status VARCHAR(20) NOT NULL,
    owner_session_id VARCHAR(255),
    comment TEXT,
    needs_sync BOOLEAN NOT NULL,
    sync_attempts INTEGER NOT NULL,
    sync_flagged_at DATETIME,
    last_modified DATETIME NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
)
"""


@pytest.fixture
def engine(settings):
    engine = build_engine(settings.database_url)
    with engine.begin() as conn:
        conn.exec_driver_sql(RELAXED_ADDRESS_TABLE)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def corrupt(session_factory):
    """Overwrite columns of one address row behind the services' back."""

    def _corrupt(address, **values):
        with session_factory() as session, session.begin():
            session.execute(
                update(AddressRecord).where(AddressRecord.address == address).values(**values)
            )

    return _corrupt


def test_duplicate_owner_keeps_latest_binding(services, make_pool, corrupt, fetch, caplog):
    pool = make_pool("10.0.0.0/29")
    services.assignments.assign("S1", pool.id)
    corrupt("10.0.0.2", status="assigned", owner_session_id="S1",
            last_modified=datetime.now(timezone.utc) + timedelta(minutes=5))
    caplog.set_level(logging.WARNING, logger="addrpool.services.verifier")

    report = services.verifier.verify_assignments()

    assert [(a.kind, a.address, a.session_id, a.fixed) for a in report.detail] == [
        (DUPLICATE_OWNER, "10.0.0.1", "S1", True),
    ]
    assert report.detail[0].action == "released, kept 10.0.0.2"
    assert report.anomalies_found == 1
    assert report.anomalies_fixed == 1
    assert fetch("10.0.0.1").status == "available"
    assert fetch("10.0.0.1").owner_session_id is None
    assert fetch("10.0.0.2").owner_session_id == "S1"
    assert "SECURITY_ALERT session S1 bound to 2 addresses" in caplog.text
    assert services.verifier.verify_assignments().anomalies_found == 0


def test_duplicate_owner_removes_released_binding_from_router(services, router, router_client,
                                                              make_pool, corrupt):
    pool = make_pool("10.0.0.0/29")
    services.assignments.assign("S1", pool.id)
    corrupt("10.0.0.2", status="assigned", owner_session_id="S1",
            last_modified=datetime.now(timezone.utc) + timedelta(minutes=5))

    services.verifier.verify_assignments()

    assert "10.0.0.1" not in router_client.table(router.id)


def test_assigned_row_without_owner_is_released(services, make_pool, corrupt, fetch):
    make_pool("10.0.0.0/29")
    corrupt("10.0.0.3", status="assigned", owner_session_id=None)

    report = services.verifier.verify_assignments()

    assert [(a.kind, a.address, a.action, a.fixed) for a in report.detail] == [
        (OWNER_MISMATCH, "10.0.0.3", "released", True),
    ]
    record = fetch("10.0.0.3")
    assert record.status == "available"
    assert record.comment == "Owner/status mismatch normalized by verifier"
    assert services.verifier.verify_assignments().anomalies_found == 0


def test_blocked_row_with_owner_keeps_status(services, make_pool, corrupt, fetch):
    make_pool("10.0.0.0/29")
    corrupt("10.0.0.4", status="blocked", owner_session_id="S7")

    report = services.verifier.verify_assignments()

    assert [(a.kind, a.session_id, a.action, a.fixed) for a in report.detail] == [
        (OWNER_MISMATCH, "S7", "owner cleared, kept blocked", True),
    ]
    record = fetch("10.0.0.4")
    assert record.status == "blocked"
    assert record.owner_session_id is None
    assert services.verifier.verify_assignments().anomalies_found == 0


def test_release_record_on_reserved_row_only_clears_owner(services, make_pool, corrupt, fetch):
    make_pool("10.0.0.0/29")
    corrupt("10.0.0.5", status="reserved", owner_session_id="S8")
    record_id = fetch("10.0.0.5").id

    released = services.assignments.release_record(record_id, "S8", comment="cleanup")

    assert released is not None
    record = fetch("10.0.0.5")
    assert record.status == "reserved"
    assert record.owner_session_id is None
    assert record.comment == "cleanup"


def test_duplicate_with_blocked_copy_keeps_assigned_address(services, make_pool, corrupt, fetch):
    pool = make_pool("10.0.0.0/29")
    services.assignments.assign("S1", pool.id)
    corrupt("10.0.0.4", status="blocked", owner_session_id="S1",
            last_modified=datetime.now(timezone.utc) + timedelta(minutes=5))

    report = services.verifier.verify_assignments()

    assert [(a.kind, a.address) for a in report.detail] == [(OWNER_MISMATCH, "10.0.0.4")]
    assert fetch("10.0.0.1").owner_session_id == "S1"
    assert fetch("10.0.0.1").status == "assigned"
    assert fetch("10.0.0.4").status == "blocked"
    assert fetch("10.0.0.4").owner_session_id is None
    assert services.verifier.verify_assignments().anomalies_found == 0
