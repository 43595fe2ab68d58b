import threading

import pytest
from sqlalchemy import select

from addrpool.exceptions import (
    AddressNotAvailable,
    AddressNotFound,
    PoolExhausted,
    PoolInactive,
    PoolNotFound,
    SessionAlreadyAssigned,
)
from addrpool.models import AddressRecord, Pool
from addrpool.schemas.pool import PoolUpdate
from addrpool.services.pool_registry import PoolRegistryService


def test_slash30_scenario(db, services, router, router_client, make_pool, fetch):
    pool = make_pool("10.0.0.0/30")
    stats = PoolRegistryService.get_pool_stats(db, pool.id)
    assert stats["total"] == 2
    assert stats["available"] == 2

    record = services.assignments.assign("S1", pool.id)
    assert record.address == "10.0.0.1"
    assert record.owner_session_id == "S1"
    assert router_client.table(router.id) == {"10.0.0.1": "S1"}

    with pytest.raises(SessionAlreadyAssigned):
        services.assignments.assign("S1", pool.id)

    released = services.assignments.release("S1")
    assert released.address == "10.0.0.1"
    stored = fetch("10.0.0.1")
    assert stored.status == "available"
    assert stored.owner_session_id is None
    assert stored.needs_sync is False
    assert router_client.table(router.id) == {}


def test_assign_picks_lowest_available(services, make_pool):
    pool = make_pool("10.0.0.0/29")

    addresses = [services.assignments.assign(f"S{i}", pool.id).address for i in range(3)]

    assert addresses == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]


def test_pool_exhaustion(services, make_pool):
    pool = make_pool("10.0.0.0/30")
    services.assignments.assign("S1", pool.id)
    services.assignments.assign("S2", pool.id)

    with pytest.raises(PoolExhausted):
        services.assignments.assign("S3", pool.id)


def test_exhaustion_emits_event(services, make_pool):
    pool = make_pool("10.0.0.0/30", import_addresses=False)
    seen = []
    services.event_bus.subscribe("POOL_EXHAUSTED", seen.append)

    with pytest.raises(PoolExhausted):
        services.assignments.assign("S1", pool.id)

    assert seen[0].payload == {"pool_id": pool.id, "session_id": "S1"}


def test_released_address_can_be_reassigned(services, make_pool):
    pool = make_pool("10.0.0.0/30")

    first = services.assignments.assign("S1", pool.id)
    services.assignments.release("S1")
    second = services.assignments.assign("S2", pool.id)

    assert second.address == first.address


def test_assign_requested_address(services, make_pool):
    pool = make_pool("10.0.0.0/29")

    record = services.assignments.assign("S1", pool.id, "10.0.0.5")

    assert record.address == "10.0.0.5"
    with pytest.raises(AddressNotAvailable):
        services.assignments.assign("S2", pool.id, "10.0.0.5")
    with pytest.raises(AddressNotAvailable):
        services.assignments.assign("S2", pool.id, "10.9.9.9")
    with pytest.raises(AddressNotAvailable):
        services.assignments.assign("S2", pool.id, "not-an-ip")


def test_session_owns_one_address_across_pools(services, make_pool):
    first = make_pool("10.0.0.0/30")
    second = make_pool("10.0.1.0/30")
    services.assignments.assign("S1", first.id)

    with pytest.raises(SessionAlreadyAssigned):
        services.assignments.assign("S1", second.id)


def test_assign_unknown_or_inactive_pool(db, services, make_pool):
    with pytest.raises(PoolNotFound):
        services.assignments.assign("S1", 999)

    pool = make_pool("10.0.0.0/30")
    PoolRegistryService.update_pool(db, pool.id, PoolUpdate(active=False))
    with pytest.raises(PoolInactive):
        services.assignments.assign("S1", pool.id)


def test_release_unknown_session_is_noop(services):
    assert services.assignments.release("nobody") is None


def test_concurrent_assign_on_single_address_pool(services, make_pool):
    pool = make_pool("10.0.0.0/30")
    services.assignments.assign("holder", pool.id)

    barrier = threading.Barrier(2)
    results = {}

    def worker(session_id):
        barrier.wait()
        try:
            results[session_id] = services.assignments.assign(session_id, pool.id).address
        except (PoolExhausted, AddressNotAvailable) as e:
            results[session_id] = e

    threads = [threading.Thread(target=worker, args=(f"S{i}",)) for i in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    winners = [value for value in results.values() if isinstance(value, str)]
    losers = [value for value in results.values() if not isinstance(value, str)]
    assert winners == ["10.0.0.2"]
    assert len(losers) == 1


def test_owner_invariant_holds_after_churn(session_factory, services, make_pool):
    pool = make_pool("10.0.0.0/28")
    for i in range(10):
        services.assignments.assign(f"S{i}", pool.id)
    for i in range(0, 10, 3):
        services.assignments.release(f"S{i}")

    with session_factory() as session:
        records = session.execute(select(AddressRecord)).scalars().all()

    owners = [r.owner_session_id for r in records if r.owner_session_id is not None]
    assert len(owners) == len(set(owners))
    for record in records:
        assert (record.status == "assigned") == (record.owner_session_id is not None)


def test_router_failure_never_fails_assign(session_factory, services, router, router_client, make_pool, fetch):
    pool = make_pool("10.0.0.0/30")
    router_client.unreachable.add(router.id)

    record = services.assignments.assign("S1", pool.id)

    assert record.address == "10.0.0.1"
    stored = fetch("10.0.0.1")
    assert stored.status == "assigned"
    assert stored.needs_sync is True
    assert stored.sync_attempts == 1
    assert stored.sync_flagged_at is not None
    with session_factory() as session:
        assert session.get(Pool, pool.id).degraded is True


def test_transient_router_failure_is_retried(services, router, router_client, make_pool, fetch):
    pool = make_pool("10.0.0.0/30")
    router_client.fail_next[router.id] = 1

    services.assignments.assign("S1", pool.id)

    assert fetch("10.0.0.1").needs_sync is False
    assert router_client.table(router.id) == {"10.0.0.1": "S1"}
    assert [op for op, _ in router_client.calls] == ["push", "push"]


def test_update_address_status_and_comment(services, make_pool, fetch):
    pool = make_pool("10.0.0.0/30")
    record = services.assignments.assign("S1", pool.id)
    free = fetch("10.0.0.2")

    updated = services.assignments.update_address(free.id, status="reserved", comment="Gateway")

    assert updated.status == "reserved"
    assert fetch("10.0.0.2").comment == "Gateway"
    with pytest.raises(AddressNotAvailable):
        services.assignments.update_address(record.id, status="blocked")
    with pytest.raises(AddressNotAvailable):
        services.assignments.update_address(free.id, status="assigned")
    with pytest.raises(AddressNotFound):
        services.assignments.update_address(999, comment="x")

    # Comment only edits are fine on assigned records
    services.assignments.update_address(record.id, comment="VIP customer")
    assert fetch("10.0.0.1").comment == "VIP customer"


def test_reserved_address_is_skipped_by_assign(services, make_pool, fetch):
    pool = make_pool("10.0.0.0/29")
    services.assignments.update_address(fetch("10.0.0.1").id, status="reserved")

    assert services.assignments.assign("S1", pool.id).address == "10.0.0.2"


def test_get_session_address(services, make_pool):
    pool = make_pool("10.0.0.0/30")
    services.assignments.assign("S1", pool.id)

    assert services.assignments.get_session_address("S1").address == "10.0.0.1"
    assert services.assignments.get_session_address("S2") is None


def test_move_session_between_pools(services, router, router_client, make_pool, fetch):
    active = make_pool("10.0.0.0/29", name="active")
    suspended = make_pool("10.9.0.0/29", name="suspended", pool_type="suspended")
    services.assignments.assign("S1", active.id)

    moved = services.assignments.move_session("S1", suspended.id)

    assert moved.address == "10.9.0.1"
    assert moved.pool_id == suspended.id
    assert fetch("10.0.0.1").status == "available"
    assert fetch("10.0.0.1").owner_session_id is None
    assert fetch("10.9.0.1").owner_session_id == "S1"
    assert router_client.table(router.id) == {"10.9.0.1": "S1"}
    assert fetch("10.0.0.1").needs_sync is False
    assert fetch("10.9.0.1").needs_sync is False


def test_move_session_emits_event(services, make_pool):
    active = make_pool("10.0.0.0/29", name="active")
    suspended = make_pool("10.9.0.0/29", name="suspended")
    services.assignments.assign("S1", active.id)
    events = []
    services.event_bus.subscribe("SESSION_MOVED", events.append)

    services.assignments.move_session("S1", suspended.id)

    assert len(events) == 1
    assert events[0].payload["from_address"] == "10.0.0.1"
    assert events[0].payload["address"] == "10.9.0.1"


def test_move_to_same_pool_is_noop(services, router_client, make_pool):
    pool = make_pool("10.0.0.0/29")
    services.assignments.assign("S1", pool.id)
    router_client.calls.clear()

    record = services.assignments.move_session("S1", pool.id)

    assert record.address == "10.0.0.1"
    assert router_client.calls == []


def test_move_requires_an_assigned_session(services, make_pool):
    pool = make_pool("10.0.0.0/29")

    with pytest.raises(AddressNotFound):
        services.assignments.move_session("nobody", pool.id)


def test_move_into_full_pool_keeps_old_address(services, make_pool, fetch):
    active = make_pool("10.0.0.0/29", name="active")
    full = make_pool("10.9.0.0/30", name="full")
    services.assignments.assign("S1", active.id)
    services.assignments.assign("S2", full.id)
    services.assignments.assign("S3", full.id)

    with pytest.raises(PoolExhausted):
        services.assignments.move_session("S1", full.id)

    assert fetch("10.0.0.1").owner_session_id == "S1"
    assert services.assignments.get_session_address("S1").address == "10.0.0.1"


def test_move_refused_above_capacity_threshold(services, make_pool, fetch):
    active = make_pool("10.0.0.0/29", name="active")
    busy = make_pool("10.8.0.0/27", name="busy")
    services.assignments.assign("S0", active.id)
    for n in range(29):
        services.assignments.assign(f"B{n}", busy.id)

    # 29 of 30 in use is above 95%, even though one address is left
    with pytest.raises(PoolExhausted):
        services.assignments.move_session("S0", busy.id)
    assert fetch("10.0.0.1").owner_session_id == "S0"


def test_move_into_inactive_pool(db, services, make_pool):
    active = make_pool("10.0.0.0/29", name="active")
    closed = make_pool("10.9.0.0/29", name="closed")
    PoolRegistryService.update_pool(db, closed.id, PoolUpdate(active=False))
    services.assignments.assign("S1", active.id)

    with pytest.raises(PoolInactive):
        services.assignments.move_session("S1", closed.id)
    with pytest.raises(PoolNotFound):
        services.assignments.move_session("S1", 999)


def test_move_to_requested_address(services, make_pool):
    active = make_pool("10.0.0.0/29", name="active")
    static = make_pool("10.9.0.0/29", name="static", pool_type="static")
    services.assignments.assign("S1", active.id)

    record = services.assignments.move_session("S1", static.id, "10.9.0.5")

    assert record.address == "10.9.0.5"


def test_bulk_move_reports_each_session(services, make_pool):
    active = make_pool("10.0.0.0/29", name="active")
    suspended = make_pool("10.9.0.0/29", name="suspended")
    services.assignments.assign("S1", active.id)
    services.assignments.assign("S2", suspended.id)

    result = services.assignments.bulk_move_sessions(["S1", "S2", "ghost"], suspended.id)

    assert result["moved"] == [{"session_id": "S1", "address": "10.9.0.2"}]
    assert result["unchanged"] == [{"session_id": "S2", "address": "10.9.0.1"}]
    assert [f["session_id"] for f in result["failed"]] == ["ghost"]
