import json

from addrpool.events import ALL_EVENTS, ADDRESS_ASSIGNED, AuditLogSubscriber, EventBus
from addrpool.models import AddressEvent
from addrpool.services.pool_registry import PoolRegistryService


def test_emit_reaches_typed_and_wildcard_subscribers():
    bus = EventBus()
    typed, everything = [], []
    bus.subscribe(ADDRESS_ASSIGNED, typed.append)
    bus.subscribe(ALL_EVENTS, everything.append)

    bus.emit(ADDRESS_ASSIGNED, address="10.0.0.1")
    bus.emit("ADDRESS_RELEASED", address="10.0.0.1")

    assert [e.event_type for e in typed] == [ADDRESS_ASSIGNED]
    assert [e.event_type for e in everything] == [ADDRESS_ASSIGNED, "ADDRESS_RELEASED"]


def test_failing_subscriber_does_not_affect_others():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("plugin bug")

    bus.subscribe(ADDRESS_ASSIGNED, broken)
    bus.subscribe(ADDRESS_ASSIGNED, seen.append)

    event = bus.emit(ADDRESS_ASSIGNED, address="10.0.0.1")

    assert seen == [event]


def test_unsubscribe():
    bus = EventBus()
    seen = []
    bus.subscribe(ADDRESS_ASSIGNED, seen.append)
    bus.unsubscribe(ADDRESS_ASSIGNED, seen.append)

    bus.emit(ADDRESS_ASSIGNED)

    assert seen == []


def test_failing_subscriber_does_not_fail_assign(services, make_pool):
    pool = make_pool("10.0.0.0/30")

    def broken(event):
        raise RuntimeError("plugin bug")

    services.event_bus.subscribe(ADDRESS_ASSIGNED, broken)

    assert services.assignments.assign("S1", pool.id).address == "10.0.0.1"


def test_audit_subscriber_persists_event(session_factory):
    bus = EventBus()
    bus.subscribe(ALL_EVENTS, AuditLogSubscriber(session_factory))

    bus.emit("SYNC_CONFLICT", address="10.0.0.9", pool_id=3, session_id="S1", message="router disagrees")

    with session_factory() as session:
        row = session.query(AddressEvent).one()
    assert row.event_type == "SYNC_CONFLICT"
    assert row.address == "10.0.0.9"
    assert row.pool_id == 3
    assert row.session_id == "S1"
    assert json.loads(row.detail) == {"message": "router disagrees"}


def test_assign_and_release_are_audited(db, services, make_pool):
    pool = make_pool("10.0.0.0/30")
    services.assignments.assign("S1", pool.id)
    services.assignments.release("S1")

    events = PoolRegistryService.list_events(db)

    assert [e.event_type for e in events] == ["ADDRESS_RELEASED", "ADDRESS_ASSIGNED", "ADDRESSES_IMPORTED"]
    assert events[0].session_id == "S1"
    assert events[0].address == "10.0.0.1"
    assert len(PoolRegistryService.list_events(db, event_type="ADDRESS_ASSIGNED")) == 1
