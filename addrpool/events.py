"""
In-process event channel for address lifecycle notifications.

Subscribers (audit log, plugin reactions) register independently. A failing
subscriber is logged and skipped; it never reaches the code that emitted the
event.
"""
import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from sqlalchemy.orm import sessionmaker

from .models import AddressEvent

logger = logging.getLogger(__name__)

ADDRESS_ASSIGNED = "ADDRESS_ASSIGNED"
ADDRESS_RELEASED = "ADDRESS_RELEASED"
ADDRESS_UPDATED = "ADDRESS_UPDATED"
ADDRESSES_IMPORTED = "ADDRESSES_IMPORTED"
POOL_EXHAUSTED = "POOL_EXHAUSTED"
SESSION_MOVED = "SESSION_MOVED"
SYNC_CONFLICT = "SYNC_CONFLICT"

ALL_EVENTS = "*"


@dataclass
class Event:
    event_type: str
    payload: Dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[Event], None]


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, callback: Subscriber) -> None:
        """Register a callback for one event type, or for all with '*'."""
        with self._lock:
            self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: str, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers[event_type]:
                self._subscribers[event_type].remove(callback)

    def emit(self, event_type: str, **payload) -> Event:
        event = Event(event_type=event_type, payload=payload)
        with self._lock:
            callbacks = list(self._subscribers[event_type]) + list(self._subscribers[ALL_EVENTS])

        logger.debug("Emitting %s to %d subscribers: %s", event_type, len(callbacks), payload)
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r failed handling %s", callback, event_type)
        return event


class AuditLogSubscriber:
    """Persists every event to the address_events table in its own session."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def __call__(self, event: Event) -> None:
        payload = dict(event.payload)
        row = AddressEvent(
            event_type=event.event_type,
            address=payload.pop("address", None),
            pool_id=payload.pop("pool_id", None),
            session_id=payload.pop("session_id", None),
            detail=json.dumps(payload, default=str) if payload else None,
        )
        with self.session_factory() as db:
            db.add(row)
            db.commit()
