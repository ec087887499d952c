"""In-process domain event bus.

The ledger, alert engine and transfer workflow publish facts here after
their transaction commits; interested consumers (the alert engine, a
notification service, diagnostics) subscribe by event type. Producers and
consumers never share a transaction.
"""

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Callable, Deque, Dict, List, Optional, Type

from fastapi import Depends

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DomainEvent:
    occurred_at: datetime = field(default_factory=_now, kw_only=True)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = float(value)
            elif isinstance(value, datetime):
                data[key] = value.isoformat()
        return {"event": self.name, **data}


@dataclass(frozen=True)
class StockQuantityChanged(DomainEvent):
    stock_id: int
    clinic_id: int
    old_value: Decimal
    new_value: Decimal
    kind: str
    operation_id: Optional[int] = None


@dataclass(frozen=True)
class StockDetailsChanged(DomainEvent):
    """Catalog attributes (thresholds, expiry, active flag) were edited."""

    stock_id: int
    clinic_id: int


@dataclass(frozen=True)
class AlertCreated(DomainEvent):
    alert_id: int
    stock_id: Optional[int]
    type: str
    severity: str


@dataclass(frozen=True)
class AlertClosed(DomainEvent):
    alert_id: int
    status: str


@dataclass(frozen=True)
class RequestTransitioned(DomainEvent):
    request_id: int
    old_status: Optional[str]
    new_status: str
    requester_clinic_id: int
    source_clinic_id: int


Handler = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe keyed by event class.

    Request handlers publish from the event loop thread while the alert
    sweep publishes from a worker thread, so the subscription table and the
    buffer are guarded by a lock. Handlers run outside it and may publish.
    """

    def __init__(self, max_buffer: int = 200):
        self._handlers: Dict[Type[DomainEvent], List[Handler]] = {}
        self._recent: Deque[DomainEvent] = deque(maxlen=max_buffer)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)

    def unsubscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def handlers_for(self, event_type: Type[DomainEvent]) -> List[Handler]:
        with self._lock:
            return list(self._handlers.get(event_type, []))

    def publish(self, event: DomainEvent) -> None:
        """Deliver to every handler; a failing handler does not stop the others."""
        with self._lock:
            self._recent.append(event)
        handlers = self.handlers_for(type(event))
        logger.debug(f"Publishing {event.name}: {event}")
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler {getattr(handler, '__name__', handler)} failed for {event.name}")

    def recent(self, limit: int = 50, event_name: Optional[str] = None) -> List[DomainEvent]:
        with self._lock:
            events = list(self._recent)
        if event_name:
            events = [e for e in events if e.name == event_name]
        return list(reversed(events[-limit:]))

    def subscriber_count(self) -> int:
        with self._lock:
            return sum(len(handlers) for handlers in self._handlers.values())

    def reset(self) -> None:
        """Drop all subscriptions and the recent-events buffer."""
        with self._lock:
            self._handlers.clear()
            self._recent.clear()


event_bus = EventBus()


def get_event_bus() -> EventBus:
    """Event bus dependency; overridden in tests."""
    return event_bus


EventBusDep = Annotated[EventBus, Depends(get_event_bus)]
