"""Event Dispatcher — synchronous fan-out of persisted events.

Repositories publish every event they persist here; projections and
process managers subscribe. This is the in-process delivery path. The
CatchUpSubscription is the asynchronous one, reading the same log.

Delivery rules:
- Handlers for the event's type run first, then catch-all handlers, each
  in subscription order.
- A failing handler is logged and reported back to the publisher, but
  never stops delivery to the others. Consumers that must not lose events
  (projections) keep their own halt state and dead letters.
- Registration may happen while other threads dispatch: each dispatch
  works on the handler list as it stood when the event arrived.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable
from uuid import UUID

from ledger_core.domain.events import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


@dataclass(frozen=True)
class DeliveryFailure:
    handler: EventHandler
    event: DomainEvent
    error: Exception


class EventDispatcher:

    def __init__(self) -> None:
        self._by_type: dict[str, tuple[EventHandler, ...]] = {}
        self._catch_all: tuple[EventHandler, ...] = ()
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            self._by_type[event_type] = (*self._by_type.get(event_type, ()), handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Register a handler that receives every event, whatever its type."""
        with self._lock:
            self._catch_all = (*self._catch_all, handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        """Remove handler from every registration it has."""
        with self._lock:
            self._by_type = {
                event_type: tuple(h for h in handlers if h != handler)
                for event_type, handlers in self._by_type.items()
            }
            self._catch_all = tuple(h for h in self._catch_all if h != handler)

    def dispatch(self, event: DomainEvent) -> list[DeliveryFailure]:
        """Deliver one event to every matching handler. Returns the failed deliveries."""
        with self._lock:
            handlers = self._by_type.get(event.event_type, ()) + self._catch_all

        failures: list[DeliveryFailure] = []
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.exception(
                    "Handler %r failed processing event %s (%s v%d of %s)",
                    handler, event.event_id, event.event_type,
                    event.aggregate_version, event.aggregate_id,
                )
                failures.append(DeliveryFailure(handler, event, e))
        return failures

    def dispatch_batch(self, events: list[DomainEvent]) -> list[DeliveryFailure]:
        """Deliver a batch so that each aggregate's events arrive in version order.

        Events from different aggregates keep their relative batch order;
        only each stream's own events are reordered.
        """
        slots: dict[UUID, list[int]] = {}
        for index, event in enumerate(events):
            slots.setdefault(event.aggregate_id, []).append(index)

        ordered: list[DomainEvent | None] = [None] * len(events)
        for indexes in slots.values():
            stream = sorted((events[i] for i in indexes), key=lambda e: e.aggregate_version)
            for index, event in zip(indexes, stream):
                ordered[index] = event

        failures: list[DeliveryFailure] = []
        for event in ordered:
            failures.extend(self.dispatch(event))
        return failures
