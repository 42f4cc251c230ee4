"""In-memory Event Store adapter.

Implements the EventStore protocol defined in domain/event_store.py.

This is an infrastructure adapter — it provides a concrete, in-memory
implementation for development and testing. SqlEventStore implements the
same protocol against a database.

Rules enforced:
- Append-only: events are stored in insertion order, never removed.
- Compare-and-swap: the version check and the write happen under one lock,
  so concurrent writers to the same aggregate cannot both succeed.
- Atomic batches: a batch is validated completely before anything is stored.
- Idempotent: re-appending an already committed batch returns it unchanged.
- No business logic, no domain interpretation of event payloads.
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from uuid import UUID

from ledger_core.domain.events import (
    ConcurrencyConflict,
    DomainEvent,
    EventValidationError,
    check_append_target,
)


class InMemoryEventStore:
    """In-memory implementation of the EventStore protocol.

    Stores events in three structures:
    - _streams: dict mapping aggregate_id → list of events (ordered by version).
    - _events_by_id: dict mapping event_id → event (for deduplication and lookup).
    - _all_events: list of all events in append order (index = position - 1).
    """

    def __init__(self) -> None:
        self._streams: dict[UUID, list[DomainEvent]] = {}
        self._events_by_id: dict[UUID, DomainEvent] = {}
        self._all_events: list[DomainEvent] = []
        self._lock = threading.Lock()

    def append(
        self,
        aggregate_id: UUID,
        events: list[DomainEvent],
        expected_version: int,
    ) -> list[DomainEvent]:
        with self._lock:
            known = [e for e in events if e.event_id in self._events_by_id]
            if events and len(known) == len(events):
                return [self._events_by_id[e.event_id] for e in events]
            if known:
                raise EventValidationError(
                    f"Batch for aggregate {aggregate_id} partially overlaps stored events: "
                    f"{[str(e.event_id) for e in known]}"
                )

            stream = self._streams.get(aggregate_id, [])
            current_version = len(stream)
            if current_version != expected_version:
                raise ConcurrencyConflict(
                    aggregate_id=aggregate_id,
                    expected_version=expected_version,
                    actual_version=current_version,
                )

            now = datetime.now(timezone.utc)
            position = len(self._all_events)
            persisted: list[DomainEvent] = []
            for offset, event in enumerate(events, start=1):
                version = expected_version + offset
                check_append_target(event, aggregate_id, version)
                position += 1
                stored = DomainEvent(
                    metadata=event.metadata,
                    payload=copy.deepcopy(event.payload),
                )
                persisted.append(stored.with_version(version).with_recorded(now, position))

            self._streams.setdefault(aggregate_id, []).extend(persisted)
            self._all_events.extend(persisted)
            for event in persisted:
                self._events_by_id[event.event_id] = event

            return list(persisted)

    def get_events(self, aggregate_id: UUID, from_version: int = 0) -> list[DomainEvent]:
        with self._lock:
            stream = self._streams.get(aggregate_id, [])
            return stream[max(from_version, 0):]

    def get_events_by_type(self, event_type: str, since: int = 0) -> list[DomainEvent]:
        with self._lock:
            return [
                e for e in self._all_events[max(since, 0):]
                if e.event_type == event_type
            ]

    def get_all_events(
        self,
        after_position: int = 0,
        limit: int | None = None,
    ) -> list[DomainEvent]:
        with self._lock:
            start = max(after_position, 0)
            end = None if limit is None else start + limit
            return self._all_events[start:end]

    def stream_version(self, aggregate_id: UUID) -> int:
        with self._lock:
            return len(self._streams.get(aggregate_id, []))

    def last_position(self) -> int:
        with self._lock:
            return len(self._all_events)

    def event_exists(self, event_id: UUID) -> bool:
        with self._lock:
            return event_id in self._events_by_id
