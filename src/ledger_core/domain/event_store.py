"""Event Store port (interface).

This is a domain-layer port — it defines WHAT the event store must do,
not HOW it does it. Infrastructure adapters implement this protocol.

The event store is append-only. It stores immutable domain events in
per-aggregate streams with contiguous versioning, and assigns every
persisted event a global position for cross-stream replay.

No projection logic is permitted in the event store or its implementations.
The event store persists and retrieves events — nothing more.
"""

from __future__ import annotations

from typing import Protocol
from uuid import UUID

from ledger_core.domain.events import DomainEvent


class EventStore(Protocol):
    """Port for event persistence.

    Implementations must satisfy:
    - Append-only: events are never modified or deleted.
    - Unique (aggregate_id, aggregate_version) pairs.
    - Contiguous per stream: versions run 1, 2, 3, ... per aggregate_id.
    - Atomic batches: an append persists all of its events or none of them.
    - No projection logic: the event store does not interpret payloads.
    """

    def append(
        self,
        aggregate_id: UUID,
        events: list[DomainEvent],
        expected_version: int,
    ) -> list[DomainEvent]:
        """Append a batch of events to one aggregate's stream.

        Behavior:
        - Compare-and-swap on the stream's current version: succeeds only if
          the highest stored version equals expected_version.
        - Stamps versions expected_version + 1 .. expected_version + len(events),
          recorded_at (UTC) and a global position.
        - If every event_id is already stored, returns the stored events
          (idempotent retry of a committed batch).
        - Returns the persisted events.

        Raises:
            ConcurrencyConflict: if the stream has moved past expected_version.
            EventValidationError: if an event belongs to another aggregate,
                carries a conflicting version, or partially overlaps stored ids.
        """
        ...

    def get_events(self, aggregate_id: UUID, from_version: int = 0) -> list[DomainEvent]:
        """Read an aggregate's events with aggregate_version > from_version, in order.

        Restartable: callers may re-invoke with a later from_version.
        Returns an empty list if no such events exist.
        """
        ...

    def get_events_by_type(self, event_type: str, since: int = 0) -> list[DomainEvent]:
        """Read events of one type with global position > since, in append order.

        Used by projection rebuilds and cross-aggregate process managers.
        """
        ...

    def get_all_events(
        self,
        after_position: int = 0,
        limit: int | None = None,
    ) -> list[DomainEvent]:
        """Read events across all streams with position > after_position, in append order.

        Used by full projection rebuilds and catch-up subscriptions.
        """
        ...

    def stream_version(self, aggregate_id: UUID) -> int:
        """Return the highest stored version of a stream, or 0 if it has no events."""
        ...

    def last_position(self) -> int:
        """Return the global position of the most recently appended event, or 0."""
        ...

    def event_exists(self, event_id: UUID) -> bool:
        """Check if an event with the given ID has been persisted."""
        ...
