"""Domain event value objects and metadata.

Events are immutable facts about one aggregate. Each event is an envelope
of metadata (identity, stream position, actor, tracing) plus a
schema-versioned payload.

This module defines:
- EventMetadata: the envelope fields every event carries.
- DomainEvent: the immutable event (metadata + payload).
- new_event(): factory for events not yet assigned a stream version.
- ConcurrencyConflict: raised when an append's expected version is stale.
- EventValidationError: raised when an event cannot be appended as given.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4


class EventValidationError(Exception):
    """Raised when an event is rejected before persistence (wrong stream, bad version)."""


class ConcurrencyConflict(Exception):
    """Raised when the stored stream version does not match the expected version.

    Recoverable: the caller reloads the aggregate and retries the command.
    The store never retries on its own.
    """

    def __init__(self, aggregate_id: UUID, expected_version: int, actual_version: int) -> None:
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrency conflict on aggregate {aggregate_id}: "
            f"expected version {expected_version}, stream is at {actual_version}"
        )


@dataclass(frozen=True)
class EventMetadata:
    """Envelope fields for every domain event."""

    # Identity fields
    event_id: UUID
    event_type: str
    schema_version: int

    # Aggregate fields
    aggregate_id: UUID
    aggregate_type: str
    aggregate_version: int

    # Temporal fields
    occurred_at: datetime

    # Actor & traceability fields
    actor: str
    correlation_id: UUID

    # --- Fields with defaults must follow fields without defaults ---

    causation_id: UUID | None = None  # Nullable for root events
    recorded_at: datetime | None = None  # Set by event store at persist time
    position: int | None = None  # Global append order, set by event store


@dataclass(frozen=True)
class DomainEvent:
    """An immutable domain event: metadata envelope + payload.

    The payload is a plain dict whose shape is defined per event type and
    versioned via schema_version. The event store stores it opaquely.
    """

    metadata: EventMetadata
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def event_id(self) -> UUID:
        return self.metadata.event_id

    @property
    def event_type(self) -> str:
        return self.metadata.event_type

    @property
    def schema_version(self) -> int:
        return self.metadata.schema_version

    @property
    def aggregate_id(self) -> UUID:
        return self.metadata.aggregate_id

    @property
    def aggregate_type(self) -> str:
        return self.metadata.aggregate_type

    @property
    def aggregate_version(self) -> int:
        return self.metadata.aggregate_version

    @property
    def correlation_id(self) -> UUID:
        return self.metadata.correlation_id

    @property
    def occurred_at(self) -> datetime:
        return self.metadata.occurred_at

    @property
    def recorded_at(self) -> datetime | None:
        return self.metadata.recorded_at

    @property
    def position(self) -> int | None:
        return self.metadata.position

    def with_version(self, version: int) -> DomainEvent:
        """Return a new event assigned to the given stream version."""
        return DomainEvent(
            metadata=replace(self.metadata, aggregate_version=version),
            payload=self.payload,
        )

    def with_recorded(self, timestamp: datetime, position: int) -> DomainEvent:
        """Return a new event stamped by the event store at persist time."""
        return DomainEvent(
            metadata=replace(self.metadata, recorded_at=timestamp, position=position),
            payload=self.payload,
        )

    def with_payload(self, payload: dict[str, Any], schema_version: int) -> DomainEvent:
        """Return a new event carrying a payload of a different schema version."""
        return DomainEvent(
            metadata=replace(self.metadata, schema_version=schema_version),
            payload=payload,
        )


def check_append_target(event: DomainEvent, aggregate_id: UUID, version: int) -> None:
    """Reject an event addressed to another stream or pre-numbered inconsistently.

    Events may arrive unnumbered (version 0) or already carrying the version
    the store is about to assign.
    """
    if event.aggregate_id != aggregate_id:
        raise EventValidationError(
            f"Event {event.event_id} belongs to aggregate {event.aggregate_id}, "
            f"not {aggregate_id}"
        )
    if event.aggregate_version not in (0, version):
        raise EventValidationError(
            f"Event {event.event_id} carries version {event.aggregate_version}, "
            f"expected {version}"
        )


def new_event(
    event_type: str,
    aggregate_id: UUID,
    aggregate_type: str,
    payload: dict[str, Any] | None = None,
    *,
    schema_version: int = 1,
    actor: str = "system",
    correlation_id: UUID | None = None,
    causation_id: UUID | None = None,
    occurred_at: datetime | None = None,
) -> DomainEvent:
    """Build an event that has not been assigned a stream version yet (version 0).

    The correlation id defaults to the aggregate id, which makes the
    originating aggregate the natural key for process managers.
    """
    return DomainEvent(
        metadata=EventMetadata(
            event_id=uuid4(),
            event_type=event_type,
            schema_version=schema_version,
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            aggregate_version=0,
            occurred_at=occurred_at or datetime.now(timezone.utc),
            actor=actor,
            correlation_id=correlation_id or aggregate_id,
            causation_id=causation_id,
        ),
        payload=dict(payload or {}),
    )
