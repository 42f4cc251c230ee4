"""Aggregate base class and the aggregate value threaded through a command.

An aggregate is a consistency boundary that:
- Maintains state derived exclusively from its own event stream.
- Accepts commands and produces events (or rejects with DomainError).
- Enforces intra-aggregate invariants.
- Has no knowledge of infrastructure, projections, or other aggregates.

The aggregate's execute() method is a pure function:
  execute(state, command) → list[DomainEvent] | raises DomainError

A command handler threads an AggregateInstance through the command:
  load → (state, version, ()) → handle → (state', version', (e1, e2, ...)) → save
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar
from uuid import UUID

from ledger_core.domain.events import DomainEvent, new_event


class DomainError(Exception):
    """Raised when an aggregate rejects a command due to an invariant violation."""


@dataclass(frozen=True)
class AggregateInstance:
    """Current state of one aggregate plus the events raised but not yet persisted."""

    aggregate_id: UUID
    state: dict[str, Any]
    version: int = 0
    uncommitted: tuple[DomainEvent, ...] = ()

    @property
    def committed_version(self) -> int:
        """The stream version before the uncommitted events were raised."""
        return self.version - len(self.uncommitted)

    def mark_committed(self) -> AggregateInstance:
        return AggregateInstance(self.aggregate_id, self.state, self.version)


class Aggregate(ABC):
    """Base class for all aggregates.

    Subclasses implement:
    - aggregate_type: string name of the aggregate.
    - initial_state(): the empty state before any events.
    - apply_event(state, event) -> new_state: the fold function.
    - execute(state, command) -> list[DomainEvent]: domain logic.

    Subclasses may set:
    - schema_versions: current payload schema version per emitted event type.
    - state_schema_version: bump when the snapshot state shape changes, so
      older snapshots are ignored instead of misread.
    """

    schema_versions: ClassVar[dict[str, int]] = {}
    state_schema_version: ClassVar[int] = 1

    @property
    @abstractmethod
    def aggregate_type(self) -> str:
        """The aggregate type name (e.g., 'Account', 'Order')."""
        ...

    @abstractmethod
    def initial_state(self) -> dict[str, Any]:
        """Return the initial state for a new aggregate (no events yet)."""
        ...

    @abstractmethod
    def apply_event(self, state: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
        """Pure fold: apply one event to produce new state.

        Used during rehydration. Must be deterministic and side-effect-free.
        """
        ...

    @abstractmethod
    def execute(self, state: dict[str, Any], command: Any) -> list[DomainEvent]:
        """Execute domain logic: decide whether to accept the command.

        Returns a list of new events if the command is accepted (possibly
        empty for an idempotent no-op). Raises DomainError if an invariant
        is violated.
        """
        ...

    def rehydrate(
        self,
        events: list[DomainEvent],
        state: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Rebuild aggregate state by folding events, from initial or snapshot state."""
        if state is None:
            state = self.initial_state()
        for event in events:
            state = self.apply_event(state, event)
        return state

    def handle(self, instance: AggregateInstance, command: Any) -> AggregateInstance:
        """Run a command against an instance and buffer the resulting events.

        New events are numbered after the instance's version and folded into
        its state immediately, so several commands can be chained before a save.
        """
        new_events = self.execute(instance.state, command)

        state = instance.state
        version = instance.version
        pending = list(instance.uncommitted)
        for event in new_events:
            version += 1
            versioned = event.with_version(version)
            state = self.apply_event(state, versioned)
            pending.append(versioned)

        return AggregateInstance(
            aggregate_id=instance.aggregate_id,
            state=state,
            version=version,
            uncommitted=tuple(pending),
        )

    def snapshot_state(self, state: dict[str, Any]) -> dict[str, Any]:
        """Serialize state for a snapshot. Default: JSON round trip (detached copy)."""
        return json.loads(json.dumps(state, sort_keys=True))

    def restore_state(self, data: dict[str, Any]) -> dict[str, Any]:
        """Inverse of snapshot_state."""
        return json.loads(json.dumps(data, sort_keys=True))

    def _build_event(
        self,
        command: Any,
        event_type: str,
        aggregate_id: UUID,
        payload: dict[str, Any],
    ) -> DomainEvent:
        """Helper: construct a DomainEvent from a command's context.

        The version is a placeholder (0); handle() assigns the real one.
        """
        return new_event(
            event_type,
            aggregate_id=aggregate_id,
            aggregate_type=self.aggregate_type,
            payload=payload,
            schema_version=self.schema_versions.get(event_type, 1),
            actor=getattr(command, "actor", "system"),
            correlation_id=getattr(command, "correlation_id", None),
            causation_id=getattr(command, "causation_id", None),
        )
