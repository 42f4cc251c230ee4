"""Saga state model and Saga Store port.

A saga (process manager instance) is keyed by correlation id and moves
through a small closed set of states:

  started → step_confirmed → completed
  started → compensating → compensated
  (compensating is reachable from any non-terminal step on failure)

The transition table below is the single source of truth; the process
manager refuses any move it does not list.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol
from uuid import UUID


class SagaStatus(Enum):
    STARTED = "started"
    STEP_CONFIRMED = "step_confirmed"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


TRANSITIONS: dict[SagaStatus, frozenset[SagaStatus]] = {
    SagaStatus.STARTED: frozenset({
        SagaStatus.STEP_CONFIRMED, SagaStatus.COMPLETED, SagaStatus.COMPENSATING,
    }),
    SagaStatus.STEP_CONFIRMED: frozenset({
        SagaStatus.STEP_CONFIRMED, SagaStatus.COMPLETED, SagaStatus.COMPENSATING,
    }),
    SagaStatus.COMPENSATING: frozenset({SagaStatus.COMPENSATED}),
    SagaStatus.COMPLETED: frozenset(),
    SagaStatus.COMPENSATED: frozenset(),
}


class InvalidSagaTransition(Exception):
    """Raised when a saga is asked to move along an edge the transition table lacks."""

    def __init__(self, correlation_id: UUID, current: SagaStatus, target: SagaStatus) -> None:
        self.correlation_id = correlation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Saga {correlation_id} cannot move from {current.value} to {target.value}"
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SagaState:
    correlation_id: UUID
    process_type: str
    status: SagaStatus
    data: dict[str, Any] = field(default_factory=dict)
    processed_event_ids: frozenset[UUID] = frozenset()
    requires_intervention: bool = False
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self.status]

    def transition(self, target: SagaStatus, data: dict[str, Any] | None = None) -> SagaState:
        """Return the state moved to target. Staying put is always allowed."""
        if target != self.status and target not in TRANSITIONS[self.status]:
            raise InvalidSagaTransition(self.correlation_id, self.status, target)
        return replace(
            self,
            status=target,
            data=self.data if data is None else data,
            updated_at=_utcnow(),
        )

    def mark_processed(self, event_id: UUID) -> SagaState:
        return replace(self, processed_event_ids=self.processed_event_ids | {event_id})


class SagaStore(Protocol):
    """Port for saga state persistence (simple keyed record)."""

    def get(self, process_type: str, correlation_id: UUID) -> SagaState | None:
        ...

    def save(self, state: SagaState) -> None:
        ...
