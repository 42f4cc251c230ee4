"""Process Manager (saga coordinator) abstraction.

A process manager reacts to events across aggregates and drives a
multi-step workflow by sending commands. Each workflow instance is a
SagaState keyed by correlation id and persisted in a SagaStore.

Flow for one event:
  1. Derive the correlation key; load the saga (None if not started).
  2. Skip events already processed (at-least-once delivery).
  3. Ask the subclass for a Reaction: target status, new data, commands.
  4. Validate the transition, persist the new state, then send commands.
     State is saved first so events raised synchronously by those commands
     see the saga already in its new state.

Failure handling:
- A forward command that fails moves the saga to COMPENSATING and sends
  the subclass's compensating commands.
- A compensating command that fails is unrecoverable: the saga stays in
  COMPENSATING, is flagged requires_intervention, and CompensationFailed
  is raised. No terminal state is guessed.
- Entering compensation with nothing left to undo completes it at once.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable
from uuid import UUID

from ledger_core.domain.events import DomainEvent
from ledger_core.domain.saga import SagaState, SagaStatus

logger = logging.getLogger(__name__)

CommandSender = Callable[[Any], Any]


class CompensationFailed(Exception):
    """Raised when a compensating command cannot be executed. Needs manual intervention."""

    def __init__(self, correlation_id: UUID, command: Any, cause: BaseException) -> None:
        self.correlation_id = correlation_id
        self.command = command
        self.cause = cause
        super().__init__(
            f"Compensation {type(command).__name__} failed for saga {correlation_id}: {cause!r}"
        )


@dataclass(frozen=True)
class Reaction:
    """What a process manager decides in response to one event."""
    status: SagaStatus
    data: dict[str, Any]
    commands: list[Any] = field(default_factory=list)


class ProcessManager(ABC):
    """Abstract base for process managers.

    Subclasses implement:
    - subscribed_event_types: events the workflow reacts to.
    - _react(saga, event) -> Reaction | None: the transition function.
      saga is None until the workflow's first event has been handled.
    - _compensate(saga, failed_command, error) -> Reaction: commands that
      undo the steps already committed, after a forward command failed.
    Subclasses may override:
    - correlation_key(event): default is the event's correlation id.
    """

    def __init__(self, saga_store: Any, send: CommandSender) -> None:
        self._store = saga_store
        self._send = send

    @property
    def process_type(self) -> str:
        return type(self).__name__

    @property
    @abstractmethod
    def subscribed_event_types(self) -> list[str]:
        ...

    @abstractmethod
    def _react(self, saga: SagaState | None, event: DomainEvent) -> Reaction | None:
        ...

    @abstractmethod
    def _compensate(self, saga: SagaState, failed_command: Any, error: BaseException) -> Reaction:
        ...

    def correlation_key(self, event: DomainEvent) -> UUID:
        return event.correlation_id

    def saga(self, correlation_id: UUID) -> SagaState | None:
        return self._store.get(self.process_type, correlation_id)

    def handle(self, event: DomainEvent) -> list[Any]:
        """React to one event. Returns the commands sent successfully."""
        if event.event_type not in self.subscribed_event_types:
            return []

        key = self.correlation_key(event)
        saga = self.saga(key)
        if saga is not None and event.event_id in saga.processed_event_ids:
            return []

        reaction = self._react(saga, event)
        if reaction is None:
            if saga is not None:
                self._store.save(saga.mark_processed(event.event_id))
            return []

        if saga is None:
            saga = SagaState(
                correlation_id=key,
                process_type=self.process_type,
                status=SagaStatus.STARTED,
            )
            previous = None
        else:
            previous = saga.status
        saga = saga.transition(reaction.status, reaction.data).mark_processed(event.event_id)
        if previous != SagaStatus.COMPENSATING:
            saga = self._settle_if_nothing_to_undo(saga, reaction.commands)
        self._store.save(saga)

        if previous != saga.status:
            logger.info(
                "%s %s: %s -> %s on %s",
                self.process_type, key,
                previous.value if previous else "new", saga.status.value, event.event_type,
            )

        compensating = saga.status == SagaStatus.COMPENSATING
        return self._send_all(key, reaction.commands, compensating=compensating)

    def _send_all(self, key: UUID, commands: list[Any], compensating: bool) -> list[Any]:
        sent: list[Any] = []
        for command in commands:
            try:
                self._send(command)
            except Exception as e:
                if compensating:
                    self._fail_compensation(key, command, e)
                return sent + self._start_compensation(key, command, e)
            sent.append(command)
        return sent

    def _start_compensation(self, key: UUID, failed_command: Any, error: Exception) -> list[Any]:
        # Reload: commands sent before the failure may have advanced the saga.
        saga = self.saga(key)
        logger.warning(
            "%s %s: %s failed (%r), compensating",
            self.process_type, key, type(failed_command).__name__, error,
        )
        reaction = self._compensate(saga, failed_command, error)
        saga = saga.transition(SagaStatus.COMPENSATING, reaction.data)
        saga = self._settle_if_nothing_to_undo(saga, reaction.commands)
        self._store.save(saga)
        return self._send_all(key, reaction.commands, compensating=True)

    def _settle_if_nothing_to_undo(self, saga: SagaState, commands: list[Any]) -> SagaState:
        """A saga entering compensation with no compensating commands is already compensated."""
        if saga.status == SagaStatus.COMPENSATING and not commands:
            return saga.transition(SagaStatus.COMPENSATED)
        return saga

    def _fail_compensation(self, key: UUID, command: Any, error: Exception) -> None:
        saga = self.saga(key)
        self._store.save(replace(saga, requires_intervention=True))
        logger.error(
            "%s %s: compensation %s failed (%r); manual intervention required",
            self.process_type, key, type(command).__name__, error,
        )
        raise CompensationFailed(key, command, error) from error
