"""Command Handler — application-layer orchestrator.

The command handler connects the outside world to the domain:
1. Loads the aggregate through the repository (snapshot + tail, upcast).
2. Passes the command to the aggregate, which buffers the new events.
3. Saves the aggregate, appending under optimistic concurrency.

The handler contains NO domain logic. It loads, delegates, and persists.
When the save loses a race, the handler may reload and run the command
again (conflict_retries); once retries run out ConcurrencyConflict
reaches the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from ledger_core.application.repository import AggregateRepository
from ledger_core.config import Settings
from ledger_core.domain.events import ConcurrencyConflict, DomainEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a handled command.

    version is the aggregate's stream version after the command; callers pass
    it as min_version to the query side to read their own write.
    """
    aggregate_id: UUID
    version: int
    events: list[DomainEvent] = field(default_factory=list)


class CommandHandler:
    """Generic command handler that works with any aggregate repository.

    Orchestrates the full command flow:
      load → execute → save (→ publish, inside the repository)
    """

    def __init__(
        self,
        repository: AggregateRepository,
        conflict_retries: int | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._repository = repository
        if conflict_retries is None:
            conflict_retries = (settings or Settings()).commands.conflict_retries
        self._conflict_retries = conflict_retries

    def handle(self, command: Any, aggregate_id: UUID) -> CommandResult:
        """Handle a command against a specific aggregate instance.

        Raises DomainError if the aggregate rejects the command.
        Raises ConcurrencyConflict if the save still conflicts after retries.
        """
        attempt = 0
        while True:
            instance = self._repository.load(aggregate_id)
            updated = self._repository.aggregate.handle(instance, command)

            try:
                persisted = self._repository.save(updated)
            except ConcurrencyConflict:
                if attempt >= self._conflict_retries:
                    raise
                attempt += 1
                logger.info(
                    "Retrying %s on %s after conflict (attempt %d of %d)",
                    type(command).__name__, aggregate_id, attempt, self._conflict_retries,
                )
                continue

            return CommandResult(
                aggregate_id=aggregate_id,
                version=updated.version,
                events=persisted,
            )
