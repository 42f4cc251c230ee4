"""Command Bus — routes command objects to their command handlers.

Commands are frozen dataclasses. Each command type is registered with the
handler that owns its aggregate and the name of the command field that
carries the aggregate id:

    bus = CommandBus()
    bus.register(PlaceOrder, handler=order_handler, aggregate_id_field="order_id")
    result = bus.send(PlaceOrder(order_id=..., customer="ada", amount=250))

Unlike an outer request boundary, the bus does not convert failures into
results: DomainError and ConcurrencyConflict reach the sender, which
decides whether to retry, compensate or report.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from ledger_core.application.command_handler import CommandHandler, CommandResult


class UnknownCommandError(Exception):
    """Raised when a command type has no registered handler."""


@dataclass
class _CommandRegistration:
    """Internal: maps a command type to its handler and aggregate id field."""
    handler: CommandHandler
    aggregate_id_field: str


class CommandBus:

    def __init__(self) -> None:
        self._registrations: dict[type, _CommandRegistration] = {}

    def register(
        self,
        command_type: type,
        handler: CommandHandler,
        aggregate_id_field: str,
    ) -> None:
        """Register a command type with its handler."""
        self._registrations[command_type] = _CommandRegistration(
            handler=handler,
            aggregate_id_field=aggregate_id_field,
        )

    def send(self, command: Any) -> CommandResult:
        reg = self._registrations.get(type(command))
        if reg is None:
            raise UnknownCommandError(f"Unknown command type: {type(command).__name__}")

        aggregate_id = getattr(command, reg.aggregate_id_field)
        if not isinstance(aggregate_id, UUID):
            aggregate_id = UUID(str(aggregate_id))

        return reg.handler.handle(command, aggregate_id=aggregate_id)
