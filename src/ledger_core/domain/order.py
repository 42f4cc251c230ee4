"""Order aggregate and its commands.

States: none → placed → confirmed
                     ↘ cancelled

CancelOrder is the compensating command of the order fulfilment saga, so
it is idempotent: cancelling an already-cancelled order raises no events.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from ledger_core.domain.aggregate import Aggregate, DomainError
from ledger_core.domain.events import DomainEvent

ORDER_PLACED = "OrderPlaced"
ORDER_CONFIRMED = "OrderConfirmed"
ORDER_CANCELLED = "OrderCancelled"


@dataclass(frozen=True)
class PlaceOrder:
    order_id: UUID
    customer: str
    amount: int
    actor: str = "system"
    correlation_id: UUID | None = None


@dataclass(frozen=True)
class ConfirmOrder:
    order_id: UUID
    actor: str = "system"
    correlation_id: UUID | None = None
    causation_id: UUID | None = None


@dataclass(frozen=True)
class CancelOrder:
    order_id: UUID
    reason: str
    actor: str = "system"
    correlation_id: UUID | None = None
    causation_id: UUID | None = None


class OrderAggregate(Aggregate):

    @property
    def aggregate_type(self) -> str:
        return "Order"

    def initial_state(self) -> dict[str, Any]:
        return {
            "status": "none",
            "customer": None,
            "amount": 0,
            "cancel_reason": None,
        }

    def apply_event(self, state: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
        p = event.payload
        if event.event_type == ORDER_PLACED:
            return {
                **state,
                "status": "placed",
                "customer": p["customer"],
                "amount": p["amount"],
            }
        elif event.event_type == ORDER_CONFIRMED:
            return {**state, "status": "confirmed"}
        elif event.event_type == ORDER_CANCELLED:
            return {**state, "status": "cancelled", "cancel_reason": p.get("reason")}
        return state

    def execute(self, state: dict[str, Any], command: Any) -> list[DomainEvent]:
        if isinstance(command, PlaceOrder):
            if state["status"] != "none":
                raise DomainError(f"Order {command.order_id} already placed")
            if command.amount <= 0:
                raise DomainError(f"Order amount must be positive, got {command.amount}")
            return [self._build_event(
                command, ORDER_PLACED, command.order_id,
                {
                    "order_id": str(command.order_id),
                    "customer": command.customer,
                    "amount": command.amount,
                },
            )]

        if isinstance(command, ConfirmOrder):
            if state["status"] != "placed":
                raise DomainError(
                    f"Order {command.order_id} cannot be confirmed (status: {state['status']})"
                )
            return [self._build_event(
                command, ORDER_CONFIRMED, command.order_id,
                {"order_id": str(command.order_id)},
            )]

        if isinstance(command, CancelOrder):
            if state["status"] == "cancelled":
                return []
            if state["status"] != "placed":
                raise DomainError(
                    f"Order {command.order_id} cannot be cancelled (status: {state['status']})"
                )
            return [self._build_event(
                command, ORDER_CANCELLED, command.order_id,
                {"order_id": str(command.order_id), "reason": command.reason},
            )]

        raise DomainError(f"Unknown command: {type(command).__name__}")
