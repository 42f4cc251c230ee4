"""Payment aggregate and its commands.

States: none → requested → confirmed → refunded
                         ↘ failed

Every payment event carries the order_id it pays for, so process managers
can correlate payment outcomes with the originating order.

RequestPayment and RefundPayment are idempotent: repeating them after
they took effect raises no new events.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from ledger_core.domain.aggregate import Aggregate, DomainError
from ledger_core.domain.events import DomainEvent

PAYMENT_REQUESTED = "PaymentRequested"
PAYMENT_CONFIRMED = "PaymentConfirmed"
PAYMENT_FAILED = "PaymentFailed"
PAYMENT_REFUNDED = "PaymentRefunded"


@dataclass(frozen=True)
class RequestPayment:
    payment_id: UUID
    order_id: UUID
    amount: int
    actor: str = "system"
    correlation_id: UUID | None = None
    causation_id: UUID | None = None


@dataclass(frozen=True)
class ConfirmPayment:
    payment_id: UUID
    actor: str = "system"
    correlation_id: UUID | None = None


@dataclass(frozen=True)
class FailPayment:
    payment_id: UUID
    reason: str
    actor: str = "system"
    correlation_id: UUID | None = None


@dataclass(frozen=True)
class RefundPayment:
    payment_id: UUID
    actor: str = "system"
    correlation_id: UUID | None = None
    causation_id: UUID | None = None


class PaymentAggregate(Aggregate):

    @property
    def aggregate_type(self) -> str:
        return "Payment"

    def initial_state(self) -> dict[str, Any]:
        return {
            "status": "none",
            "order_id": None,
            "amount": 0,
            "failure_reason": None,
        }

    def apply_event(self, state: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
        p = event.payload
        if event.event_type == PAYMENT_REQUESTED:
            return {
                **state,
                "status": "requested",
                "order_id": p["order_id"],
                "amount": p["amount"],
            }
        elif event.event_type == PAYMENT_CONFIRMED:
            return {**state, "status": "confirmed"}
        elif event.event_type == PAYMENT_FAILED:
            return {**state, "status": "failed", "failure_reason": p.get("reason")}
        elif event.event_type == PAYMENT_REFUNDED:
            return {**state, "status": "refunded"}
        return state

    def execute(self, state: dict[str, Any], command: Any) -> list[DomainEvent]:
        if isinstance(command, RequestPayment):
            if state["status"] != "none":
                if state["order_id"] == str(command.order_id):
                    return []
                raise DomainError(
                    f"Payment {command.payment_id} already requested for another order"
                )
            return [self._build_event(
                command, PAYMENT_REQUESTED, command.payment_id,
                {
                    "payment_id": str(command.payment_id),
                    "order_id": str(command.order_id),
                    "amount": command.amount,
                },
            )]

        if isinstance(command, ConfirmPayment):
            self._require_status(state, "requested", command.payment_id)
            return [self._build_event(
                command, PAYMENT_CONFIRMED, command.payment_id,
                self._payload(state, command.payment_id),
            )]

        if isinstance(command, FailPayment):
            self._require_status(state, "requested", command.payment_id)
            return [self._build_event(
                command, PAYMENT_FAILED, command.payment_id,
                {**self._payload(state, command.payment_id), "reason": command.reason},
            )]

        if isinstance(command, RefundPayment):
            if state["status"] == "refunded":
                return []
            self._require_status(state, "confirmed", command.payment_id)
            return [self._build_event(
                command, PAYMENT_REFUNDED, command.payment_id,
                self._payload(state, command.payment_id),
            )]

        raise DomainError(f"Unknown command: {type(command).__name__}")

    @staticmethod
    def _require_status(state: dict[str, Any], status: str, payment_id: UUID) -> None:
        if state["status"] != status:
            raise DomainError(
                f"Payment {payment_id} must be {status} (status: {state['status']})"
            )

    @staticmethod
    def _payload(state: dict[str, Any], payment_id: UUID) -> dict[str, Any]:
        return {
            "payment_id": str(payment_id),
            "order_id": state["order_id"],
            "amount": state["amount"],
        }
