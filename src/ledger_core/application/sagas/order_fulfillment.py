"""Order Fulfillment Process — pays for an order, then confirms it.

Happy path (correlation key: order id):
  OrderPlaced      → RequestPayment     (started)
  PaymentConfirmed → ConfirmOrder       (step_confirmed)
  OrderConfirmed   →                    (completed)

Failure path:
  PaymentFailed                 → CancelOrder                  (compensating)
  ConfirmOrder rejected         → RefundPayment + CancelOrder  (compensating)
  OrderCancelled / PaymentRefunded acknowledge pending compensations;
  once none remain                                             (compensated)

An order cancelled from outside the saga is remembered, so a later
compensation only refunds the payment.

The payment id is derived from the order id, so a redelivered OrderPlaced
asks for the same payment again and RequestPayment stays idempotent.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID, uuid5

from ledger_core.application.process_manager import ProcessManager, Reaction
from ledger_core.domain.events import DomainEvent
from ledger_core.domain.order import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_PLACED,
    CancelOrder,
    ConfirmOrder,
)
from ledger_core.domain.payment import (
    PAYMENT_CONFIRMED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    RefundPayment,
    RequestPayment,
)
from ledger_core.domain.saga import SagaState, SagaStatus

_ACTOR = "order-fulfillment"
_IN_FLIGHT = (SagaStatus.STARTED, SagaStatus.STEP_CONFIRMED)


def payment_id_for(order_id: UUID) -> UUID:
    return uuid5(order_id, "payment")


class OrderFulfillmentProcess(ProcessManager):

    @property
    def subscribed_event_types(self) -> list[str]:
        return [
            ORDER_PLACED, ORDER_CONFIRMED, ORDER_CANCELLED,
            PAYMENT_CONFIRMED, PAYMENT_FAILED, PAYMENT_REFUNDED,
        ]

    def correlation_key(self, event: DomainEvent) -> UUID:
        return UUID(event.payload["order_id"])

    def _react(self, saga: SagaState | None, event: DomainEvent) -> Reaction | None:
        event_type = event.event_type

        if saga is None:
            if event_type != ORDER_PLACED:
                return None
            order_id = UUID(event.payload["order_id"])
            payment_id = payment_id_for(order_id)
            data = {
                "order_id": str(order_id),
                "payment_id": str(payment_id),
                "amount": event.payload["amount"],
                "payment_confirmed": False,
                "pending_compensations": [],
            }
            return Reaction(SagaStatus.STARTED, data, [RequestPayment(
                payment_id=payment_id,
                order_id=order_id,
                amount=event.payload["amount"],
                actor=_ACTOR,
                correlation_id=order_id,
                causation_id=event.event_id,
            )])

        data = dict(saga.data)

        if saga.status == SagaStatus.STARTED and event_type == PAYMENT_CONFIRMED:
            data["payment_confirmed"] = True
            return Reaction(SagaStatus.STEP_CONFIRMED, data, [ConfirmOrder(
                order_id=saga.correlation_id,
                actor=_ACTOR,
                correlation_id=saga.correlation_id,
                causation_id=event.event_id,
            )])

        if saga.status == SagaStatus.STEP_CONFIRMED and event_type == ORDER_CONFIRMED:
            return Reaction(SagaStatus.COMPLETED, data)

        if saga.status in _IN_FLIGHT and event_type == ORDER_CANCELLED:
            # Cancelled outside the saga; compensation must not wait for it again.
            data["order_cancelled"] = True
            return Reaction(saga.status, data)

        if saga.status in _IN_FLIGHT and event_type == PAYMENT_FAILED:
            return self._compensation(
                saga, data, event.payload.get("reason", "payment failed"), event.event_id,
            )

        if saga.status == SagaStatus.COMPENSATING and event_type in (
            ORDER_CANCELLED, PAYMENT_REFUNDED,
        ):
            pending = [p for p in data["pending_compensations"] if p != event_type]
            data["pending_compensations"] = pending
            status = SagaStatus.COMPENSATING if pending else SagaStatus.COMPENSATED
            return Reaction(status, data)

        return None

    def _compensate(self, saga: SagaState, failed_command: Any, error: BaseException) -> Reaction:
        reason = f"{type(failed_command).__name__} failed: {error}"
        return self._compensation(saga, dict(saga.data), reason, None)

    def _compensation(
        self,
        saga: SagaState,
        data: dict[str, Any],
        reason: str,
        causation_id: UUID | None,
    ) -> Reaction:
        """Undo everything committed so far: refund a confirmed payment, cancel the order."""
        order_id = saga.correlation_id
        commands: list[Any] = []
        pending: list[str] = []

        if data["payment_confirmed"]:
            commands.append(RefundPayment(
                payment_id=UUID(data["payment_id"]),
                actor=_ACTOR,
                correlation_id=order_id,
                causation_id=causation_id,
            ))
            pending.append(PAYMENT_REFUNDED)

        if not data.get("order_cancelled"):
            commands.append(CancelOrder(
                order_id=order_id,
                reason=reason,
                actor=_ACTOR,
                correlation_id=order_id,
                causation_id=causation_id,
            ))
            pending.append(ORDER_CANCELLED)

        data["pending_compensations"] = pending
        data["failure_reason"] = reason
        return Reaction(SagaStatus.COMPENSATING, data, commands)
