"""Account Balance Projection.

A derived view with one row per account, rebuilt entirely from events.

Consumes:
- AccountOpened
- MoneyDeposited (v2; v1 events are upcast on the way in)
- MoneyWithdrawn

Produces (row keys, keyed by account id):
- account_id, owner, currency
- balance
- deposit_count, withdrawal_count
- projected_version
"""

from __future__ import annotations

from typing import Any

from ledger_core.application.projection_handler import ProjectionHandler
from ledger_core.domain.account import (
    ACCOUNT_OPENED,
    MONEY_DEPOSITED,
    MONEY_WITHDRAWN,
    account_upcasters,
)
from ledger_core.domain.events import DomainEvent
from ledger_core.domain.upcasting import UpcasterRegistry


class AccountBalanceProjection(ProjectionHandler):

    def __init__(self, upcasters: UpcasterRegistry | None = None) -> None:
        super().__init__(upcasters=upcasters or account_upcasters())

    @property
    def subscribed_event_types(self) -> list[str]:
        return [ACCOUNT_OPENED, MONEY_DEPOSITED, MONEY_WITHDRAWN]

    def _apply(self, row: dict[str, Any] | None, event: DomainEvent) -> dict[str, Any]:
        if row is None:
            row = {
                "account_id": str(event.aggregate_id),
                "owner": None,
                "currency": None,
                "balance": 0,
                "deposit_count": 0,
                "withdrawal_count": 0,
            }

        payload = event.payload

        if event.event_type == ACCOUNT_OPENED:
            row["owner"] = payload["owner"]
            row["currency"] = payload.get("currency", "USD")

        elif event.event_type == MONEY_DEPOSITED:
            row["balance"] += payload["amount"]
            row["deposit_count"] += 1

        elif event.event_type == MONEY_WITHDRAWN:
            row["balance"] -= payload["amount"]
            row["withdrawal_count"] += 1

        return row
