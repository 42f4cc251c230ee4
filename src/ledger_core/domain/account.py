"""Account aggregate and its commands.

States: none → open

Amounts are integers in minor currency units.

Schema history:
- MoneyDeposited v1: {"amount"}
- MoneyDeposited v2: {"amount", "currency"}  (v1 events default to the
  account's opening currency, USD at the time v1 was written)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from ledger_core.domain.aggregate import Aggregate, DomainError
from ledger_core.domain.events import DomainEvent
from ledger_core.domain.upcasting import Upcaster, UpcasterRegistry

ACCOUNT_OPENED = "AccountOpened"
MONEY_DEPOSITED = "MoneyDeposited"
MONEY_WITHDRAWN = "MoneyWithdrawn"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OpenAccount:
    account_id: UUID
    owner: str
    currency: str = "USD"
    actor: str = "system"
    correlation_id: UUID | None = None


@dataclass(frozen=True)
class DepositMoney:
    account_id: UUID
    amount: int
    currency: str | None = None
    actor: str = "system"
    correlation_id: UUID | None = None


@dataclass(frozen=True)
class WithdrawMoney:
    account_id: UUID
    amount: int
    actor: str = "system"
    correlation_id: UUID | None = None


# ---------------------------------------------------------------------------
# Upcasters
# ---------------------------------------------------------------------------

def _deposit_v1_to_v2(payload: dict[str, Any]) -> dict[str, Any]:
    return {"amount": payload["amount"], "currency": "USD"}


ACCOUNT_UPCASTERS = [
    Upcaster(MONEY_DEPOSITED, from_version=1, to_version=2, transform=_deposit_v1_to_v2),
]


def account_upcasters() -> UpcasterRegistry:
    """Registry holding every schema migration for account events."""
    return UpcasterRegistry(ACCOUNT_UPCASTERS)


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------

class AccountAggregate(Aggregate):
    """A money account. Balance never goes negative."""

    schema_versions = {MONEY_DEPOSITED: 2}

    @property
    def aggregate_type(self) -> str:
        return "Account"

    def initial_state(self) -> dict[str, Any]:
        return {
            "status": "none",
            "owner": None,
            "currency": None,
            "balance": 0,
        }

    def apply_event(self, state: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
        p = event.payload
        if event.event_type == ACCOUNT_OPENED:
            return {
                **state,
                "status": "open",
                "owner": p["owner"],
                "currency": p.get("currency", "USD"),
            }
        elif event.event_type == MONEY_DEPOSITED:
            return {**state, "balance": state["balance"] + p["amount"]}
        elif event.event_type == MONEY_WITHDRAWN:
            return {**state, "balance": state["balance"] - p["amount"]}
        return state

    def execute(self, state: dict[str, Any], command: Any) -> list[DomainEvent]:
        if isinstance(command, OpenAccount):
            if state["status"] != "none":
                raise DomainError(f"Account {command.account_id} already open")
            return [self._build_event(
                command, ACCOUNT_OPENED, command.account_id,
                {"owner": command.owner, "currency": command.currency},
            )]

        if state["status"] != "open":
            raise DomainError("Account is not open")

        if isinstance(command, DepositMoney):
            _require_positive(command.amount)
            currency = command.currency or state["currency"]
            if currency != state["currency"]:
                raise DomainError(
                    f"Cannot deposit {currency} into a {state['currency']} account"
                )
            return [self._build_event(
                command, MONEY_DEPOSITED, command.account_id,
                {"amount": command.amount, "currency": currency},
            )]

        if isinstance(command, WithdrawMoney):
            _require_positive(command.amount)
            if command.amount > state["balance"]:
                raise DomainError(
                    f"Insufficient funds: balance {state['balance']}, requested {command.amount}"
                )
            return [self._build_event(
                command, MONEY_WITHDRAWN, command.account_id,
                {"amount": command.amount},
            )]

        raise DomainError(f"Unknown command: {type(command).__name__}")


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise DomainError(f"Amount must be positive, got {amount}")
