"""Tests for the Query Service and the Catch-up Subscription.

The write side and the read side are connected asynchronously here: a
CatchUpSubscription polls the event store in a background thread and feeds
the projection. Verified:
- A reader passing the version returned by a command sees its own write.
- A reader gets ProjectionLagError when the projection does not catch up.
- The subscription advances its checkpoint only past delivered events,
  stalls on a failing event and moves on once the failure is resolved.
"""

from __future__ import annotations

import json
import time
from uuid import uuid4

import pytest

from ledger_core.application.command_handler import CommandHandler
from ledger_core.application.projection_handler import ProjectionHaltedError
from ledger_core.application.projections.account_balance import AccountBalanceProjection
from ledger_core.application.query_service import ProjectionLagError, QueryService
from ledger_core.application.repository import AggregateRepository
from ledger_core.application.subscription import CatchUpSubscription
from ledger_core.config import load_settings
from ledger_core.domain.account import (
    MONEY_DEPOSITED,
    AccountAggregate,
    DepositMoney,
    OpenAccount,
    account_upcasters,
)
from ledger_core.domain.events import DomainEvent, new_event
from ledger_core.domain.upcasting import Upcaster
from ledger_core.infrastructure.in_memory_event_store import InMemoryEventStore


# ---------------------------------------------------------------------------
# Test helpers
# ---------------------------------------------------------------------------

_SETTINGS = load_settings({
    "subscription": {"poll_interval_seconds": 0.01, "batch_size": 2},
    "query": {"timeout_seconds": 5.0, "poll_interval_seconds": 0.01},
})


def _make_handler(store: InMemoryEventStore) -> CommandHandler:
    return CommandHandler(AggregateRepository(
        AccountAggregate(), store, upcasters=account_upcasters(),
    ))


def _open_with_deposits(store: InMemoryEventStore, *amounts: int):
    handler = _make_handler(store)
    account_id = uuid4()
    result = handler.handle(OpenAccount(account_id, owner="ada"), account_id)
    for amount in amounts:
        result = handler.handle(DepositMoney(account_id, amount), account_id)
    return account_id, result


# ---------------------------------------------------------------------------
# Tests: Query Service
# ---------------------------------------------------------------------------

class TestReadYourWrites:

    def test_reader_sees_own_write_via_background_subscription(self) -> None:
        store = InMemoryEventStore()
        projection = AccountBalanceProjection()
        subscription = CatchUpSubscription(store, projection.handle, settings=_SETTINGS)
        queries = QueryService(projection, settings=_SETTINGS)
        handler = _make_handler(store)
        account_id = uuid4()

        subscription.start()
        try:
            handler.handle(OpenAccount(account_id, owner="ada"), account_id)
            for _ in range(5):
                result = handler.handle(DepositMoney(account_id, 10), account_id)
                row = queries.get(account_id, min_version=result.version)
                assert row["projected_version"] >= result.version
            assert row["balance"] == 50
        finally:
            subscription.stop(timeout=5.0)

    def test_lagging_projection_raises(self) -> None:
        store = InMemoryEventStore()
        projection = AccountBalanceProjection()
        queries = QueryService(projection, settings=_SETTINGS)
        account_id, result = _open_with_deposits(store, 10)

        with pytest.raises(ProjectionLagError) as exc_info:
            queries.get(account_id, min_version=result.version, timeout=0.05)

        assert exc_info.value.min_version == 2
        assert exc_info.value.projected_version == 0

    def test_read_without_min_version_does_not_wait(self) -> None:
        projection = AccountBalanceProjection()
        queries = QueryService(projection, settings=_SETTINGS)
        assert queries.get(uuid4()) is None

    def test_read_after_catch_up(self) -> None:
        store = InMemoryEventStore()
        projection = AccountBalanceProjection()
        queries = QueryService(projection, settings=_SETTINGS)
        account_id, result = _open_with_deposits(store, 10, 15)

        CatchUpSubscription(store, projection.handle, settings=_SETTINGS).poll()

        assert queries.get(account_id, min_version=result.version)["balance"] == 25


# ---------------------------------------------------------------------------
# Tests: Catch-up Subscription
# ---------------------------------------------------------------------------

class TestCatchUpSubscription:

    def test_poll_delivers_everything_in_pages(self) -> None:
        store = InMemoryEventStore()
        _open_with_deposits(store, 1, 2, 3, 4)
        received: list[DomainEvent] = []
        subscription = CatchUpSubscription(store, received.append, settings=_SETTINGS)

        assert subscription.poll() == 5
        assert [e.position for e in received] == [1, 2, 3, 4, 5]
        assert subscription.checkpoint == 5
        assert subscription.poll() == 0

    def test_starts_from_given_checkpoint(self) -> None:
        store = InMemoryEventStore()
        _open_with_deposits(store, 1, 2)
        received: list[DomainEvent] = []

        CatchUpSubscription(store, received.append, checkpoint=2, settings=_SETTINGS).poll()

        assert [e.position for e in received] == [3]

    def test_redelivery_from_old_checkpoint_is_harmless(self) -> None:
        store = InMemoryEventStore()
        _open_with_deposits(store, 5, 6)
        projection = AccountBalanceProjection()
        CatchUpSubscription(store, projection.handle, settings=_SETTINGS).poll()
        before = json.dumps(projection.rows, sort_keys=True)

        CatchUpSubscription(store, projection.handle, checkpoint=0, settings=_SETTINGS).poll()

        assert json.dumps(projection.rows, sort_keys=True) == before

    def test_stalls_on_failing_event_and_recovers(self) -> None:
        store = InMemoryEventStore()
        upcasters = account_upcasters()
        projection = AccountBalanceProjection(upcasters=upcasters)
        subscription = CatchUpSubscription(store, projection.handle, settings=_SETTINGS)
        account_id, _ = _open_with_deposits(store, 10)
        store.append(account_id, [
            new_event(MONEY_DEPOSITED, account_id, "Account",
                      {"amount": 1, "currency": "USD", "memo": "v3"}, schema_version=3),
            new_event(MONEY_DEPOSITED, account_id, "Account",
                      {"amount": 5, "currency": "USD"}, schema_version=2),
        ], expected_version=2)

        assert subscription.poll() == 2
        assert subscription.checkpoint == 2
        assert subscription.stalled_at == 3
        assert projection.halted_aggregates == {account_id}

        # Still stuck: the event is retried, never skipped.
        assert subscription.poll() == 0
        assert subscription.checkpoint == 2
        with pytest.raises(ProjectionHaltedError):
            projection.handle(store.get_events(account_id)[3])

        upcasters.register(Upcaster(MONEY_DEPOSITED, 2, 3, lambda p: {**p, "memo": None}))
        projection.resume(account_id, store)

        assert subscription.poll() == 2
        assert subscription.checkpoint == 4
        assert subscription.stalled_at is None
        assert projection.get(account_id)["balance"] == 16

    def test_start_and_stop(self) -> None:
        store = InMemoryEventStore()
        received: list[DomainEvent] = []
        subscription = CatchUpSubscription(store, received.append, settings=_SETTINGS)

        subscription.start()
        try:
            account_id, _ = _open_with_deposits(store, 1)
            deadline = time.monotonic() + 5.0
            while len(received) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            subscription.stop(timeout=5.0)

        assert [e.aggregate_id for e in received] == [account_id, account_id]
