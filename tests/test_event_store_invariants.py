"""Invariant tests for the Event Store.

These tests verify the core properties that ANY event store implementation
must satisfy. They are written against the EventStore protocol and run
against every adapter: the in-memory store and the SQL store on an
in-memory SQLite database.

Invariants tested:
- Append-only: events are never modified or deleted after persistence.
- Immutable: a persisted event's content is identical on read.
- Sequential versioning: aggregate_version is contiguous per stream.
- Compare-and-swap: a stale expected_version raises ConcurrencyConflict.
- Atomic batches: a rejected batch leaves nothing behind.
- Idempotent append: re-appending a committed batch is a no-op.
- recorded_at and position are set by the store at persist time.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from ledger_core.domain.events import (
    ConcurrencyConflict,
    DomainEvent,
    EventMetadata,
    EventValidationError,
    new_event,
)
from ledger_core.infrastructure.in_memory_event_store import InMemoryEventStore
from ledger_core.infrastructure.sql_event_store import SqlEventStore


# ---------------------------------------------------------------------------
# Test helpers
# ---------------------------------------------------------------------------

def _make_event(
    aggregate_id: UUID | None = None,
    event_type: str = "test.Happened",
    payload: dict | None = None,
    aggregate_version: int = 0,
    correlation_id: UUID | None = None,
    causation_id: UUID | None = None,
) -> DomainEvent:
    """Create a minimal valid DomainEvent for testing."""
    aggregate_id = aggregate_id or uuid4()
    return DomainEvent(
        metadata=EventMetadata(
            event_id=uuid4(),
            event_type=event_type,
            schema_version=1,
            aggregate_id=aggregate_id,
            aggregate_type="Test",
            aggregate_version=aggregate_version,
            occurred_at=datetime.now(timezone.utc),
            actor="tester",
            correlation_id=correlation_id or aggregate_id,
            causation_id=causation_id,
        ),
        payload=payload or {},
    )


def _make_batch(aggregate_id: UUID, count: int) -> list[DomainEvent]:
    return [
        _make_event(aggregate_id, event_type=f"test.Event{i + 1}", payload={"n": i + 1})
        for i in range(count)
    ]


@pytest.fixture(params=["in_memory", "sql"])
def store(request):
    if request.param == "in_memory":
        return InMemoryEventStore()
    return SqlEventStore.from_url("sqlite://")


# ---------------------------------------------------------------------------
# Tests: Append and read
# ---------------------------------------------------------------------------

class TestAppendAndRead:

    def test_append_assigns_contiguous_versions(self, store) -> None:
        agg_id = uuid4()
        persisted = store.append(agg_id, _make_batch(agg_id, 3), expected_version=0)

        assert [e.aggregate_version for e in persisted] == [1, 2, 3]
        assert store.stream_version(agg_id) == 3

    def test_second_append_continues_the_stream(self, store) -> None:
        agg_id = uuid4()
        store.append(agg_id, _make_batch(agg_id, 2), expected_version=0)
        persisted = store.append(agg_id, _make_batch(agg_id, 2), expected_version=2)

        assert [e.aggregate_version for e in persisted] == [3, 4]
        versions = [e.aggregate_version for e in store.get_events(agg_id)]
        assert versions == [1, 2, 3, 4]

    def test_read_returns_identical_content(self, store) -> None:
        agg_id = uuid4()
        cause = uuid4()
        event = _make_event(
            agg_id, payload={"amount": 100, "nested": {"tags": ["a", "b"]}},
            causation_id=cause,
        )
        store.append(agg_id, [event], expected_version=0)

        [stored] = store.get_events(agg_id)
        assert stored.event_id == event.event_id
        assert stored.event_type == event.event_type
        assert stored.payload == {"amount": 100, "nested": {"tags": ["a", "b"]}}
        assert stored.metadata.actor == "tester"
        assert stored.correlation_id == agg_id
        assert stored.metadata.causation_id == cause
        assert stored.occurred_at == event.occurred_at

    def test_store_sets_recorded_at_and_position(self, store) -> None:
        agg_id = uuid4()
        before = datetime.now(timezone.utc) - timedelta(seconds=1)
        persisted = store.append(agg_id, _make_batch(agg_id, 2), expected_version=0)

        for event in persisted:
            assert event.recorded_at is not None
            assert event.recorded_at.tzinfo is not None
            assert event.recorded_at >= before
        assert [e.position for e in persisted] == [1, 2]

    def test_caller_mutation_after_append_does_not_change_stored_event(self, store) -> None:
        agg_id = uuid4()
        event = _make_event(agg_id, payload={"amount": 5})
        store.append(agg_id, [event], expected_version=0)

        event.payload["amount"] = 999

        assert store.get_events(agg_id)[0].payload == {"amount": 5}

    def test_unknown_stream_is_empty(self, store) -> None:
        agg_id = uuid4()
        assert store.get_events(agg_id) == []
        assert store.stream_version(agg_id) == 0

    def test_get_events_from_version(self, store) -> None:
        agg_id = uuid4()
        store.append(agg_id, _make_batch(agg_id, 5), expected_version=0)

        tail = store.get_events(agg_id, from_version=3)
        assert [e.aggregate_version for e in tail] == [4, 5]
        assert store.get_events(agg_id, from_version=5) == []

    def test_streams_are_independent(self, store) -> None:
        a, b = uuid4(), uuid4()
        store.append(a, _make_batch(a, 2), expected_version=0)
        store.append(b, _make_batch(b, 1), expected_version=0)

        assert store.stream_version(a) == 2
        assert store.stream_version(b) == 1
        assert all(e.aggregate_id == a for e in store.get_events(a))

    def test_empty_batch_is_accepted(self, store) -> None:
        agg_id = uuid4()
        assert store.append(agg_id, [], expected_version=0) == []
        assert store.stream_version(agg_id) == 0


# ---------------------------------------------------------------------------
# Tests: Global ordering
# ---------------------------------------------------------------------------

class TestGlobalOrdering:

    def test_get_all_events_in_append_order(self, store) -> None:
        a, b = uuid4(), uuid4()
        store.append(a, _make_batch(a, 2), expected_version=0)
        store.append(b, _make_batch(b, 1), expected_version=0)
        store.append(a, _make_batch(a, 1), expected_version=2)

        everything = store.get_all_events()
        assert [e.aggregate_id for e in everything] == [a, a, b, a]
        assert [e.position for e in everything] == [1, 2, 3, 4]
        assert store.last_position() == 4

    def test_get_all_events_after_position_with_limit(self, store) -> None:
        agg_id = uuid4()
        store.append(agg_id, _make_batch(agg_id, 5), expected_version=0)

        page = store.get_all_events(after_position=1, limit=2)
        assert [e.position for e in page] == [2, 3]
        assert store.get_all_events(after_position=5) == []

    def test_get_events_by_type_since(self, store) -> None:
        a, b = uuid4(), uuid4()
        store.append(a, [_make_event(a, "test.Opened"), _make_event(a, "test.Changed")], 0)
        store.append(b, [_make_event(b, "test.Opened")], 0)

        opened = store.get_events_by_type("test.Opened")
        assert [e.aggregate_id for e in opened] == [a, b]
        assert [e.aggregate_id for e in store.get_events_by_type("test.Opened", since=1)] == [b]

    def test_last_position_of_empty_store(self, store) -> None:
        assert store.last_position() == 0

    def test_event_exists(self, store) -> None:
        agg_id = uuid4()
        event = _make_event(agg_id)
        assert store.event_exists(event.event_id) is False
        store.append(agg_id, [event], expected_version=0)
        assert store.event_exists(event.event_id) is True


# ---------------------------------------------------------------------------
# Tests: Optimistic concurrency
# ---------------------------------------------------------------------------

class TestConcurrencyControl:

    def test_stale_expected_version_raises(self, store) -> None:
        agg_id = uuid4()
        store.append(agg_id, _make_batch(agg_id, 2), expected_version=0)

        with pytest.raises(ConcurrencyConflict) as exc_info:
            store.append(agg_id, _make_batch(agg_id, 1), expected_version=1)

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert store.stream_version(agg_id) == 2

    def test_expected_version_ahead_of_stream_raises(self, store) -> None:
        agg_id = uuid4()
        with pytest.raises(ConcurrencyConflict):
            store.append(agg_id, _make_batch(agg_id, 1), expected_version=3)

    def test_concurrent_appends_exactly_one_wins(self, store) -> None:
        agg_id = uuid4()
        store.append(agg_id, _make_batch(agg_id, 1), expected_version=0)

        writers = 8
        barrier = threading.Barrier(writers)
        outcomes: list[str] = []
        outcomes_lock = threading.Lock()

        def writer() -> None:
            batch = _make_batch(agg_id, 1)
            barrier.wait()
            try:
                store.append(agg_id, batch, expected_version=1)
                result = "ok"
            except ConcurrencyConflict:
                result = "conflict"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=writer) for _ in range(writers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == writers - 1
        assert [e.aggregate_version for e in store.get_events(agg_id)] == [1, 2]


# ---------------------------------------------------------------------------
# Tests: Idempotency and validation
# ---------------------------------------------------------------------------

class TestIdempotencyAndValidation:

    def test_reappending_committed_batch_is_noop(self, store) -> None:
        agg_id = uuid4()
        batch = _make_batch(agg_id, 2)
        first = store.append(agg_id, batch, expected_version=0)

        again = store.append(agg_id, batch, expected_version=0)

        assert [e.event_id for e in again] == [e.event_id for e in first]
        assert [e.aggregate_version for e in again] == [1, 2]
        assert store.stream_version(agg_id) == 2
        assert len(store.get_all_events()) == 2

    def test_partial_overlap_is_rejected(self, store) -> None:
        agg_id = uuid4()
        batch = _make_batch(agg_id, 1)
        store.append(agg_id, batch, expected_version=0)

        with pytest.raises(EventValidationError, match="partially overlaps"):
            store.append(agg_id, batch + _make_batch(agg_id, 1), expected_version=1)

        assert store.stream_version(agg_id) == 1

    def test_event_for_another_aggregate_rejects_whole_batch(self, store) -> None:
        agg_id = uuid4()
        batch = [_make_event(agg_id), _make_event(uuid4())]

        with pytest.raises(EventValidationError, match="belongs to aggregate"):
            store.append(agg_id, batch, expected_version=0)

        assert store.get_events(agg_id) == []
        assert store.last_position() == 0

    def test_prenumbered_event_must_match_assigned_version(self, store) -> None:
        agg_id = uuid4()
        wrong = _make_event(agg_id, aggregate_version=5)

        with pytest.raises(EventValidationError, match="carries version 5"):
            store.append(agg_id, [wrong], expected_version=0)

    def test_prenumbered_event_with_matching_version_is_accepted(self, store) -> None:
        agg_id = uuid4()
        event = _make_event(agg_id, aggregate_version=1)
        [stored] = store.append(agg_id, [event], expected_version=0)
        assert stored.aggregate_version == 1

    def test_new_event_factory_defaults(self) -> None:
        agg_id = uuid4()
        event = new_event("test.Created", agg_id, "Test", {"k": "v"})

        assert event.aggregate_version == 0
        assert event.correlation_id == agg_id
        assert event.metadata.actor == "system"
        assert event.schema_version == 1
        assert event.recorded_at is None
        assert event.position is None
