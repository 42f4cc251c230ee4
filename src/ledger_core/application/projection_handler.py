"""Projection Handler abstraction — the read-model engine.

Base class for all projections. A projection is a derived, rebuildable
view of events: rows keyed by a natural key, upserted by a pure _apply()
fold, each carrying a projected_version watermark.

Requirements:
- Receives events via handle(), in per-aggregate version order.
- Idempotent: an event at or below the aggregate's watermark is skipped,
  so redelivery (at-least-once) leaves the read model unchanged. The
  watermark only ever advances by one, so everything below it was applied.
- An event that arrives ahead of its predecessor is held, not applied, and
  is applied as soon as the missing versions arrive.
- Never skips ahead: when applying an event fails, the event is
  dead-lettered and its aggregate halts. Later events for that aggregate are
  refused until resume() is called after manual resolution.
- Rebuilds entirely from event history. The rebuild is built on a shadow
  copy and swapped in atomically, so live reads and ingestion continue
  meanwhile and an aborted rebuild changes nothing.
- Declares subscribed event types; events of other types still advance
  the aggregate watermark so read-your-writes waits terminate.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from ledger_core.domain.events import DomainEvent
from ledger_core.domain.upcasting import UpcasterRegistry

logger = logging.getLogger(__name__)


class ProjectionFailure(Exception):
    """Raised when an event cannot be applied to a read model."""

    def __init__(self, projection: str, event: DomainEvent, cause: BaseException) -> None:
        self.event = event
        self.cause = cause
        super().__init__(
            f"{projection} failed on {event.event_type} v{event.aggregate_version} "
            f"of aggregate {event.aggregate_id}: {cause!r}"
        )


class ProjectionHaltedError(Exception):
    """Raised when an event arrives for an aggregate halted by an earlier failure."""

    def __init__(self, projection: str, aggregate_id: UUID, blocked_by: DeadLetter) -> None:
        self.aggregate_id = aggregate_id
        self.blocked_by = blocked_by
        super().__init__(
            f"{projection} is halted for aggregate {aggregate_id} since "
            f"event {blocked_by.event.event_id} failed: {blocked_by.error}"
        )


@dataclass(frozen=True)
class DeadLetter:
    event: DomainEvent
    error: str
    failed_at: datetime


@dataclass
class _ReadModel:
    """Everything a rebuild replaces in one swap."""
    rows: dict[str, dict[str, Any]] = field(default_factory=dict)
    versions: dict[UUID, int] = field(default_factory=dict)
    position: int = 0
    # Events received ahead of a missing predecessor, by aggregate then version.
    held: dict[UUID, dict[int, DomainEvent]] = field(default_factory=dict)


class ProjectionHandler(ABC):
    """Abstract base for projection handlers.

    Subclasses implement:
    - subscribed_event_types: which event types this projection applies.
    - _apply(row, event) -> new_row: the pure fold for one row.
    Subclasses may override:
    - row_key(event): the natural key of the row an event updates
      (default: the aggregate id).
    """

    def __init__(self, upcasters: UpcasterRegistry | None = None) -> None:
        self._upcasters = upcasters
        self._model = _ReadModel()
        self._halted: dict[UUID, DeadLetter] = {}
        self._dead_letters: list[DeadLetter] = []
        self._lock = threading.RLock()
        self._advanced = threading.Condition(self._lock)

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    @abstractmethod
    def subscribed_event_types(self) -> list[str]:
        """Event types this projection applies to its rows."""
        ...

    @abstractmethod
    def _apply(self, row: dict[str, Any] | None, event: DomainEvent) -> dict[str, Any]:
        """Pure fold function: (current_row or None, event) -> new_row.

        Must be deterministic and must not read external sources. The row
        passed in is a private copy.
        """
        ...

    def row_key(self, event: DomainEvent) -> str:
        return str(event.aggregate_id)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def rows(self) -> dict[str, dict[str, Any]]:
        """Copy of every row, keyed by natural key."""
        with self._lock:
            return copy.deepcopy(self._model.rows)

    def get(self, key: str | UUID) -> dict[str, Any] | None:
        with self._lock:
            row = self._model.rows.get(str(key))
            return copy.deepcopy(row) if row is not None else None

    def projected_version(self, aggregate_id: UUID) -> int:
        """Highest version of the aggregate this projection has processed."""
        with self._lock:
            return self._model.versions.get(aggregate_id, 0)

    def held_versions(self, aggregate_id: UUID) -> list[int]:
        """Versions received ahead of a missing predecessor, not yet applied."""
        with self._lock:
            return sorted(self._model.held.get(aggregate_id, {}))

    @property
    def position(self) -> int:
        """Highest global position processed."""
        with self._lock:
            return self._model.position

    @property
    def dead_letters(self) -> list[DeadLetter]:
        with self._lock:
            return list(self._dead_letters)

    @property
    def halted_aggregates(self) -> set[UUID]:
        with self._lock:
            return set(self._halted)

    def wait_for_version(
        self,
        aggregate_id: UUID,
        min_version: int,
        timeout: float,
        poll_interval: float | None = None,
    ) -> bool:
        """Block until the aggregate's watermark reaches min_version.

        Wakes on every applied event and at least every poll_interval.
        Returns False if timeout elapses first.
        """
        deadline = time.monotonic() + timeout
        with self._advanced:
            while self._model.versions.get(aggregate_id, 0) < min_version:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = remaining if poll_interval is None else min(remaining, poll_interval)
                self._advanced.wait(timeout=wait)
            return True

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def handle(self, event: DomainEvent) -> None:
        """Apply a single event to the live read model.

        Raises ProjectionHaltedError if the aggregate is halted, and
        ProjectionFailure (after dead-lettering the failed event) if applying
        it, or a held successor it unblocks, fails.
        """
        with self._lock:
            blocked_by = self._halted.get(event.aggregate_id)
            if blocked_by is not None:
                raise ProjectionHaltedError(self.name, event.aggregate_id, blocked_by)

            try:
                applied = self._apply_to(self._model, event)
            except ProjectionFailure as failure:
                failed = failure.event
                letter = DeadLetter(
                    event=failed,
                    error=repr(failure.cause),
                    failed_at=datetime.now(timezone.utc),
                )
                self._halted[failed.aggregate_id] = letter
                self._dead_letters.append(letter)
                logger.error(
                    "%s halted aggregate %s at event %s (%s v%d): %s",
                    self.name, failed.aggregate_id, failed.event_id,
                    failed.event_type, failed.aggregate_version, letter.error,
                )
                self._advanced.notify_all()
                raise

            if applied:
                self._advanced.notify_all()

    def rebuild(self, event_store: Any) -> None:
        """Discard the read model and replay the full event log.

        The new model is built on the side from the log as it stands, then
        caught up with events appended meanwhile and swapped in under the
        lock. If replay fails, the live model is left untouched.
        """
        shadow = _ReadModel()
        for event in event_store.get_all_events():
            self._apply_to(shadow, event)

        with self._lock:
            for event in event_store.get_all_events(after_position=shadow.position):
                self._apply_to(shadow, event)
            self._swap(shadow)

        logger.info(
            "%s rebuilt: %d rows up to position %d",
            self.name, len(shadow.rows), shadow.position,
        )

    def rebuild_from(self, events: list[DomainEvent]) -> None:
        """Rebuild projection state entirely from a list of events.

        Replaces all rows and watermarks. Each aggregate's events are
        applied in version order whatever order the list has.
        """
        shadow = _ReadModel()
        for event in events:
            self._apply_to(shadow, event)
        with self._lock:
            self._swap(shadow)

    def resume(self, aggregate_id: UUID, event_store: Any) -> None:
        """Lift the halt on an aggregate and catch it up from the event store.

        Call after the cause of the dead letter has been fixed (e.g. an
        upcaster registered). Fails again, re-halting, if it has not.
        """
        with self._lock:
            if self._halted.pop(aggregate_id, None) is None:
                return
            logger.info("%s resuming aggregate %s", self.name, aggregate_id)
            # The store has every version; anything held is re-read from it.
            self._model.held.pop(aggregate_id, None)
            since = self._model.versions.get(aggregate_id, 0)
            for event in event_store.get_events(aggregate_id, from_version=since):
                self.handle(event)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _swap(self, shadow: _ReadModel) -> None:
        self._model = shadow
        self._halted.clear()
        self._advanced.notify_all()

    def _apply_to(self, model: _ReadModel, event: DomainEvent) -> bool:
        """Apply event, then any held successors it unblocks.

        Returns False if nothing was applied: the event was a duplicate,
        or it was held because an earlier version has not arrived yet.
        """
        aggregate_id = event.aggregate_id
        watermark = model.versions.get(aggregate_id, 0)
        if event.aggregate_version <= watermark:
            return False

        held = model.held.setdefault(aggregate_id, {})
        if event.aggregate_version > watermark + 1:
            held[event.aggregate_version] = event
            logger.warning(
                "%s holding %s v%d of %s until v%d arrives",
                self.name, event.event_type, event.aggregate_version,
                aggregate_id, watermark + 1,
            )
            return False

        next_event: DomainEvent | None = event
        while next_event is not None:
            self._fold(model, next_event)
            next_event = held.pop(next_event.aggregate_version + 1, None)
        if not held:
            del model.held[aggregate_id]
        return True

    def _fold(self, model: _ReadModel, event: DomainEvent) -> None:
        try:
            if self._upcasters is not None:
                event = self._upcasters.upcast(event)
            if event.event_type in self.subscribed_event_types:
                key = self.row_key(event)
                current = model.rows.get(key)
                row = self._apply(copy.deepcopy(current), event)
                previous = current["projected_version"] if current else 0
                row["projected_version"] = max(previous, event.aggregate_version)
                model.rows[key] = row
        except Exception as e:
            raise ProjectionFailure(self.name, event, e) from e

        model.versions[event.aggregate_id] = event.aggregate_version
        if event.position is not None:
            model.position = max(model.position, event.position)
