"""Aggregate Repository — load and save aggregates through the event store.

load(aggregate_id):
  1. Fetch the latest snapshot (if any) — otherwise version 0, initial state.
  2. Fetch events with version > snapshot version.
  3. Upcast each event to its latest schema.
  4. Fold events onto the snapshot state, in version order.

save(instance):
  1. Append the instance's uncommitted events, expecting the version the
     aggregate had before they were raised.
  2. ConcurrencyConflict propagates: the caller reloads and retries. The
     repository never merges.
  3. If the new version crosses a snapshot interval, store a snapshot.
  4. Publish persisted events to the optional publisher.

Snapshots only save replay work. Loading with snapshots disabled yields
the same state; a snapshot that is newer than the stream, or written for an
older state shape, is ignored.
"""

from __future__ import annotations

import logging
from typing import Any, Callable
from uuid import UUID

from ledger_core.config import Settings
from ledger_core.domain.aggregate import Aggregate, AggregateInstance
from ledger_core.domain.events import ConcurrencyConflict, DomainEvent
from ledger_core.domain.snapshot import Snapshot
from ledger_core.domain.upcasting import UpcasterRegistry

logger = logging.getLogger(__name__)

Publisher = Callable[[DomainEvent], None]


class AggregateRepository:
    """Repository for one aggregate type."""

    def __init__(
        self,
        aggregate: Aggregate,
        event_store: Any,
        snapshot_store: Any = None,
        upcasters: UpcasterRegistry | None = None,
        publisher: Publisher | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or Settings()
        self._aggregate = aggregate
        self._event_store = event_store
        self._snapshot_store = snapshot_store if settings.snapshots.enabled else None
        self._upcasters = upcasters if upcasters is not None else UpcasterRegistry()
        # The aggregate must always be able to read back what it writes.
        for event_type, version in aggregate.schema_versions.items():
            self._upcasters.declare(event_type, version)
        self._publisher = publisher
        self._snapshot_interval = settings.snapshots.interval

    @property
    def aggregate(self) -> Aggregate:
        return self._aggregate

    def load(self, aggregate_id: UUID) -> AggregateInstance:
        """Reconstruct the current state of an aggregate.

        Raises UnknownEventSchemaError if a stored event cannot be upcast;
        the aggregate cannot be loaded until that is resolved.
        """
        state, version = self._from_snapshot(aggregate_id)

        for event in self._event_store.get_events(aggregate_id, from_version=version):
            state = self._aggregate.apply_event(state, self._upcasters.upcast(event))
            version = event.aggregate_version

        return AggregateInstance(aggregate_id=aggregate_id, state=state, version=version)

    def save(self, instance: AggregateInstance) -> list[DomainEvent]:
        """Persist an instance's uncommitted events. Returns the persisted events."""
        if not instance.uncommitted:
            return []

        try:
            persisted = self._event_store.append(
                instance.aggregate_id,
                list(instance.uncommitted),
                expected_version=instance.committed_version,
            )
        except ConcurrencyConflict as e:
            logger.info(
                "Save of %s %s rejected: expected version %d, stream at %d",
                self._aggregate.aggregate_type,
                instance.aggregate_id,
                e.expected_version,
                e.actual_version,
            )
            raise

        self._maybe_snapshot(instance)

        if self._publisher is not None:
            for event in persisted:
                self._publisher(event)

        return persisted

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _from_snapshot(self, aggregate_id: UUID) -> tuple[dict[str, Any], int]:
        if self._snapshot_store is None:
            return self._aggregate.initial_state(), 0

        snapshot = self._snapshot_store.load_latest(aggregate_id)
        if snapshot is None:
            return self._aggregate.initial_state(), 0

        if snapshot.schema_version != self._aggregate.state_schema_version:
            logger.info(
                "Ignoring snapshot of %s at v%d: state schema %d, aggregate expects %d",
                aggregate_id, snapshot.version,
                snapshot.schema_version, self._aggregate.state_schema_version,
            )
            return self._aggregate.initial_state(), 0

        stream_version = self._event_store.stream_version(aggregate_id)
        if snapshot.version > stream_version:
            logger.warning(
                "Ignoring snapshot of %s at v%d: stream only reaches v%d",
                aggregate_id, snapshot.version, stream_version,
            )
            return self._aggregate.initial_state(), 0

        return self._aggregate.restore_state(snapshot.state), snapshot.version

    def _maybe_snapshot(self, instance: AggregateInstance) -> None:
        if self._snapshot_store is None:
            return
        interval = self._snapshot_interval
        if instance.committed_version // interval == instance.version // interval:
            return

        snapshot = Snapshot(
            aggregate_id=instance.aggregate_id,
            aggregate_type=self._aggregate.aggregate_type,
            version=instance.version,
            state=self._aggregate.snapshot_state(instance.state),
            schema_version=self._aggregate.state_schema_version,
        )
        try:
            self._snapshot_store.save(snapshot)
        except Exception:
            # Snapshots are an optimization; the events are already committed.
            logger.exception(
                "Failed to store snapshot of %s at v%d", instance.aggregate_id, instance.version,
            )
            return
        logger.debug("Stored snapshot of %s at v%d", instance.aggregate_id, instance.version)
