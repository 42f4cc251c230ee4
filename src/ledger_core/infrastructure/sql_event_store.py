"""SQL Event Store and Snapshot Store adapters (SQLAlchemy 2.0).

Implements the EventStore and SnapshotStore protocols against any
SQLAlchemy-supported database; SQLite is the default target.

Append is a compare-and-swap executed inside one transaction:
  read max(version) → compare with expected → insert batch → commit
Inside one process the adapter serializes writers with a lock. Across
processes the unique constraints decide the race. When an insert loses,
the stored state is read back to tell the two cases apart: if the batch's
events are already stored, another writer committed this very batch and the
stored events are returned; otherwise the (aggregate_id, version) slot was
taken and the loser gets ConcurrencyConflict.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import Engine, create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ledger_core.domain.events import (
    ConcurrencyConflict,
    DomainEvent,
    EventMetadata,
    EventValidationError,
    check_append_target,
)
from ledger_core.config import Settings
from ledger_core.domain.snapshot import Snapshot
from ledger_core.infrastructure.sql_models import Base, EventRecord, SnapshotRecord

logger = logging.getLogger(__name__)

_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def build_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine for url and make sure the schema exists.

    In-memory SQLite databases are pinned to a single shared connection so
    every session sees the same data.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in _IN_MEMORY_URLS:
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    Base.metadata.create_all(engine)
    logger.debug("Event store schema ready on %s", engine.url)
    return engine


def engine_from_settings(settings: Settings | None = None) -> Engine:
    """Build the engine described by the storage section of settings."""
    storage = (settings or Settings()).storage
    return build_engine(storage.database_url, echo=storage.echo)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on the way back; all stored timestamps are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _event_to_record(event: DomainEvent, version: int, created_at: datetime) -> EventRecord:
    m = event.metadata
    return EventRecord(
        event_id=str(m.event_id),
        aggregate_id=str(m.aggregate_id),
        aggregate_type=m.aggregate_type,
        event_type=m.event_type,
        version=version,
        schema_version=m.schema_version,
        payload=event.payload,
        metadata_json={
            "actor": m.actor,
            "correlation_id": str(m.correlation_id),
            "causation_id": str(m.causation_id) if m.causation_id else None,
            "occurred_at": m.occurred_at.isoformat(),
        },
        created_at=created_at,
    )


def _record_to_event(record: EventRecord) -> DomainEvent:
    meta = record.metadata_json
    causation_id = meta.get("causation_id")
    return DomainEvent(
        metadata=EventMetadata(
            event_id=UUID(record.event_id),
            event_type=record.event_type,
            schema_version=record.schema_version,
            aggregate_id=UUID(record.aggregate_id),
            aggregate_type=record.aggregate_type,
            aggregate_version=record.version,
            occurred_at=_as_utc(datetime.fromisoformat(meta["occurred_at"])),
            actor=meta.get("actor", "system"),
            correlation_id=UUID(meta["correlation_id"]),
            causation_id=UUID(causation_id) if causation_id else None,
            recorded_at=_as_utc(record.created_at),
            position=record.position,
        ),
        payload=dict(record.payload),
    )


# ---------------------------------------------------------------------------
# Event store
# ---------------------------------------------------------------------------

class SqlEventStore:
    """EventStore backed by the `events` table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)
        self._lock = threading.RLock()

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False) -> SqlEventStore:
        return cls(build_engine(url, echo=echo))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SqlEventStore:
        return cls(engine_from_settings(settings))

    @property
    def engine(self) -> Engine:
        return self._engine

    def append(
        self,
        aggregate_id: UUID,
        events: list[DomainEvent],
        expected_version: int,
    ) -> list[DomainEvent]:
        with self._lock:
            try:
                with self._session_factory() as session, session.begin():
                    return self._append_in(session, aggregate_id, events, expected_version)
            except IntegrityError as e:
                with self._session_factory() as session:
                    stored = self._stored_batch(session, aggregate_id, events)
                if stored is not None:
                    logger.info(
                        "Batch for %s was stored by a concurrent writer; returning stored events",
                        aggregate_id,
                    )
                    return stored
                actual = self.stream_version(aggregate_id)
                logger.info(
                    "Append to %s lost a race at version %d (stream now at %d)",
                    aggregate_id, expected_version, actual,
                )
                raise ConcurrencyConflict(aggregate_id, expected_version, actual) from e

    def _append_in(
        self,
        session: Session,
        aggregate_id: UUID,
        events: list[DomainEvent],
        expected_version: int,
    ) -> list[DomainEvent]:
        stored = self._stored_batch(session, aggregate_id, events)
        if stored is not None:
            return stored

        current = self._version_in(session, aggregate_id)
        if current != expected_version:
            raise ConcurrencyConflict(aggregate_id, expected_version, current)

        now = datetime.now(timezone.utc)
        records: list[EventRecord] = []
        for offset, event in enumerate(events, start=1):
            version = expected_version + offset
            check_append_target(event, aggregate_id, version)
            records.append(_event_to_record(event, version, now))

        session.add_all(records)
        session.flush()
        return [_record_to_event(r) for r in records]

    def _stored_batch(
        self,
        session: Session,
        aggregate_id: UUID,
        events: list[DomainEvent],
    ) -> list[DomainEvent] | None:
        """The stored copies of a batch that was already appended, or None.

        Raises EventValidationError if only part of the batch is stored.
        """
        if not events:
            return None
        ids = [str(e.event_id) for e in events]
        existing = {
            r.event_id: r
            for r in session.scalars(
                select(EventRecord).where(EventRecord.event_id.in_(ids))
            )
        }
        if not existing:
            return None
        if len(existing) < len(events):
            raise EventValidationError(
                f"Batch for aggregate {aggregate_id} partially overlaps stored events: "
                f"{sorted(existing)}"
            )
        return [_record_to_event(existing[i]) for i in ids]

    def _version_in(self, session: Session, aggregate_id: UUID) -> int:
        return _max_version(session, aggregate_id)

    def get_events(self, aggregate_id: UUID, from_version: int = 0) -> list[DomainEvent]:
        stmt = (
            select(EventRecord)
            .where(EventRecord.aggregate_id == str(aggregate_id))
            .where(EventRecord.version > from_version)
            .order_by(EventRecord.version)
        )
        return self._read(stmt)

    def get_events_by_type(self, event_type: str, since: int = 0) -> list[DomainEvent]:
        stmt = (
            select(EventRecord)
            .where(EventRecord.event_type == event_type)
            .where(EventRecord.position > since)
            .order_by(EventRecord.position)
        )
        return self._read(stmt)

    def get_all_events(
        self,
        after_position: int = 0,
        limit: int | None = None,
    ) -> list[DomainEvent]:
        stmt = (
            select(EventRecord)
            .where(EventRecord.position > after_position)
            .order_by(EventRecord.position)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._read(stmt)

    def stream_version(self, aggregate_id: UUID) -> int:
        with self._lock, self._session_factory() as session:
            return _max_version(session, aggregate_id)

    def last_position(self) -> int:
        with self._lock, self._session_factory() as session:
            return session.scalar(select(func.max(EventRecord.position))) or 0

    def event_exists(self, event_id: UUID) -> bool:
        stmt = select(EventRecord.position).where(EventRecord.event_id == str(event_id))
        with self._lock, self._session_factory() as session:
            return session.scalar(stmt) is not None

    def _read(self, stmt: Any) -> list[DomainEvent]:
        with self._lock, self._session_factory() as session:
            return [_record_to_event(r) for r in session.scalars(stmt)]


def _max_version(session: Session, aggregate_id: UUID) -> int:
    stmt = select(func.max(EventRecord.version)).where(
        EventRecord.aggregate_id == str(aggregate_id)
    )
    return session.scalar(stmt) or 0


# ---------------------------------------------------------------------------
# Snapshot store
# ---------------------------------------------------------------------------

class SqlSnapshotStore:
    """SnapshotStore backed by the `snapshots` table. Keeps every snapshot taken."""

    def __init__(self, engine: Engine) -> None:
        self._session_factory = sessionmaker(engine, expire_on_commit=False)
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SqlSnapshotStore:
        return cls(engine_from_settings(settings))

    def save(self, snapshot: Snapshot) -> None:
        record = SnapshotRecord(
            aggregate_id=str(snapshot.aggregate_id),
            aggregate_type=snapshot.aggregate_type,
            version=snapshot.version,
            schema_version=snapshot.schema_version,
            state=snapshot.state,
            taken_at=snapshot.taken_at,
        )
        with self._lock:
            try:
                with self._session_factory() as session, session.begin():
                    session.add(record)
            except IntegrityError:
                logger.debug(
                    "Snapshot for %s at version %d already stored",
                    snapshot.aggregate_id, snapshot.version,
                )

    def load_latest(self, aggregate_id: UUID) -> Snapshot | None:
        stmt = (
            select(SnapshotRecord)
            .where(SnapshotRecord.aggregate_id == str(aggregate_id))
            .order_by(SnapshotRecord.version.desc())
            .limit(1)
        )
        with self._lock, self._session_factory() as session:
            record = session.scalars(stmt).first()
            if record is None:
                return None
            return Snapshot(
                aggregate_id=UUID(record.aggregate_id),
                aggregate_type=record.aggregate_type,
                version=record.version,
                state=dict(record.state),
                schema_version=record.schema_version,
                taken_at=_as_utc(record.taken_at),
            )
