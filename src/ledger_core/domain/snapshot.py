"""Snapshot value object and Snapshot Store port.

A snapshot is a materialized aggregate state at a given stream version.
It is a read-amplification optimization only: a snapshot at version N is
valid only when followed by replay of events with version > N, and an
aggregate loaded without any snapshot must reach the identical state.

The store has plain key-value semantics. Guarding against snapshots newer
than the available events is the repository's job, not the store's.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import UUID


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Snapshot:
    aggregate_id: UUID
    aggregate_type: str
    version: int  # Last event folded into state
    state: dict[str, Any]  # JSON-compatible, opaque to the store
    schema_version: int = 1  # Shape of the serialized state
    taken_at: datetime = field(default_factory=_utcnow)


class SnapshotStore(Protocol):
    """Port for snapshot persistence."""

    def save(self, snapshot: Snapshot) -> None:
        """Persist a snapshot. Newer snapshots supersede older ones."""
        ...

    def load_latest(self, aggregate_id: UUID) -> Snapshot | None:
        """Return the snapshot with the highest version, or None."""
        ...
