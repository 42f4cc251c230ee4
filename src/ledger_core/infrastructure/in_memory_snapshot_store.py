"""In-memory Snapshot Store adapter.

Implements the SnapshotStore protocol defined in domain/snapshot.py.
Keeps only the newest snapshot per aggregate; an older snapshot never
replaces a newer one.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import replace
from uuid import UUID

from ledger_core.domain.snapshot import Snapshot


class InMemorySnapshotStore:

    def __init__(self) -> None:
        self._snapshots: dict[UUID, Snapshot] = {}
        self._lock = threading.Lock()

    def save(self, snapshot: Snapshot) -> None:
        with self._lock:
            current = self._snapshots.get(snapshot.aggregate_id)
            if current is not None and current.version > snapshot.version:
                return
            self._snapshots[snapshot.aggregate_id] = replace(
                snapshot, state=copy.deepcopy(snapshot.state),
            )

    def load_latest(self, aggregate_id: UUID) -> Snapshot | None:
        with self._lock:
            snapshot = self._snapshots.get(aggregate_id)
        if snapshot is None:
            return None
        return replace(snapshot, state=copy.deepcopy(snapshot.state))
