"""In-memory Saga Store adapter.

Implements the SagaStore protocol defined in domain/saga.py. Records are
keyed by (process_type, correlation_id) and replaced wholesale on save.
"""

from __future__ import annotations

import threading
from uuid import UUID

from ledger_core.domain.saga import SagaState


class InMemorySagaStore:

    def __init__(self) -> None:
        self._records: dict[tuple[str, UUID], SagaState] = {}
        self._lock = threading.Lock()

    def get(self, process_type: str, correlation_id: UUID) -> SagaState | None:
        with self._lock:
            return self._records.get((process_type, correlation_id))

    def save(self, state: SagaState) -> None:
        with self._lock:
            self._records[(state.process_type, state.correlation_id)] = state

    def all(self) -> list[SagaState]:
        with self._lock:
            return list(self._records.values())
