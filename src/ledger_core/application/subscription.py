"""Catch-up Subscription — asynchronous delivery of the event log to a consumer.

Polls the event store for events after a checkpoint (global position) and
hands them to a handler in append order, which preserves per-aggregate
version order. The checkpoint advances only past events the handler
accepted, so delivery is at-least-once and consumers must be idempotent.

When the handler fails, the subscription stalls at that event: it is
retried on every poll and never skipped. Projections halt the affected
aggregate themselves, and resume() clears the stall once it is resolved.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from ledger_core.config import Settings
from ledger_core.domain.events import DomainEvent

logger = logging.getLogger(__name__)


class CatchUpSubscription:
    """Pull-based subscription to the global event log."""

    def __init__(
        self,
        event_store: Any,
        handler: Callable[[DomainEvent], None],
        checkpoint: int = 0,
        settings: Settings | None = None,
        name: str | None = None,
    ) -> None:
        settings = settings or Settings()
        self._event_store = event_store
        self._handler = handler
        self._checkpoint = checkpoint
        self._batch_size = settings.subscription.batch_size
        self._poll_interval = settings.subscription.poll_interval_seconds
        self._name = name or getattr(handler, "__qualname__", repr(handler))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._poll_lock = threading.Lock()
        self._stalled_at: int | None = None

    @property
    def checkpoint(self) -> int:
        """Global position of the last event delivered successfully."""
        return self._checkpoint

    @property
    def stalled_at(self) -> int | None:
        """Position of the event the handler keeps failing on, if any."""
        return self._stalled_at

    def poll(self) -> int:
        """Deliver every event currently after the checkpoint. Returns how many succeeded."""
        delivered = 0
        with self._poll_lock:
            while True:
                batch = self._event_store.get_all_events(
                    after_position=self._checkpoint, limit=self._batch_size,
                )
                if not batch:
                    return delivered
                for event in batch:
                    try:
                        self._handler(event)
                    except Exception:
                        if self._stalled_at != event.position:
                            logger.exception(
                                "Subscription %s stalled at position %s (event %s, %s)",
                                self._name, event.position, event.event_id, event.event_type,
                            )
                        self._stalled_at = event.position
                        return delivered
                    self._checkpoint = event.position
                    self._stalled_at = None
                    delivered += 1

    def start(self) -> None:
        """Start polling in a background daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"subscription-{self._name}", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        logger.debug("Subscription %s started at position %d", self._name, self._checkpoint)
        while not self._stop.is_set():
            self.poll()
            self._stop.wait(self._poll_interval)
        logger.debug("Subscription %s stopped at position %d", self._name, self._checkpoint)
