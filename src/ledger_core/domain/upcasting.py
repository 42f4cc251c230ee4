"""Upcaster Registry — read-time event schema migration.

Stored events are never rewritten. When a payload shape changes, an
upcaster is registered that turns the old shape into the next one, and
the registry applies the chain every time the event is read:

  MoneyDeposited v1 --(add currency)--> v2 --> ... --> latest

Lookup is a table keyed by (event_type, from_version). An outdated event
with no matching upcaster, or an event newer than anything the registry
knows, is a fatal schema error: callers must not silently drop it.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ledger_core.domain.events import DomainEvent

logger = logging.getLogger(__name__)

PayloadTransform = Callable[[dict[str, Any]], dict[str, Any]]


class UnknownEventSchemaError(Exception):
    """Raised when an event's schema version cannot be brought to the latest shape."""

    def __init__(self, event: DomainEvent, reason: str) -> None:
        self.event = event
        super().__init__(
            f"Cannot upcast {event.event_type} v{event.schema_version} "
            f"(event {event.event_id}, aggregate {event.aggregate_id}): {reason}"
        )


@dataclass(frozen=True)
class Upcaster:
    """One step of a schema migration chain. transform must be pure."""

    event_type: str
    from_version: int
    to_version: int
    transform: PayloadTransform


class UpcasterRegistry:
    """Ordered upcaster chains per event type."""

    def __init__(self, upcasters: list[Upcaster] | None = None) -> None:
        self._upcasters: dict[tuple[str, int], Upcaster] = {}
        self._latest: dict[str, int] = {}
        for upcaster in upcasters or []:
            self.register(upcaster)

    def register(self, upcaster: Upcaster) -> None:
        """Register one upcaster. The latest version of its event type grows to match."""
        if upcaster.to_version <= upcaster.from_version:
            raise ValueError(
                f"Upcaster for {upcaster.event_type} must move forward: "
                f"v{upcaster.from_version} -> v{upcaster.to_version}"
            )
        key = (upcaster.event_type, upcaster.from_version)
        if key in self._upcasters:
            raise ValueError(
                f"Upcaster already registered for {upcaster.event_type} v{upcaster.from_version}"
            )
        self._upcasters[key] = upcaster
        self._latest[upcaster.event_type] = max(
            self._latest.get(upcaster.event_type, 1), upcaster.to_version,
        )
        logger.debug(
            "Registered upcaster %s v%d -> v%d",
            upcaster.event_type, upcaster.from_version, upcaster.to_version,
        )

    def declare(self, event_type: str, current_version: int) -> None:
        """Pin the latest schema version of an event type that may have no upcasters yet."""
        self._latest[event_type] = max(self._latest.get(event_type, 1), current_version)

    def latest_version(self, event_type: str) -> int:
        return self._latest.get(event_type, 1)

    def upcast(self, event: DomainEvent) -> DomainEvent:
        """Return the event in its latest schema shape.

        Raises UnknownEventSchemaError if the chain is broken or the event
        comes from a schema version this registry does not know.
        """
        target = self._latest.get(event.event_type)
        if target is None:
            if event.schema_version != 1:
                raise UnknownEventSchemaError(event, "event type has no registered schema")
            return event

        if event.schema_version > target:
            raise UnknownEventSchemaError(event, f"latest known version is v{target}")
        if event.schema_version == target:
            return event

        version = event.schema_version
        payload = event.payload
        while version < target:
            upcaster = self._upcasters.get((event.event_type, version))
            if upcaster is None:
                raise UnknownEventSchemaError(event, f"no upcaster from v{version}")
            try:
                payload = upcaster.transform(copy.deepcopy(payload))
            except Exception as e:
                raise UnknownEventSchemaError(
                    event, f"malformed payload for upcaster from v{version}: {e!r}",
                ) from e
            version = upcaster.to_version

        return event.with_payload(payload, schema_version=version)
