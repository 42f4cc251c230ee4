"""Query Service — read access to a projection, with read-your-own-writes.

The Query Service is the read-side counterpart to the command side. Read
models are updated asynchronously, so a caller that just wrote version N of
an aggregate can ask to wait until the projection has caught up:

    result = command_bus.send(DepositMoney(account_id, 100))
    row = queries.get(account_id, min_version=result.version)

Rules enforced:
- Reads ONLY projections; never aggregates or the event store.
- The wait is bounded by a timeout and never blocks the writer path.
- On timeout, ProjectionLagError is raised; the caller may retry the read
  or accept stale data.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from ledger_core.application.projection_handler import ProjectionHandler
from ledger_core.config import Settings

logger = logging.getLogger(__name__)


class ProjectionLagError(Exception):
    """Raised when a projection does not reach the requested version in time. Transient."""

    def __init__(
        self,
        read_model_id: UUID,
        min_version: int,
        projected_version: int,
        timeout: float,
    ) -> None:
        self.read_model_id = read_model_id
        self.min_version = min_version
        self.projected_version = projected_version
        self.timeout = timeout
        super().__init__(
            f"Read model {read_model_id} at version {projected_version} did not reach "
            f"version {min_version} within {timeout:.3f}s"
        )


class QueryService:
    """Serves rows of one projection, keyed by aggregate id."""

    def __init__(
        self,
        projection: ProjectionHandler,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or Settings()
        self._projection = projection
        self._timeout = settings.query.timeout_seconds
        self._poll_interval = settings.query.poll_interval_seconds

    def get(
        self,
        read_model_id: UUID,
        min_version: int | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any] | None:
        """Return the row for read_model_id, or None if the projection has none.

        With min_version, first wait until the projection has processed that
        version of the aggregate; raise ProjectionLagError after timeout.
        """
        if min_version is not None and min_version > 0:
            timeout = self._timeout if timeout is None else timeout
            caught_up = self._projection.wait_for_version(
                read_model_id,
                min_version,
                timeout=timeout,
                poll_interval=self._poll_interval,
            )
            if not caught_up:
                projected = self._projection.projected_version(read_model_id)
                logger.info(
                    "Read of %s timed out waiting for v%d (projected v%d)",
                    read_model_id, min_version, projected,
                )
                raise ProjectionLagError(read_model_id, min_version, projected, timeout)

        return self._projection.get(read_model_id)
