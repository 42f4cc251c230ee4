"""Configuration management.

Settings come from defaults, overridden by environment variables
(prefix LEDGER_, nested sections joined with "__") and finally by explicit
overrides passed to load_settings():

    LEDGER_SNAPSHOTS__INTERVAL=100
    LEDGER_QUERY__TIMEOUT_SECONDS=2.5
    LEDGER_STORAGE__DATABASE_URL=sqlite:///var/ledger.db

Uses pydantic-settings for validation and env var overriding.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class SnapshotConfig(BaseModel):
    enabled: bool = True
    interval: int = Field(default=50, ge=1)  # Take a snapshot every N events


class QueryConfig(BaseModel):
    timeout_seconds: float = Field(default=5.0, gt=0)  # Read-your-writes wait bound
    poll_interval_seconds: float = Field(default=0.05, gt=0)


class SubscriptionConfig(BaseModel):
    batch_size: int = Field(default=500, ge=1)
    poll_interval_seconds: float = Field(default=0.1, gt=0)


class CommandConfig(BaseModel):
    conflict_retries: int = Field(default=0, ge=0)  # Reload-and-retry attempts on conflict


class StorageConfig(BaseModel):
    database_url: str = "sqlite:///ledger.db"
    echo: bool = False  # Log all emitted SQL


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level settings for the event store, projections and sagas."""

    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    subscription: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    commands: CommandConfig = Field(default_factory=CommandConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    model_config = {"env_prefix": "LEDGER_", "env_nested_delimiter": "__"}


def load_settings(overrides: dict[str, Any] | None = None) -> Settings:
    """Load settings from env vars, with overrides applied on top.

    Args:
        overrides: Dict of section → values, e.g. {"snapshots": {"interval": 10}}.
    """
    return Settings(**(overrides or {}))
