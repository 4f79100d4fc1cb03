"""Unified configuration schema for aerotodo_sync.

Defines Pydantic models for the YAML config structure with dedicated
sections for the Google connection, the sync engine, and logging.
Includes adapter functions that feed ``load_config()`` and the default
``SyncPolicy``.

Usage:
    from aerotodo_sync.config_schema import (
        UnifiedConfig, build_config, yaml_fallbacks,
    )

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = load_config(yaml_fallbacks=yaml_fallbacks(unified))
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .sync.policy import SyncPolicy

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class GoogleConfig(BaseModel):
    """Google OAuth client and Calendar API settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    client_id: str | None = Field(
        default=None, description="OAuth client id"
    )
    client_secret: str | None = Field(
        default=None, description="OAuth client secret"
    )
    token_url: str | None = Field(
        default=None, description="OAuth token endpoint override"
    )
    api_base: str | None = Field(
        default=None, description="Calendar API base URL override"
    )
    calendar_id: str | None = Field(
        default=None, description="Target calendar id (default: primary)"
    )
    time_zone: str | None = Field(
        default=None, description="IANA time zone for timed events"
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Per-request timeout in seconds",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per remote call for transient failures (1-10)",
    )
    backoff_base: float = Field(
        default=1.0,
        ge=0,
        description="Base delay in seconds for exponential backoff",
    )
    backoff_max: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound for a single backoff delay",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Engine scheduling and default policy settings.

    The policy fields are only defaults: once a policy has been saved to
    the settings document, the saved policy wins.
    """

    settings_file: str | None = Field(
        default=None, description="Settings document path"
    )
    interval_seconds: float = Field(
        default=60.0, ge=1, description="Seconds between cycles"
    )
    refresh_margin_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Refresh tokens expiring within this many seconds",
    )
    window_past_days: int = Field(default=30, ge=0)
    window_future_days: int = Field(default=60, ge=1)
    two_way: bool = Field(default=False)
    sync_all_tasks: bool = Field(default=False)
    sync_time_blocked_only: bool = Field(default=True)
    delete_remote_on_local_delete: bool = Field(default=False)
    import_profile_id: str | None = Field(
        default=None, description="Planner profile for imported tasks"
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    google: GoogleConfig = Field(default_factory=GoogleConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully -- anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


def yaml_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten the ``google`` and ``sync`` sections for ``load_config()``.

    ``None`` values are dropped so they never shadow env vars.
    """
    merged = {
        **unified.sync.model_dump(),
        **unified.google.model_dump(),
    }
    return {k: v for k, v in merged.items() if v is not None}


# ---------------------------------------------------------------------------
# Adapters: UnifiedConfig -> default policy
# ---------------------------------------------------------------------------


def default_policy(unified: UnifiedConfig) -> SyncPolicy:
    """Build the policy used before one has been saved to settings."""
    from .sync.policy import SyncPolicy

    sync = unified.sync
    return SyncPolicy(
        enabled=True,
        two_way=sync.two_way,
        sync_all_tasks=sync.sync_all_tasks,
        sync_time_blocked_only=sync.sync_time_blocked_only,
        delete_remote_on_local_delete=sync.delete_remote_on_local_delete,
        import_profile_id=sync.import_profile_id,
    )
