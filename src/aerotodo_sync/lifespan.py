"""Startup and shutdown of the sync engine inside a host application."""

from __future__ import annotations

import datetime as dt
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

from .auth import CredentialStore, TokenRefresher
from .config import Config, load_config
from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import UnifiedConfig, build_config, default_policy, yaml_fallbacks
from .core.client import CalendarClient
from .core.oauth import TokenEndpoint
from .state import JsonSettingsStore, SettingsBackend
from .sync import LinkStore, PolicyStore, Reconciler, SyncScheduler

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback."""
    print(msg, file=sys.stderr, flush=True)


def load_settings(
    config_overrides: dict[str, Any] | None = None,
) -> tuple[Config, UnifiedConfig]:
    """Resolve configuration from every source.

    Precedence: CLI args > env vars (.env loaded first) > YAML config >
    defaults.

    Raises:
        RuntimeError: If the configuration is incomplete or invalid.
    """
    try:
        # .env first so ${VAR} interpolation in YAML can use its values
        load_dotenv()

        unified = UnifiedConfig()
        sources = []
        config_files = discover_config_files()
        if config_files:
            unified = build_config(load_hierarchical_config())
            sources.append(f"config file: {config_files[0]}")

        overrides = config_overrides or {}
        config = load_config(
            client_id=overrides.get("client_id"),
            client_secret=overrides.get("client_secret"),
            calendar_id=overrides.get("calendar_id"),
            settings_file=overrides.get("settings_file"),
            debug=overrides.get("debug", False),
            yaml_fallbacks=yaml_fallbacks(unified),
        )
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise RuntimeError(
            f"Configuration error: {e}. Ensure GOOGLE_CLIENT_ID and "
            "GOOGLE_CLIENT_SECRET are set."
        ) from e

    if overrides:
        sources.append("CLI arguments")
    sources.append("environment variables")
    logger.info("Configuration loaded from: %s", ", ".join(sources))
    logger.info(
        "Calendar: %s, settings: %s", config.calendar_id, config.settings_file
    )
    return config, unified


def build_engine(
    config: Config,
    unified: UnifiedConfig | None = None,
    backend: SettingsBackend | None = None,
) -> dict[str, Any]:
    """Wire every engine component for one connected user.

    Args:
        config: Resolved configuration.
        unified: YAML configuration, source of the default policy.
        backend: Settings collaborator; a ``JsonSettingsStore`` at
            ``config.settings_file`` when omitted.

    Returns:
        Dict with ``config``, ``settings``, ``credentials``,
        ``refresher``, ``client``, ``policy_store``, ``link_store``,
        ``reconciler`` and ``scheduler``.
    """
    settings = backend or JsonSettingsStore(config.settings_file)
    credentials = CredentialStore(settings)
    refresher = TokenRefresher(
        credentials,
        TokenEndpoint(config),
        safety_margin=dt.timedelta(seconds=config.refresh_margin),
    )
    client = CalendarClient(config)
    policy_store = PolicyStore(
        settings, default_policy(unified or UnifiedConfig())
    )
    link_store = LinkStore(settings)
    reconciler = Reconciler(
        client,
        refresher,
        link_store,
        time_zone=config.time_zone,
        window_past_days=config.window_past_days,
        window_future_days=config.window_future_days,
    )
    scheduler = SyncScheduler(
        reconciler,
        credentials,
        policy_store,
        interval=config.sync_interval,
    )
    return {
        "config": config,
        "settings": settings,
        "credentials": credentials,
        "refresher": refresher,
        "client": client,
        "policy_store": policy_store,
        "link_store": link_store,
        "reconciler": reconciler,
        "scheduler": scheduler,
    }


@asynccontextmanager
async def sync_lifespan(
    config_overrides: dict[str, Any] | None = None,
    backend: SettingsBackend | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage engine startup and shutdown.

    On startup:
    - Load .env and the YAML config file, merge with CLI overrides
    - Build the credential store, refresher, calendar client, reconciler
      and scheduler
    - Report whether a credential bundle is already stored

    On shutdown:
    - Stop the scheduler and wait for an in-flight cycle to end

    The scheduler is not started here; the host calls
    ``scheduler.start(get_tasks, on_update_task, on_create_task)``.

    Args:
        config_overrides: Optional dict with config values from the CLI
            (client_id, client_secret, calendar_id, settings_file, debug).
        backend: Optional settings collaborator.

    Yields:
        The component dict returned by ``build_engine()``.

    Raises:
        RuntimeError: If configuration is invalid.
    """
    logger.info("Calendar sync engine starting...")
    config, unified = load_settings(config_overrides)
    engine = build_engine(config, unified, backend)

    if engine["credentials"].get() is None:
        logger.info("No Google credentials stored; sync stays idle")
        _stderr_print(
            "  Google Calendar not connected. Run 'aerotodo-sync connect'."
        )

    try:
        yield engine
    finally:
        scheduler: SyncScheduler = engine["scheduler"]
        scheduler.stop()
        await scheduler.join()
        logger.info("Calendar sync engine shut down")
