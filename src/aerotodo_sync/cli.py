"""Command-line interface for inspecting and managing the calendar connection.

Subcommands:

- ``connect``    -- store a credential bundle issued by the authorization
  exchange and re-enable sync.
- ``status``     -- show connection, policy and last-cycle information.
- ``refresh``    -- refresh the access token now.
- ``disconnect`` -- clear credentials, disable sync, drop sync links.
- ``sync``       -- run one cycle against a JSON task file and print the
  report (``--dry-run`` previews without writing anything).
- ``run``        -- keep syncing a JSON task file on the configured
  interval until interrupted; logs go to a rotating file.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

from dotenv import load_dotenv

from . import __version__
from .auth import CredentialBundle, CredentialStore
from .config import DEFAULT_SETTINGS_FILE
from .config_loader import load_hierarchical_config
from .config_schema import build_config
from .errors import AuthError, ConfigError
from .lifespan import build_engine, load_settings, sync_lifespan
from .logger import setup_logging
from .state import JsonSettingsStore
from .sync import (
    JsonTaskStore,
    LinkStore,
    PolicyStore,
    SyncReport,
    disconnect,
    format_dry_run_preview,
    format_sync_report,
    report_to_json,
)

logger = logging.getLogger(__name__)


def _settings_store(args: argparse.Namespace) -> JsonSettingsStore:
    path = (
        args.settings
        or os.getenv("AEROTODO_SETTINGS_FILE")
        or DEFAULT_SETTINGS_FILE
    )
    return JsonSettingsStore(path)


def _read_bundle(args: argparse.Namespace) -> CredentialBundle:
    """Build a bundle from ``--token-file`` or the individual flags."""
    if args.token_file:
        with open(args.token_file, encoding="utf-8") as fh:
            data: dict[str, Any] = json.load(fh)
    else:
        data = {
            "access_token": args.access_token,
            "refresh_token": args.refresh_token,
            "expires_in": args.expires_in,
        }
    if not data.get("access_token") or not data.get("refresh_token"):
        raise ConfigError(
            "Both an access token and a refresh token are required"
        )
    if data.get("expires_at"):
        return CredentialBundle.model_validate(
            {k: data[k] for k in ("access_token", "refresh_token", "expires_at")}
        )
    return CredentialBundle.from_token_response(
        data["access_token"],
        data["refresh_token"],
        float(data.get("expires_in") or 3600),
    )


# ----------------------------------------------------------------------
# Subcommands
# ----------------------------------------------------------------------


def cmd_connect(args: argparse.Namespace) -> int:
    settings = _settings_store(args)
    bundle = _read_bundle(args)
    CredentialStore(settings).set(bundle)
    policies = PolicyStore(settings)
    policies.save(policies.load().model_copy(update={"enabled": True}))
    print(f"Connected. Access token valid until {bundle.expires_at.isoformat()}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    settings = _settings_store(args)
    bundle = CredentialStore(settings).get()
    status = PolicyStore(settings).status()
    status["connected"] = bundle is not None
    status["expires_at"] = bundle.expires_at.isoformat() if bundle else None
    status["links"] = len(LinkStore(settings).load())
    status["settings_file"] = str(settings.path)

    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return 0

    print(f"Settings file:  {status['settings_file']}")
    print(f"Connected:      {'yes' if status['connected'] else 'no'}")
    if bundle is not None:
        print(f"Token expires:  {status['expires_at']}")
    policy = status["policy"]
    print(f"Sync enabled:   {'yes' if policy['enabled'] else 'no'}")
    if status["disabled_reason"]:
        print(f"  reason:       {status['disabled_reason']}")
    print(f"Two-way:        {'yes' if policy['two_way'] else 'no'}")
    print(f"All tasks:      {'yes' if policy['sync_all_tasks'] else 'no'}")
    print(f"Linked tasks:   {status['links']}")
    print(f"Last sync:      {status['last_sync_at'] or 'never'}")
    if status["last_error"]:
        print(f"Last error:     {status['last_error']}")
    return 0


async def _refresh(engine: dict[str, Any], force: bool) -> CredentialBundle:
    refresher = engine["refresher"]
    if force:
        return await refresher.refresh(engine["credentials"].require())
    return await refresher.ensure_valid()


def cmd_refresh(args: argparse.Namespace) -> int:
    config, unified = load_settings(_overrides(args))
    engine = build_engine(config, unified)
    try:
        bundle = asyncio.run(_refresh(engine, force=not args.if_needed))
    except AuthError as exc:
        print(f"Refresh failed: {exc}", file=sys.stderr)
        return 1
    print(f"Access token valid until {bundle.expires_at.isoformat()}")
    return 0


def cmd_disconnect(args: argparse.Namespace) -> int:
    settings = _settings_store(args)
    disconnect(
        CredentialStore(settings),
        PolicyStore(settings),
        LinkStore(settings),
        clear_links=not args.keep_links,
    )
    print(
        "Disconnected."
        if args.keep_links
        else "Disconnected and cleared sync links."
    )
    return 0


def _task_store(args: argparse.Namespace) -> JsonTaskStore:
    return JsonTaskStore(JsonSettingsStore(args.tasks))


def cmd_sync(args: argparse.Namespace) -> int:
    config, unified = load_settings(_overrides(args))
    scheduler = build_engine(config, unified)["scheduler"]
    report: SyncReport = asyncio.run(
        scheduler.run_cycle(_task_store(args), dry_run=args.dry_run)
    )

    if args.json:
        print(json.dumps(report_to_json(report), indent=2, default=str))
    elif report.dry_run:
        print(format_dry_run_preview(report))
    else:
        print(format_sync_report(report))
    return 1 if report.skipped_reason or report.errors else 0


async def _run_forever(args: argparse.Namespace) -> None:
    async with sync_lifespan(_overrides(args)) as engine:
        scheduler = engine["scheduler"]
        scheduler.start_with_store(_task_store(args))
        await scheduler.join()


def cmd_run(args: argparse.Namespace) -> int:
    print(
        f"Syncing {args.tasks} until interrupted (Ctrl+C to stop)",
        file=sys.stderr,
    )
    asyncio.run(_run_forever(args))
    return 0


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.settings:
        overrides["settings_file"] = args.settings
    if getattr(args, "calendar", None):
        overrides["calendar_id"] = args.calendar
    if args.debug:
        overrides["debug"] = True
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aerotodo-sync",
        description="Manage the AeroTodo Google Calendar connection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Store tokens produced by the authorization exchange
  aerotodo-sync connect --token-file tokens.json

  # Show connection and last-sync information
  aerotodo-sync status --json

  # Disconnect but keep the task/event links for a later reconnect
  aerotodo-sync disconnect --keep-links

  # Preview one cycle, then run it
  aerotodo-sync sync --tasks tasks.json --dry-run
  aerotodo-sync sync --tasks tasks.json

  # Keep syncing in the background, logging to ~/.aerotodo_sync/sync.log
  aerotodo-sync run --tasks tasks.json
        """,
    )
    parser.add_argument(
        "--settings",
        help=f"Settings file (default: $AEROTODO_SETTINGS_FILE or {DEFAULT_SETTINGS_FILE})",
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default="text",
        help="Log record format (default: text)",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"aerotodo-sync version {__version__}",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    connect = sub.add_parser("connect", help="Store a credential bundle")
    connect.add_argument(
        "--token-file",
        help="JSON with access_token, refresh_token and expires_in or expires_at",
    )
    connect.add_argument("--access-token")
    connect.add_argument(
        "--refresh-token",
        help="(visible in process list -- prefer --token-file)",
    )
    connect.add_argument(
        "--expires-in",
        type=float,
        default=3600.0,
        help="Access token lifetime in seconds (default: 3600)",
    )
    connect.set_defaults(func=cmd_connect)

    status = sub.add_parser("status", help="Show connection status")
    status.add_argument("--json", action="store_true", help="Output JSON")
    status.set_defaults(func=cmd_status)

    refresh = sub.add_parser("refresh", help="Refresh the access token")
    refresh.add_argument("--calendar", help="Override the calendar id")
    refresh.add_argument(
        "--if-needed",
        action="store_true",
        help="Only refresh when the token is about to expire",
    )
    refresh.set_defaults(func=cmd_refresh)

    disconnect_cmd = sub.add_parser(
        "disconnect", help="Clear credentials and disable sync"
    )
    disconnect_cmd.add_argument(
        "--keep-links",
        action="store_true",
        help="Keep the task/event link table",
    )
    disconnect_cmd.set_defaults(func=cmd_disconnect)

    sync_cmd = sub.add_parser("sync", help="Run one sync cycle now")
    sync_cmd.add_argument(
        "--tasks", required=True, help="JSON task file to sync"
    )
    sync_cmd.add_argument("--calendar", help="Override the calendar id")
    sync_cmd.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would change without writing anything",
    )
    sync_cmd.add_argument("--json", action="store_true", help="Output JSON")
    sync_cmd.set_defaults(func=cmd_sync)

    run_cmd = sub.add_parser(
        "run", help="Sync on the configured interval until interrupted"
    )
    run_cmd.add_argument(
        "--tasks", required=True, help="JSON task file to sync"
    )
    run_cmd.add_argument("--calendar", help="Override the calendar id")
    run_cmd.set_defaults(func=cmd_run)


    return parser


def _configure_logging(args: argparse.Namespace) -> None:
    """Set up logging from the flags and the YAML ``logging`` section."""
    logging_config = build_config(load_hierarchical_config()).logging
    setup_logging(
        mode="daemon" if args.command == "run" else "cli",
        debug=args.debug,
        log_file=args.log_file or logging_config.file,
        log_format=args.log_format,
        level=logging_config.level,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    try:
        _configure_logging(args)
        return args.func(args)
    except (ConfigError, RuntimeError, OSError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
