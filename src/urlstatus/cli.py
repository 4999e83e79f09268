# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""URL Status CLI: classification, sync, credentials, and settings commands.

Usage:
    urlstatus check URL [--cache-only]
    urlstatus status [URL]
    urlstatus clear URL
    urlstatus clear-all
    urlstatus sync [--full]
    urlstatus excluded URL
    urlstatus login TOKEN
    urlstatus logout
    urlstatus databases
    urlstatus properties DATABASE_ID
    urlstatus config show
    urlstatus config set KEY=VALUE [KEY=VALUE ...]
    urlstatus watch

Global flags: --config PATH (YAML overrides), --db PATH (SQLite store,
default ~/.urlstatus/store.db), -v/--verbose, --json-logs.
Results are printed to stdout as JSON; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any

import yaml

from .config import Settings, SettingsStore, read_overrides
from .errors import AuthError, ConfigurationError, UrlStatusError
from .kvstore_sqlite import SqliteKVStore
from .logging_config import configure
from .notion import NotionLookupService
from .service import UrlStatusService

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("~/.urlstatus/store.db")


def _print(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _public_settings(settings: Settings) -> dict[str, Any]:
    data = settings.model_dump(mode="json")
    if data["integration_token"]:
        data["integration_token"] = "***"
    return data


def _assignment(text: str) -> tuple[str, str]:
    key, sep, raw = text.partition("=")
    key = key.strip()
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {text!r}")
    return key, raw.strip()


def _setting_value(key: str, raw: str) -> Any:
    """String settings stay verbatim; others are parsed as YAML (``true``, ``15``, ``[...]``)."""
    if Settings.model_fields[key].annotation is str:
        return raw
    if not raw:
        return None
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid value for {key}: {e}") from e


@contextlib.asynccontextmanager
async def open_service(db_path: str | Path, overrides: dict[str, Any]) -> AsyncIterator[UrlStatusService]:
    """Build the service on a SQLite store and the Notion client; close all on exit."""
    async with contextlib.AsyncExitStack() as stack:
        store = await SqliteKVStore.create(db_path)
        stack.push_async_callback(store.close)
        settings_store = SettingsStore(store, overrides=overrides)
        lookup = NotionLookupService(settings_store)
        stack.push_async_callback(lookup.aclose)
        service = UrlStatusService(store, lookup, settings_store=settings_store)
        stack.push_async_callback(service.shutdown)
        yield service


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_check(service: UrlStatusService, args: argparse.Namespace) -> int:
    """Classify a URL (reconciled unless --cache-only)."""
    if args.cache_only:
        result = await service.engine.cache_only(args.url)
    else:
        result = await service.check(args.url)
    if result is None:
        _print({"url": args.url, "skipped": "classification already in progress"})
        return 0
    _print(result.to_dict())
    return 0


async def cmd_status(service: UrlStatusService, args: argparse.Namespace) -> int:
    """Show the last published status."""
    result = await service.get_status(args.url)
    data = result.to_dict()
    data["needs_authentication"] = await service.settings_store.needs_authentication()
    data["last_sync_timestamp"] = await service.sync.last_sync_timestamp()
    _print(data)
    return 0


async def cmd_clear(service: UrlStatusService, args: argparse.Namespace) -> int:
    removed = await service.clear_cache(args.url)
    _print({"url": args.url, "removed": removed})
    return 0


async def cmd_clear_all(service: UrlStatusService, args: argparse.Namespace) -> int:
    removed = await service.clear_all()
    _print({"removed": removed})
    return 0


async def cmd_sync(service: UrlStatusService, args: argparse.Namespace) -> int:
    result = await (service.full_sync() if args.full else service.delta_sync())
    _print(result.to_dict())
    return 0 if result.success else 1


async def cmd_excluded(service: UrlStatusService, args: argparse.Namespace) -> int:
    excluded = await service.is_excluded(args.url)
    _print({"url": args.url, "excluded": excluded})
    return 0


async def cmd_login(service: UrlStatusService, args: argparse.Namespace) -> int:
    """Store and verify an integration token."""
    try:
        user = await service.login(args.token)
    except AuthError as e:
        _print({"success": False, "error": str(e)})
        return 1
    _print({"success": True, "user": user.get("name") or user.get("id") or ""})
    return 0


async def cmd_logout(service: UrlStatusService, args: argparse.Namespace) -> int:
    removed = await service.logout()
    _print({"success": True, "removed": removed})
    return 0


async def cmd_databases(service: UrlStatusService, args: argparse.Namespace) -> int:
    """List the databases shared with the integration."""
    _print(await service.lookup.list_databases())
    return 0


async def cmd_properties(service: UrlStatusService, args: argparse.Namespace) -> int:
    """List the URL and last-edited-time properties of a database."""
    _print({"database_id": args.database_id, **await service.lookup.list_properties(args.database_id)})
    return 0


async def cmd_config(service: UrlStatusService, args: argparse.Namespace) -> int:
    """Show the effective settings, or persist ``KEY=VALUE`` changes."""
    if args.config_command == "set":
        unknown = sorted({key for key, _ in args.assignments} - set(Settings.model_fields))
        if unknown:
            print(f"Error: unknown setting(s): {', '.join(unknown)}", file=sys.stderr)
            return 1
        changes = {key: _setting_value(key, raw) for key, raw in args.assignments}
        saved = await service.save_settings(**changes)
        _print({"settings": _public_settings(saved.settings), **saved.to_dict()})
        return 0
    _print(_public_settings(await service.settings_store.load()))
    return 0


async def cmd_watch(service: UrlStatusService, args: argparse.Namespace) -> int:
    """Run periodic sync until interrupted."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    minutes = await service.reschedule_sync()
    if minutes is None:
        print("Error: settings incomplete, nothing to watch.", file=sys.stderr)
        return 1
    logger.info("Watching: delta sync every %.1f minutes (Ctrl+C to stop)", minutes)
    await stop.wait()
    return 0


Command = Callable[[UrlStatusService, argparse.Namespace], Awaitable[int]]

COMMANDS: dict[str, Command] = {
    "check": cmd_check,
    "status": cmd_status,
    "clear": cmd_clear,
    "clear-all": cmd_clear_all,
    "sync": cmd_sync,
    "excluded": cmd_excluded,
    "login": cmd_login,
    "logout": cmd_logout,
    "databases": cmd_databases,
    "properties": cmd_properties,
    "config": cmd_config,
    "watch": cmd_watch,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Classify URLs against a Notion database",
        prog="urlstatus",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines on stderr")
    parser.add_argument("--config", type=str, metavar="PATH", help="YAML settings overrides")
    parser.add_argument(
        "--db",
        type=str,
        metavar="PATH",
        default=str(DEFAULT_DB_PATH),
        help=f"SQLite store (default: {DEFAULT_DB_PATH})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_check = subparsers.add_parser("check", help="Classify a URL")
    p_check.add_argument("url", type=str, metavar="URL")
    p_check.add_argument("--cache-only", action="store_true", help="Use the local cache only (no remote query)")

    p_status = subparsers.add_parser("status", help="Show the last published status")
    p_status.add_argument("url", type=str, nargs="?", metavar="URL")

    p_clear = subparsers.add_parser("clear", help="Remove the cached entry for a URL")
    p_clear.add_argument("url", type=str, metavar="URL")

    subparsers.add_parser("clear-all", help="Remove every cached entry and the sync timestamp")

    p_sync = subparsers.add_parser("sync", help="Sync the cache with the database (delta by default)")
    p_sync.add_argument("--full", action="store_true", help="Re-read every record")

    p_excluded = subparsers.add_parser("excluded", help="Check whether domain rules exclude a URL")
    p_excluded.add_argument("url", type=str, metavar="URL")

    p_login = subparsers.add_parser("login", help="Store and verify an integration token")
    p_login.add_argument("token", type=str, metavar="TOKEN")

    subparsers.add_parser("logout", help="Forget the token and all cached data")
    subparsers.add_parser("databases", help="List databases shared with the integration")

    p_properties = subparsers.add_parser("properties", help="List URL and last-edited properties of a database")
    p_properties.add_argument("database_id", type=str, metavar="DATABASE_ID")

    p_config = subparsers.add_parser("config", help="Show or change stored settings")
    config_sub = p_config.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the effective settings (token masked)")
    p_set = config_sub.add_parser("set", help="Persist settings; a new database triggers a full sync")
    p_set.add_argument("assignments", type=_assignment, nargs="+", metavar="KEY=VALUE")

    subparsers.add_parser("watch", help="Run periodic sync until interrupted")
    return parser


async def _run(command: Command, args: argparse.Namespace, overrides: dict[str, Any]) -> int:
    async with open_service(args.db, overrides) as service:
        return await command(service, args)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        overrides = read_overrides(args.config)
    except UrlStatusError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    level = "DEBUG" if args.verbose else str(overrides.get("log_level", "INFO"))
    configure(json_output=args.json_logs, level=level)

    try:
        code = asyncio.run(_run(COMMANDS[args.command], args, overrides))
    except KeyboardInterrupt:
        sys.exit(130)
    except UrlStatusError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
