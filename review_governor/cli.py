"""review-governor maintenance CLI.

Operates on the durable tier configured through the usual environment
variables (DURABLE_DATABASE_URL and friends).

Commands::

    review-governor stats                 - Cached apps and storage usage
    review-governor cleanup --days 30     - Drop review sets and analyses older than N days
    review-governor clear-app <app_id>    - Drop everything cached for one app
    review-governor clear-all             - Drop every durable row

Usage::

    python -m review_governor.cli cleanup --days 14
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from review_governor.config import Settings, get_settings
from review_governor.storage.durable import DurableStore, DurableStoreError
from review_governor.telemetry.logging import bind_app_context, configure_logging

# ------------------------------------------------------------------ #
# Formatting helpers
# ------------------------------------------------------------------ #

_RESET = "\033[0m"
_GREEN = "\033[32m"
_RED = "\033[31m"


def _ok(msg: str) -> None:
    print(f"{_GREEN}  [OK]{_RESET}  {msg}")


def _err(msg: str) -> None:
    print(f"{_RED}[ERROR]{_RESET} {msg}", file=sys.stderr)


def _dump(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


async def cmd_stats(store: DurableStore, args: argparse.Namespace) -> int:
    """Print cached apps and the storage estimate."""
    apps = await store.list_cached_apps()
    info = await store.get_storage_info()
    _dump({"apps": apps, "storage": info.to_dict()})
    return 0


async def cmd_cleanup(store: DurableStore, args: argparse.Namespace) -> int:
    """Age-based cleanup."""
    result = await store.cleanup_old_data(args.days)
    if not result.ok:
        _err(f"Cleanup failed: {result.error}")
        return 1
    _ok(
        f"Removed {result.reviews_removed} review set(s) and "
        f"{result.analysis_removed} analysis result(s) older than {args.days} days"
    )
    return 0


async def cmd_clear_app(store: DurableStore, args: argparse.Namespace) -> int:
    bind_app_context(args.app_id)
    removed = await store.clear_app_data(args.app_id)
    _ok(f"Cleared app {args.app_id}: {removed}")
    return 0


async def cmd_clear_all(store: DurableStore, args: argparse.Namespace) -> int:
    if not args.yes:
        _err("Refusing to clear every cached row without --yes")
        return 1
    await store.clear_all()
    _ok("Cleared all durable cache data")
    return 0


Command = Callable[[DurableStore, argparse.Namespace], Awaitable[int]]

_COMMANDS: dict[str, Command] = {
    "stats": cmd_stats,
    "cleanup": cmd_cleanup,
    "clear-app": cmd_clear_app,
    "clear-all": cmd_clear_all,
}


async def run_command(command: Command, args: argparse.Namespace, settings: Settings) -> int:
    """Open the durable store, run one command, close the store."""
    if not settings.durable_enabled:
        _err("Durable tier is disabled (DURABLE_DATABASE_URL is empty)")
        return 1

    store = DurableStore(settings.durable_database_url, echo=settings.durable_echo_sql)
    try:
        await store.init()
        return await command(store, args)
    except DurableStoreError as exc:
        _err(str(exc))
        return 1
    finally:
        await store.close()


# ------------------------------------------------------------------ #
# Argument parser
# ------------------------------------------------------------------ #


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="review-governor",
        description="Maintenance commands for the review analytics cache",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    subparsers.add_parser("stats", help="Show cached apps and storage usage")

    cleanup_parser = subparsers.add_parser("cleanup", help="Remove data older than N days")
    cleanup_parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Days of data to keep (default: JANITOR_DAYS_TO_KEEP)",
    )

    clear_app_parser = subparsers.add_parser("clear-app", help="Remove everything cached for one app")
    clear_app_parser.add_argument("app_id", help="Application identifier")

    clear_all_parser = subparsers.add_parser("clear-all", help="Remove every durable row")
    clear_all_parser.add_argument("--yes", action="store_true", help="Confirm the wipe")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the review-governor CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    command = _COMMANDS.get(args.command or "")
    if command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    if getattr(args, "days", None) is None and args.command == "cleanup":
        args.days = settings.janitor_days_to_keep
    return asyncio.run(run_command(command, args, settings))


if __name__ == "__main__":
    sys.exit(main())
