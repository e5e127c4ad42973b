"""Command-line interface for branch-sync.

Operators review detected changes in the terminal: ``preview`` lists them,
``sync`` applies the subset selected with ``--approve*`` options.  A sync
with nothing approved is cancelled without writing anything.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from datetime import date
from typing import Any

import pydantic
from dotenv import load_dotenv
from pydantic import SecretStr

from . import __version__
from .config import load_config
from .config_loader import ensure_config
from .config_schema import UnifiedConfig
from .container import Container, build_container
from .credentials import generate_key
from .errors import BranchSyncError, ValidationError
from .logger import setup_logging
from .schema import ensure_schema
from .sync import reporter
from .sync.models import (
    ChangeType,
    RemoteLocation,
    RunState,
    SyncContext,
    SyncType,
    TableId,
)

logger = logging.getLogger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _context(container: Container, location_id: int) -> SyncContext:
    location = container.registry.get(location_id)
    return SyncContext(location=location, operator_name=container.config.sync.operator)


def _sync_type(args: argparse.Namespace, config: UnifiedConfig) -> SyncType:
    return SyncType.FULL if args.full else config.sync.default_type


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_init_db(args: argparse.Namespace, container: Container) -> int:
    ensure_schema(container.local_engine)
    print("Local schema is up to date.")
    if args.with_config:
        print(f"Config file: {ensure_config()}")
    return 0


def cmd_locations_list(args: argparse.Namespace, container: Container) -> int:
    locations = container.registry.list_locations(active_only=args.active)
    if args.json:
        _print_json(
            [loc.model_dump(mode="json", exclude={"password"}) for loc in locations]
        )
    else:
        print(reporter.format_locations(locations))
    return 0


def cmd_locations_add(args: argparse.Namespace, container: Container) -> int:
    password = args.password
    if password is None:
        password = getpass.getpass(f"Password for {args.user}@{args.host}: ")
    try:
        location = RemoteLocation(
            location_name=args.name,
            host=args.host,
            port=args.port or container.config.remote.default_port,
            database_name=args.database,
            username=args.user,
            password=SecretStr(password),
            is_active=not args.inactive,
        )
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid location: {exc.errors()[0]['msg']}") from None
    saved = container.registry.add(location)
    print(f"Added location {saved.location_id}: {saved.location_name}")
    return 0


def cmd_locations_remove(args: argparse.Namespace, container: Container) -> int:
    location = container.registry.get(args.location_id)
    container.registry.delete(args.location_id)
    print(f"Removed location {args.location_id}: {location.location_name}")
    return 0


def cmd_locations_test(args: argparse.Namespace, container: Container) -> int:
    location = container.registry.get(args.location_id)
    result = container.engine.test_connection(location)
    if args.json:
        _print_json(result.model_dump(mode="json"))
    elif result.success:
        print(f"{location.location_name}: {result.message} ({result.elapsed_seconds:.2f}s)")
    else:
        print(f"{location.location_name}: {result.message}", file=sys.stderr)
    return 0 if result.success else 1


def cmd_locations_tables(args: argparse.Namespace, container: Container) -> int:
    location = container.registry.get(args.location_id)
    watermarks = container.watermarks
    for name in args.enable or ():
        watermarks.set_enabled(args.location_id, TableId(name), True)
    for name in args.disable or ():
        watermarks.set_enabled(args.location_id, TableId(name), False)

    disabled = watermarks.disabled_tables(args.location_id)
    marks = watermarks.get_all(args.location_id)
    print(f"Tables for {location.location_name}:")
    for table in TableId:
        synced_at = marks.get(table)
        state = "disabled" if table in disabled else "enabled"
        last = f"{synced_at:%Y-%m-%d %H:%M:%S}" if synced_at else "never"
        print(f"  {table.value:<20} {state:<9} last sync: {last}")
    return 0


def cmd_preview(args: argparse.Namespace, container: Container) -> int:
    context = _context(container, args.location_id)
    run = container.engine.start(context, _sync_type(args, container.config))
    if run.state == RunState.FAILED:
        print(f"Sync failed: {run.failure_reason}", file=sys.stderr)
        return 1

    changes = list(run.changes)
    warnings = run.detection.warnings if run.detection else []
    if run.state == RunState.AWAITING_APPROVAL:
        run.cancel()

    if args.json:
        _print_json({"changes": reporter.changes_to_json(changes), "warnings": warnings})
    else:
        print(reporter.format_pending_changes(changes, warnings))
    return 0


def _select(run, args: argparse.Namespace) -> None:
    queue = run.queue
    if args.approve_all:
        queue.select_all()
    for change_type in args.approve_type or ():
        queue.approve_where(change_type=ChangeType(change_type))
    for table in args.approve_table or ():
        queue.approve_where(table=TableId(table))
    for change_id in args.approve or ():
        queue.set_approved(change_id, True)


def cmd_sync(args: argparse.Namespace, container: Container) -> int:
    context = _context(container, args.location_id)
    run = container.engine.start(context, _sync_type(args, container.config))
    name = context.location.location_name

    if run.state == RunState.FAILED:
        print(f"Sync failed: {run.failure_reason}", file=sys.stderr)
        return 1

    if run.state == RunState.AWAITING_APPROVAL:
        try:
            _select(run, args)
        except BranchSyncError:
            run.cancel()
            raise
        if not run.queue.approved:
            print(reporter.format_pending_changes(run.changes, run.detection.warnings))
            run.cancel()
            print("\nNo changes approved; nothing was written.", file=sys.stderr)
            return 0
        run.apply()

    result = run.result
    if args.json:
        _print_json(reporter.result_to_json(result))
    else:
        print(reporter.format_sync_result(result, name))
    return 0 if result.success else 1


def cmd_history(args: argparse.Namespace, container: Container) -> int:
    history = container.history
    if args.stats:
        stats = history.statistics(location_id=args.location)
        if args.json:
            _print_json({**stats.model_dump(mode="json"), "success_rate": stats.success_rate})
        else:
            print(reporter.format_statistics(stats))
        return 0

    entries = history.recent(limit=args.limit, location_id=args.location)
    if args.json:
        _print_json([entry.model_dump(mode="json") for entry in entries])
    else:
        print(reporter.format_history(entries))
    return 0


def cmd_logs_list(args: argparse.Namespace, container: Container) -> int:
    files = container.audit_log.log_files()
    if not files:
        print(f"No sync logs in {container.audit_log.log_dir}")
    for path in files:
        print(f"{path.name}  {path.stat().st_size:>8} bytes")
    return 0


def cmd_logs_show(args: argparse.Namespace, container: Container) -> int:
    try:
        day = date.fromisoformat(args.date) if args.date else None
    except ValueError:
        raise ValidationError(f"Invalid date '{args.date}': expected YYYY-MM-DD") from None
    content = container.audit_log.read(day)
    print(content or "No entries.", end="" if content else "\n")
    return 0


def cmd_logs_open(args: argparse.Namespace, container: Container) -> int:
    target = container.audit_log.current_path if args.today else None
    print(f"Opened {container.audit_log.open(target)}")
    return 0


def cmd_logs_clear(args: argparse.Namespace, container: Container) -> int:
    if not args.yes:
        raise ValidationError("Refusing to delete sync logs without --yes")
    removed = container.audit_log.clear()
    print(f"Deleted {removed} log files.")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="branch-sync",
        description="Detect, review and apply changes from remote branch databases",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create local tables and a starter config
  branch-sync init-db --with-config

  # Register a branch and check it is reachable
  branch-sync locations add --name "Branch A" --host 10.0.0.5 --database zkteco_db --user sync
  branch-sync locations test 1

  # Review what would change, then apply new records only
  branch-sync preview 1
  branch-sync sync 1 --approve-type new

  # Apply two specific changes from a full comparison
  branch-sync sync 1 --full --approve users:1001 --approve shifts:3

Configuration is read from .branch_sync/config.yml, BRANCH_SYNC_* environment
variables and .env.  Logs go to stderr; command output goes to stdout.
        """,
    )
    parser.add_argument("--version", action="version", version=f"branch-sync {__version__}")
    parser.add_argument("--database-url", help="Local database URL (overrides BRANCH_SYNC_DATABASE_URL)")
    parser.add_argument("--operator", help="Operator name recorded in history")
    parser.add_argument("--connect-timeout", type=int, help="Remote connect timeout in seconds")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", help="Also append log records to this file")
    parser.add_argument("--log-format", choices=["text", "json"], help="Log record format")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--json", action="store_true", help="Print machine-readable output")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the local tables")
    p.add_argument("--with-config", action="store_true", help="Also write a starter config file")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("generate-key", help="Print a new credential encryption key")
    p.set_defaults(func=None)

    # locations
    loc = sub.add_parser("locations", help="Manage remote locations")
    loc_sub = loc.add_subparsers(dest="locations_command", required=True)

    p = loc_sub.add_parser("list", help="List registered locations")
    p.add_argument("--active", action="store_true", help="Only active locations")
    p.set_defaults(func=cmd_locations_list)

    p = loc_sub.add_parser("add", help="Register a location")
    p.add_argument("--name", required=True)
    p.add_argument("--host", required=True)
    p.add_argument("--port", type=int)
    p.add_argument("--database", required=True)
    p.add_argument("--user", required=True)
    p.add_argument(
        "--password",
        help="Database password (visible in process list; omit to be prompted)",
    )
    p.add_argument("--inactive", action="store_true", help="Register as inactive")
    p.set_defaults(func=cmd_locations_add)

    p = loc_sub.add_parser("remove", help="Delete a location (history is kept)")
    p.add_argument("location_id", type=int)
    p.set_defaults(func=cmd_locations_remove)

    p = loc_sub.add_parser("test", help="Test the connection to a location")
    p.add_argument("location_id", type=int)
    p.set_defaults(func=cmd_locations_test)

    table_names = [t.value for t in TableId]
    p = loc_sub.add_parser("tables", help="Show or toggle synchronised tables")
    p.add_argument("location_id", type=int)
    p.add_argument("--enable", action="append", choices=table_names, metavar="TABLE")
    p.add_argument("--disable", action="append", choices=table_names, metavar="TABLE")
    p.set_defaults(func=cmd_locations_tables)

    # preview / sync
    p = sub.add_parser("preview", help="List pending changes without applying")
    p.add_argument("location_id", type=int)
    p.add_argument("--full", action="store_true", help="Ignore watermarks")
    p.set_defaults(func=cmd_preview)

    p = sub.add_parser("sync", help="Apply approved changes from a location")
    p.add_argument("location_id", type=int)
    p.add_argument("--full", action="store_true", help="Ignore watermarks")
    p.add_argument("--approve", action="append", metavar="CHANGE_ID", help="Approve one change")
    p.add_argument("--approve-all", action="store_true", help="Approve every change")
    p.add_argument(
        "--approve-type",
        action="append",
        choices=[c.value for c in ChangeType],
        help="Approve every change of this type",
    )
    p.add_argument(
        "--approve-table",
        action="append",
        choices=table_names,
        help="Approve every change in this table",
    )
    p.set_defaults(func=cmd_sync)

    # history
    p = sub.add_parser("history", help="Show sync history")
    p.add_argument("--location", type=int, help="Restrict to one location id")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--stats", action="store_true", help="Show aggregate statistics")
    p.set_defaults(func=cmd_history)

    # logs
    logs = sub.add_parser("logs", help="Daily sync log files")
    logs_sub = logs.add_subparsers(dest="logs_command", required=True)

    p = logs_sub.add_parser("list", help="List log files")
    p.set_defaults(func=cmd_logs_list)

    p = logs_sub.add_parser("show", help="Print one day's log")
    p.add_argument("--date", help="YYYY-MM-DD (default: today)")
    p.set_defaults(func=cmd_logs_show)

    p = logs_sub.add_parser("open", help="Open the log folder")
    p.add_argument("--today", action="store_true", help="Open today's file instead")
    p.set_defaults(func=cmd_logs_open)

    p = logs_sub.add_parser("clear", help="Delete all log files")
    p.add_argument("--yes", action="store_true", help="Confirm deletion")
    p.set_defaults(func=cmd_logs_clear)

    return parser


def main(argv: list[str] | None = None, container: Container | None = None) -> int:
    """Parse *argv*, run the command and return the exit code.

    Args:
        argv: Arguments without the program name.  Defaults to ``sys.argv``.
        container: Prebuilt services; built from configuration when omitted.
    """
    args = build_parser().parse_args(argv)

    if args.command == "generate-key":
        print(generate_key())
        return 0

    load_dotenv()
    try:
        config = container.config if container else load_config(
            {
                "database_url": args.database_url,
                "operator": args.operator,
                "connect_timeout": args.connect_timeout,
                "log_level": args.log_level,
                "log_file": args.log_file,
                "log_format": args.log_format,
            }
        )
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    setup_logging(
        level=config.logging.level,
        debug=args.debug,
        log_file=config.logging.file,
        log_format=config.logging.format,
    )

    owned = container is None
    try:
        if owned:
            container = build_container(config)
        return args.func(args, container)
    except BranchSyncError as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        if owned and container is not None:
            container.dispose()


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
