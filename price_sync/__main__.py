"""CLI entry point for price-sync."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from price_sync.config import SyncConfig
    from price_sync.runtime import SyncRuntime

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
ENV_LOG_LEVEL = "PRICE_SYNC_LOG_LEVEL"


def _configure_logging(level: str | None) -> None:
    level_name = (level or os.getenv(ENV_LOG_LEVEL) or "INFO").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


def _load_config(args: argparse.Namespace) -> SyncConfig:
    from price_sync.config import SyncConfig

    config = SyncConfig.from_file(args.config) if args.config else SyncConfig()
    config = SyncConfig.from_env(config)
    if args.db:
        config = replace(config, db_path=Path(args.db))
    return config


def _build(args: argparse.Namespace) -> SyncRuntime:
    from price_sync.runtime import build_runtime

    return build_runtime(_load_config(args))


def _parse_entities(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    return [e.strip() for e in raw.split(",") if e.strip()]


def cmd_run(args: argparse.Namespace) -> int:
    """Run startup sync, then the scheduler until SIGINT/SIGTERM.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Exit code (0 for success).
    """
    import signal
    import threading

    runtime = _build(args)
    stop = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        stop.set()
        runtime.backfill.request_stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        runtime.scheduler.startup_sync()
        runtime.scheduler.start()
        while not stop.wait(1.0):
            pass
    finally:
        runtime.close()
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Run one reconciliation with retries and print the outcome."""
    from price_sync.sync.engine import ReconcileStatus

    runtime = _build(args)
    try:
        result = runtime.engine.trigger(entities=_parse_entities(args.entities))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        runtime.close()

    print(f"Status: {result.status}")
    if result.start_date is not None:
        print(f"  Range: {result.start_date} .. {result.end_date}")
    print(f"  Ingested: {result.ingested} ({result.records_processed} processed)")
    if result.complete_date is not None:
        print(f"  Complete through: {result.complete_date}")
    if result.message:
        print(f"  {result.message}")
    return 1 if result.status == ReconcileStatus.ERROR else 0


def cmd_backfill(args: argparse.Namespace) -> int:
    """Run (or resume) the initial historical backfill."""
    runtime = _build(args)
    try:
        result = runtime.backfill.run(force=args.force)
    except Exception as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        runtime.close()

    print(f"Status: {result.status}")
    if result.chunks_total:
        print(f"  Chunks: {result.chunks_completed}/{result.chunks_total}")
        print(f"  Records: {result.records_processed} ({result.ingested} ingested)")
    if result.message:
        print(f"  {result.message}")
    return 0


def cmd_sync_range(args: argparse.Namespace) -> int:
    """Fetch and ingest an arbitrary date range."""
    try:
        start = date.fromisoformat(args.start)
        end = date.fromisoformat(args.end)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    runtime = _build(args)
    try:
        result = runtime.backfill.sync_range(start, end, _parse_entities(args.entities))
    except Exception as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        runtime.close()

    print(f"Status: {result.status}")
    print(f"  Records: {result.records_processed} ({result.ingested} ingested)")
    return 0


def cmd_completeness(args: argparse.Namespace) -> int:
    """Print completeness of one local date."""
    try:
        day = date.fromisoformat(args.date)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    runtime = _build(args)
    try:
        result = runtime.oracle.is_date_complete(day)
    finally:
        runtime.close()

    print(f"{day}: {'complete' if result.is_complete else 'incomplete'}")
    print(f"{'Entity':<8} {'Count':<7} {'Expected':<10} {'Slot':<6} {'Complete'}")
    print("-" * 42)
    for item in result.entities:
        expected = f"{item.expected_min}-{item.expected_max}"
        print(
            f"{item.entity:<8} {item.count:<7} {expected:<10} "
            f"{str(item.interval_minutes) + 'm':<6} {'yes' if item.is_complete else 'no'}"
        )
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Print watermarks, initial sync status and recent runs."""
    runtime = _build(args)
    try:
        watermarks = runtime.state.list_watermarks()
        initial = runtime.state.get_initial_sync_status()
        runs = runtime.state.list_runs(limit=args.limit)
    finally:
        runtime.close()

    if initial.is_complete:
        print(f"Initial sync: complete through {initial.completed_date} ({initial.records_count} records)")
    elif initial.last_chunk is not None:
        print(f"Initial sync: in progress (last chunk ended {initial.last_chunk.last_completed_chunk_end})")
    else:
        print("Initial sync: not started")

    print(f"\n{'Entity':<8} {'Complete through':<18} {'Trustworthy'}")
    print("-" * 40)
    if not watermarks:
        print("No watermarks yet.")
    for w in watermarks:
        print(f"{w.entity:<8} {w.last_complete_date.isoformat():<18} {'yes' if w.trustworthy else 'no'}")

    print(f"\n{'ID':<6} {'Kind':<18} {'Status':<9} {'Records':<8} {'Started'}")
    print("-" * 64)
    for run in runs:
        started = run.started_at.strftime("%Y-%m-%d %H:%M")
        print(f"{run.id or '':<6} {run.kind:<18} {run.status:<9} {run.records_processed:<8} {started}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="price-sync",
        description="Day-ahead electricity price sync and scheduling engine",
    )
    parser.add_argument("--db", default=None, help="SQLite database path")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help=f"Log level (default: ${ENV_LOG_LEVEL} or INFO)",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        help="Available commands",
    )

    run_parser = subparsers.add_parser("run", help="Run the scheduler until interrupted")
    run_parser.set_defaults(func=cmd_run)

    reconcile_parser = subparsers.add_parser("reconcile", help="Run one reconciliation")
    reconcile_parser.add_argument(
        "--entities", default=None, help="Comma-separated entities (default: all)"
    )
    reconcile_parser.set_defaults(func=cmd_reconcile)

    backfill_parser = subparsers.add_parser("backfill", help="Run the initial historical backfill")
    backfill_parser.add_argument(
        "--force", action="store_true", help="Run even if the initial sync is complete"
    )
    backfill_parser.set_defaults(func=cmd_backfill)

    range_parser = subparsers.add_parser("sync-range", help="Sync an arbitrary date range")
    range_parser.add_argument("--start", required=True, help="First date (YYYY-MM-DD)")
    range_parser.add_argument("--end", required=True, help="Last date (YYYY-MM-DD)")
    range_parser.add_argument(
        "--entities", default=None, help="Comma-separated entities (default: all)"
    )
    range_parser.set_defaults(func=cmd_sync_range)

    completeness_parser = subparsers.add_parser(
        "completeness", help="Show completeness of a local date"
    )
    completeness_parser.add_argument("date", help="Date (YYYY-MM-DD)")
    completeness_parser.set_defaults(func=cmd_completeness)

    status_parser = subparsers.add_parser("status", help="Show sync state")
    status_parser.add_argument(
        "--limit", type=int, default=10, help="Recent runs to show (default: 10)"
    )
    status_parser.set_defaults(func=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Exit code.
    """
    from price_sync.config import ConfigurationError

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    _configure_logging(args.log_level)
    try:
        result: int = args.func(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    return result


if __name__ == "__main__":
    sys.exit(main())
