"""
influx-migrate - Command Line Interface
=======================================
Migrate time-series data from InfluxDB 2.x to InfluxDB 3.x with checkpoints,
resume and post-migration verification.

Usage Examples:
    # Full migration (connection settings from env / .env / --config)
    influx-migrate migrate --start-time 2024-01-01 --end-time now()

    # Continue an interrupted migration
    influx-migrate resume influx2_metrics_to_influx3_metrics_2025-01-01T10-00-00-000Z

    # Compare source and destination without migrating
    influx-migrate verify

    # Checkpoint management
    influx-migrate checkpoints
    influx-migrate delete-checkpoint <migration-id>

Exit codes:
    0 success, 1 general error, 2 configuration error, 3 connection error,
    4 migration error, 5 verification failed
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

from . import __version__
from .config import AppConfig, load_config
from .migration import (
    CheckpointMismatchError,
    CheckpointNotFoundError,
    CheckpointStore,
    CompositeObserver,
    ConfigError,
    ConnectivityError,
    InfluxDestinationWriter,
    InfluxSourceReader,
    LoggingObserver,
    MigrationError,
    MigrationFailedError,
    MigrationJob,
    MigrationObserver,
    MigrationResult,
    SchemaInfo,
    VerificationReport,
    verify_migration,
)
from .migration.source import resolve_time_bound
from .utils import format_count, format_duration, format_percent

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_MIGRATION_ERROR = 4
EXIT_VERIFICATION_FAILED = 5

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

console = Console()


# =============================================================================
# Logging and progress
# =============================================================================

def setup_logging(level: str = 'INFO', log_file: Optional[str] = None) -> None:
    """Configure root logging; HTTP client request logs are kept at WARNING."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT,
                        handlers=handlers, force=True)
    for logger_name in ['httpx', 'httpcore']:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


class ProgressBarObserver(MigrationObserver):
    """Shows a tqdm progress bar of migrated records."""

    def __init__(self):
        self.pbar: Optional[tqdm] = None

    def run_started(self, progress, resumed):
        self.pbar = tqdm(
            initial=progress.migrated_records,
            unit="rec",
            unit_scale=True,
            desc="Migrating",
            file=sys.stderr,
            dynamic_ncols=True,
        )

    def batch_completed(self, progress, result):
        if self.pbar is None:
            return
        # the row count estimate arrives after run_started
        if progress.total_records and self.pbar.total != progress.total_records:
            self.pbar.total = progress.total_records
        self.pbar.update(result.accepted_count)
        self.pbar.set_postfix(batch=progress.current_batch_number,
                              skipped=progress.skipped_records + progress.rejected_records)

    def _close(self):
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def run_completed(self, progress):
        self._close()

    def run_failed(self, progress, error):
        self._close()


# =============================================================================
# Output
# =============================================================================

def print_metadata(metadata: SchemaInfo) -> None:
    console.print(f"[bold]Source measurements:[/bold] {len(metadata.measurements)}")
    if metadata.measurements:
        console.print("  " + ", ".join(metadata.measurements[:20])
                      + (" ..." if len(metadata.measurements) > 20 else ""))
    if metadata.time_range.is_empty:
        console.print("[bold]Source time range:[/bold] empty")
    else:
        console.print(f"[bold]Source time range:[/bold] {metadata.time_range.earliest} "
                      f"-> {metadata.time_range.latest}")


def print_result(result: MigrationResult) -> None:
    progress = result.progress
    console.print(f"\n[green]✓[/green] Migration {progress.migration_id} completed")
    console.print(f"  Records migrated: {format_count(progress.migrated_records)} "
                  f"({format_percent(progress.percent_complete)} of estimate)")
    console.print(f"  Batches: {progress.current_batch_number}")
    console.print(f"  Duration: {format_duration(result.duration_seconds)}")
    if progress.skipped_records or progress.rejected_records:
        console.print(f"  [yellow]Skipped records: {format_count(progress.skipped_records)}, "
                      f"rejected points: {format_count(progress.rejected_records)}[/yellow]")


def print_report(report: VerificationReport) -> None:
    """Print a formatted verification report."""
    table = Table(title="Migration Verification")
    table.add_column("Check")
    table.add_column("Result")
    table.add_column("Source")
    table.add_column("Destination")
    table.add_column("Detail")

    count = report.record_count
    table.add_row(
        "Record count",
        "[green]PASS[/green]" if count.passed else "[red]FAIL[/red]",
        format_count(count.source),
        format_count(count.destination),
        f"diff {format_count(count.difference)} ({count.percent_difference:.3f}%)",
    )
    time_range = report.time_range
    table.add_row(
        "Time range",
        "[green]PASS[/green]" if time_range.passed else "[red]FAIL[/red]",
        f"{time_range.source.earliest or '-'}\n{time_range.source.latest or '-'}",
        f"{time_range.destination.earliest or '-'}\n{time_range.destination.latest or '-'}",
        time_range.message,
    )
    console.print(table)

    for warning in report.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
    for error in report.errors:
        console.print(f"[red]✗ {error}[/red]")
    if report.passed:
        console.print("[green]✓ Verification passed[/green]")
    else:
        console.print("[red]✗ Verification failed[/red]")


def print_checkpoints(store: CheckpointStore, as_json: bool = False) -> None:
    records = store.list()
    if as_json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return
    if not records:
        console.print(f"No checkpoints in {store.directory}")
        return

    table = Table(title=f"Checkpoints ({store.directory})")
    table.add_column("Migration ID", overflow="fold")
    table.add_column("Status")
    table.add_column("Migrated", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Last timestamp")
    table.add_column("Updated")
    for record in records:
        table.add_row(
            record.migration_id,
            record.status.value,
            format_count(record.migrated_records),
            format_count(record.total_records) if record.total_records else "unknown",
            record.last_processed_timestamp or "-",
            record.last_update_time or "-",
        )
    console.print(table)


# =============================================================================
# Configuration from arguments
# =============================================================================

def config_overrides(args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    """Map command-line flags onto config sections (unset flags are None)."""
    def arg(name):
        return getattr(args, name, None)

    return {
        'source': {
            'host': arg('source_host'),
            'port': arg('source_port'),
            'token': arg('source_token'),
            'org': arg('source_org'),
            'bucket': arg('source_bucket'),
        },
        'destination': {
            'host': arg('dest_host'),
            'port': arg('dest_port'),
            'token': arg('dest_token'),
            'database': arg('dest_database'),
        },
        'migration': {
            'batch_size': arg('batch_size'),
            'checkpoint_interval': arg('checkpoint_interval'),
            'checkpoint_path': arg('checkpoint_path'),
            'read_window': arg('read_window'),
            'verify': False if arg('no_verify') else None,
        },
    }


def validate_time_bound(value: Optional[str], option: str) -> None:
    try:
        resolve_time_bound(value, 0)
    except ValueError as e:
        raise ConfigError(f"Invalid {option}: {e}") from e


def create_stores(config: AppConfig):
    reader = InfluxSourceReader(
        config.source,
        batch_size=config.migration.batch_size,
        default_start=config.migration.default_start,
        timeout=config.migration.request_timeout,
        read_window=config.migration.read_window,
    )
    writer = InfluxDestinationWriter(
        config.destination,
        timeout=config.migration.request_timeout,
        write_concurrency=config.migration.write_concurrency,
    )
    return reader, writer


def create_observer(args: argparse.Namespace) -> MigrationObserver:
    if getattr(args, 'no_progress', False):
        return LoggingObserver()
    return CompositeObserver([LoggingObserver(), ProgressBarObserver()])


# =============================================================================
# Commands
# =============================================================================

async def run_job(args: argparse.Namespace, config: AppConfig, migration_id: Optional[str]) -> int:
    """Shared body of ``migrate`` and ``resume``."""
    reader, writer = create_stores(config)
    async with reader, writer:
        job = MigrationJob(config, reader, writer,
                           CheckpointStore(config.migration.checkpoint_path),
                           observer=create_observer(args))

        console.print("Testing connections...")
        await job.check_connections()
        console.print("[green]✓[/green] Source and destination reachable")

        try:
            print_metadata(await job.get_source_metadata())
        except MigrationError as e:
            console.print(f"[yellow]⚠ Could not read source metadata: {e}[/yellow]")

        with logging_redirect_tqdm():
            if migration_id:
                result = await job.resume(migration_id, end=args.end_time)
            else:
                result = await job.run(start=args.start_time, end=args.end_time)

    print_result(result)
    if result.verification is not None:
        print_report(result.verification)
        if not result.verification.passed:
            return EXIT_VERIFICATION_FAILED
    return EXIT_SUCCESS


async def cmd_migrate(args: argparse.Namespace, config: AppConfig) -> int:
    validate_time_bound(args.start_time, '--start-time')
    validate_time_bound(args.end_time, '--end-time')
    return await run_job(args, config, migration_id=None)


async def cmd_resume(args: argparse.Namespace, config: AppConfig) -> int:
    validate_time_bound(args.end_time, '--end-time')
    return await run_job(args, config, migration_id=args.migration_id)


async def cmd_verify(args: argparse.Namespace, config: AppConfig) -> int:
    reader, writer = create_stores(config)
    async with reader, writer:
        job = MigrationJob(config, reader, writer)
        await job.check_connections()
        report = await verify_migration(reader, writer)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print_report(report)
    return EXIT_SUCCESS if report.passed else EXIT_VERIFICATION_FAILED


def cmd_checkpoints(args: argparse.Namespace, config: AppConfig) -> int:
    print_checkpoints(CheckpointStore(config.migration.checkpoint_path), as_json=args.json)
    return EXIT_SUCCESS


def cmd_delete_checkpoint(args: argparse.Namespace, config: AppConfig) -> int:
    store = CheckpointStore(config.migration.checkpoint_path)
    if store.delete(args.migration_id):
        console.print(f"[green]✓[/green] Deleted checkpoint {args.migration_id}")
        return EXIT_SUCCESS
    console.print(f"[red]✗[/red] No checkpoint found for migration ID: {args.migration_id}")
    return EXIT_ERROR


COMMANDS = {
    'migrate': (cmd_migrate, True),
    'resume': (cmd_resume, True),
    'verify': (cmd_verify, True),
    'checkpoints': (cmd_checkpoints, False),
    'delete-checkpoint': (cmd_delete_checkpoint, False),
}


async def async_main(args: argparse.Namespace) -> int:
    """Dispatch a parsed command and map errors to exit codes."""
    handler, needs_connections = COMMANDS[args.command]
    try:
        config = load_config(args.config, config_overrides(args), validate=needs_connections)
        result = handler(args, config)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    except ConfigError as e:
        console.print(f"[red]✗ Configuration error:[/red] {e}")
        for problem in e.problems:
            console.print(f"  - {problem}")
        return EXIT_CONFIG_ERROR

    except CheckpointMismatchError as e:
        console.print(f"[red]✗ {e}[/red]")
        return EXIT_CONFIG_ERROR

    except ConnectivityError as e:
        console.print(f"[red]✗ {e}[/red]")
        console.print(f"  Source: {'ok' if e.source_ok else 'unreachable'}, "
                      f"destination: {'ok' if e.destination_ok else 'unreachable'}")
        return EXIT_CONNECTION_ERROR

    except CheckpointNotFoundError as e:
        console.print(f"[red]✗ {e}[/red]")
        return EXIT_ERROR

    except MigrationFailedError as e:
        progress = e.progress
        console.print(f"[red]✗ {e}[/red]")
        console.print(f"  Records migrated: {format_count(progress.migrated_records)}")
        console.print(f"  Last processed timestamp: {progress.last_processed_timestamp or 'none'}")
        store = CheckpointStore(config.migration.checkpoint_path)
        if store.path_for(progress.migration_id).exists():
            console.print(f"  Resume with: influx-migrate resume {progress.migration_id}")
        return EXIT_MIGRATION_ERROR

    except MigrationError as e:
        console.print(f"[red]✗ {e}[/red]")
        return EXIT_ERROR

    except ValueError as e:
        # malformed migration id
        console.print(f"[red]✗ {e}[/red]")
        return EXIT_ERROR


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="influx-migrate",
        description="Migrate time-series data from InfluxDB 2.x to InfluxDB 3.x",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  influx-migrate migrate --start-time -30d
  influx-migrate migrate --start-time 2024-01-01 --end-time 2024-07-01 --batch-size 5000
  influx-migrate resume <migration-id>
  influx-migrate verify
  influx-migrate checkpoints

Connection settings may also come from INFLUX_2X_* / INFLUX_3X_* environment
variables, a .env file or a YAML config file (--config).
        """
    )

    # Global options
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', help='Config file path (YAML or JSON)')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Log level')
    parser.add_argument('--log-file', help='Also write logs to this file')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    def add_connection_args(sub):
        source = sub.add_argument_group('source (InfluxDB 2.x)')
        source.add_argument('--source-host', help='Source host (optionally with scheme and port)')
        source.add_argument('--source-port', type=int, help='Source port (default: 8086)')
        source.add_argument('--source-token', help='Source API token')
        source.add_argument('--source-org', help='Source organization')
        source.add_argument('--source-bucket', help='Source bucket')
        destination = sub.add_argument_group('destination (InfluxDB 3.x)')
        destination.add_argument('--dest-host', help='Destination host (optionally with scheme and port)')
        destination.add_argument('--dest-port', type=int, help='Destination port (default: 8181)')
        destination.add_argument('--dest-token', help='Destination API token')
        destination.add_argument('--dest-database', help='Destination database')

    # migrate
    migrate_parser = subparsers.add_parser('migrate', help='Run a full migration')
    add_connection_args(migrate_parser)
    migrate_parser.add_argument('--start-time',
                                help='Start of the time range (e.g. 2024-01-01, -30d; default: 1970-01-01)')
    migrate_parser.add_argument('--end-time', help='End of the time range (e.g. now(), 2024-12-31)')
    migrate_parser.add_argument('--batch-size', type=int, help='Records per batch (default: 10000)')
    migrate_parser.add_argument('--checkpoint-interval', type=int,
                                help='Records between checkpoints (default: 100000)')
    migrate_parser.add_argument('--read-window', type=float,
                                help='Seconds of data per source query (default: 3600)')
    migrate_parser.add_argument('--checkpoint-path', help='Checkpoint directory (default: ./checkpoints)')
    migrate_parser.add_argument('--no-verify', action='store_true', help='Skip verification afterwards')
    migrate_parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')

    # resume
    resume_parser = subparsers.add_parser('resume', help='Resume a migration from its checkpoint')
    resume_parser.add_argument('migration_id', help='Migration ID (see "checkpoints")')
    add_connection_args(resume_parser)
    resume_parser.add_argument('--end-time', help='End of the time range (default: now())')
    resume_parser.add_argument('--batch-size', type=int, help='Records per batch (default: 10000)')
    resume_parser.add_argument('--checkpoint-interval', type=int,
                               help='Records between checkpoints (default: 100000)')
    resume_parser.add_argument('--read-window', type=float,
                               help='Seconds of data per source query (default: 3600)')
    resume_parser.add_argument('--checkpoint-path', help='Checkpoint directory (default: ./checkpoints)')
    resume_parser.add_argument('--no-verify', action='store_true', help='Skip verification afterwards')
    resume_parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')

    # verify
    verify_parser = subparsers.add_parser('verify', help='Compare source and destination')
    add_connection_args(verify_parser)
    verify_parser.add_argument('--json', action='store_true', help='Output the report as JSON')

    # checkpoints
    checkpoints_parser = subparsers.add_parser('checkpoints', help='List saved checkpoints')
    checkpoints_parser.add_argument('--checkpoint-path', help='Checkpoint directory (default: ./checkpoints)')
    checkpoints_parser.add_argument('--json', action='store_true', help='Output as JSON')

    # delete-checkpoint
    delete_parser = subparsers.add_parser('delete-checkpoint', help='Delete a saved checkpoint')
    delete_parser.add_argument('migration_id', help='Migration ID')
    delete_parser.add_argument('--checkpoint-path', help='Checkpoint directory (default: ./checkpoints)')

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_ERROR

    setup_logging(args.log_level, args.log_file)
    return asyncio.run(async_main(args))


if __name__ == "__main__":
    sys.exit(main())
