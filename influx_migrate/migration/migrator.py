"""
InfluxDB 2.x to 3.x Migration
=============================

Drives the read -> write loop between a SourceReader and a DestinationWriter,
tracks progress, writes periodic checkpoints and resumes from them.

Usage:
    async with InfluxSourceReader(config.source) as reader, \\
            InfluxDestinationWriter(config.destination) as writer:
        job = MigrationJob(config, reader, writer, CheckpointStore('./checkpoints'))
        await job.check_connections()
        result = await job.run(start='2024-01-01T00:00:00Z')

Batches are processed strictly one at a time so that the resume cursor always
marks a fully written prefix of the source stream.
"""

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from ..utils import format_count, format_duration, format_percent, format_rate
from .checkpoint import (
    CheckpointMetadata,
    CheckpointRecord,
    CheckpointStore,
    DestinationDescriptor,
    SourceDescriptor,
)
from .exceptions import (
    BatchWriteError,
    CheckpointIOError,
    CheckpointMismatchError,
    CheckpointNotFoundError,
    ConnectivityError,
    MigrationError,
    MigrationFailedError,
)
from .interfaces import DestinationWriter, SourceReader, TimeBound
from .models import Batch, MigrationProgress, MigrationStatus, SchemaInfo, WriteResult
from .timestamps import cursor_after, format_timestamp_ns, parse_timestamp_ns
from .verify import MigrationVerifier, VerificationReport

if TYPE_CHECKING:
    from ..config.config import AppConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Observers
# =============================================================================

class MigrationObserver:
    """
    Receives lifecycle events from a MigrationJob.

    Every hook is a no-op here; subclasses override what they need. Progress
    arguments are snapshots and may be kept.
    """

    def run_started(self, progress: MigrationProgress, resumed: bool) -> None:
        pass

    def batch_started(self, progress: MigrationProgress, batch_size: int) -> None:
        pass

    def batch_completed(self, progress: MigrationProgress, result: WriteResult) -> None:
        pass

    def checkpoint_saved(self, progress: MigrationProgress, path: Path) -> None:
        pass

    def checkpoint_failed(self, progress: MigrationProgress, error: Exception) -> None:
        pass

    def run_completed(self, progress: MigrationProgress) -> None:
        pass

    def run_failed(self, progress: MigrationProgress, error: Exception) -> None:
        pass


class LoggingObserver(MigrationObserver):
    """Reports a run through the standard logging module."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger
        self._started_at = time.monotonic()
        self._records_at_start = 0

    def _stats(self, progress: MigrationProgress) -> str:
        elapsed = time.monotonic() - self._started_at
        moved = progress.migrated_records - self._records_at_start
        return (
            f"{format_count(progress.migrated_records)} records "
            f"({format_percent(progress.percent_complete)}), "
            f"{format_rate(moved, elapsed)}, elapsed {format_duration(elapsed)}"
        )

    def run_started(self, progress: MigrationProgress, resumed: bool) -> None:
        self._started_at = time.monotonic()
        self._records_at_start = progress.migrated_records
        if resumed:
            self.log.info(
                f"Resuming migration {progress.migration_id} after "
                f"{progress.last_processed_timestamp or 'start'} "
                f"({format_count(progress.migrated_records)} records already migrated)"
            )
        else:
            self.log.info(f"Starting migration {progress.migration_id}")

    def batch_started(self, progress: MigrationProgress, batch_size: int) -> None:
        self.log.debug(
            f"Processing batch {progress.current_batch_number + 1} ({batch_size} records)"
        )

    def batch_completed(self, progress: MigrationProgress, result: WriteResult) -> None:
        self.log.debug(
            f"Batch {progress.current_batch_number} written: {result.accepted_count} accepted, "
            f"{result.skipped_count} skipped, {result.rejected_count} rejected"
        )
        if result.lost_count:
            self.log.warning(
                f"Batch {progress.current_batch_number}: {result.skipped_count} records skipped, "
                f"{result.rejected_count} points rejected by destination"
            )
            for rejected in result.rejected[:5]:
                self.log.debug(f"  Rejected: {rejected.line} ({rejected.reason})")

    def checkpoint_saved(self, progress: MigrationProgress, path: Path) -> None:
        self.log.info(f"Checkpoint saved to {path}: {self._stats(progress)}")

    def checkpoint_failed(self, progress: MigrationProgress, error: Exception) -> None:
        self.log.warning(
            f"Checkpoint at {format_count(progress.migrated_records)} records failed, "
            f"migration continues without it: {error}"
        )

    def run_completed(self, progress: MigrationProgress) -> None:
        self.log.info(
            f"Migration {progress.migration_id} completed in "
            f"{progress.current_batch_number} batches: {self._stats(progress)}"
        )
        if progress.skipped_records or progress.rejected_records:
            self.log.warning(
                f"{format_count(progress.skipped_records)} records skipped, "
                f"{format_count(progress.rejected_records)} points rejected"
            )

    def run_failed(self, progress: MigrationProgress, error: Exception) -> None:
        self.log.error(
            f"Migration {progress.migration_id} failed at batch "
            f"{progress.current_batch_number + 1}: {error}"
        )
        self.log.error(
            f"Migrated {format_count(progress.migrated_records)} records, last timestamp "
            f"{progress.last_processed_timestamp or 'none'}"
        )


class CompositeObserver(MigrationObserver):
    """Fans every event out to several observers in order."""

    def __init__(self, observers: Sequence[MigrationObserver]):
        self.observers = list(observers)

    def run_started(self, progress, resumed):
        for observer in self.observers:
            observer.run_started(progress, resumed)

    def batch_started(self, progress, batch_size):
        for observer in self.observers:
            observer.batch_started(progress, batch_size)

    def batch_completed(self, progress, result):
        for observer in self.observers:
            observer.batch_completed(progress, result)

    def checkpoint_saved(self, progress, path):
        for observer in self.observers:
            observer.checkpoint_saved(progress, path)

    def checkpoint_failed(self, progress, error):
        for observer in self.observers:
            observer.checkpoint_failed(progress, error)

    def run_completed(self, progress):
        for observer in self.observers:
            observer.run_completed(progress)

    def run_failed(self, progress, error):
        for observer in self.observers:
            observer.run_failed(progress, error)


# =============================================================================
# Migration job
# =============================================================================

@dataclass
class MigrationResult:
    """Result of a completed migration run."""
    success: bool
    status: MigrationStatus
    progress: MigrationProgress
    duration_seconds: float
    message: str
    verification: Optional[VerificationReport] = None

    @property
    def verification_passed(self) -> Optional[bool]:
        return None if self.verification is None else self.verification.passed


def last_timestamp(batch: Batch) -> Optional[str]:
    """Normalized ``_time`` of the last record in the batch that has a parseable one."""
    for record in reversed(batch):
        raw = record.get('_time')
        if raw is None or raw == '':
            continue
        try:
            return format_timestamp_ns(parse_timestamp_ns(raw))
        except ValueError:
            continue
    return None


class MigrationJob:
    """
    Orchestrates one migration between a source and a destination.

    Features:
    - Lazy, batch-at-a-time streaming from the source
    - Checkpoint every ``checkpoint_interval`` migrated records
    - Resume from a checkpoint, reading only data after its cursor
    - Lifecycle events pushed to a MigrationObserver

    A job instance owns its progress; do not run two jobs for the same
    migration id at once.
    """

    def __init__(
        self,
        config: 'AppConfig',
        reader: SourceReader,
        writer: DestinationWriter,
        checkpoint_store: Optional[CheckpointStore] = None,
        observer: Optional[MigrationObserver] = None,
    ):
        """
        Initialize migration job.

        Args:
            config: Source/destination identity and migration settings
            reader: Source of batches
            writer: Destination for batches
            checkpoint_store: Checkpoint persistence (defaults to settings.checkpoint_path)
            observer: Lifecycle observer (defaults to LoggingObserver)
        """
        self.config = config
        self.settings = config.migration
        self.reader = reader
        self.writer = writer
        self.checkpoint_store = checkpoint_store or CheckpointStore(self.settings.checkpoint_path)
        self.observer = observer or LoggingObserver()
        self.progress: Optional[MigrationProgress] = None

    @property
    def source_descriptor(self) -> SourceDescriptor:
        source = self.config.source
        return SourceDescriptor(host=source.host, org=source.org, bucket=source.bucket)

    @property
    def destination_descriptor(self) -> DestinationDescriptor:
        destination = self.config.destination
        return DestinationDescriptor(host=destination.host, database=destination.database)

    # ------------------------------------------------------------------
    # Preflight
    # ------------------------------------------------------------------

    async def check_connections(self) -> Dict[str, bool]:
        """
        Test both stores concurrently.

        Raises:
            ConnectivityError: If either side is unreachable
        """
        source_ok, destination_ok = await asyncio.gather(
            self.reader.test_connection(),
            self.writer.test_connection(),
        )
        if not (source_ok and destination_ok):
            failed = [name for name, ok in (('source', source_ok), ('destination', destination_ok))
                      if not ok]
            raise ConnectivityError(
                f"Connection test failed for {' and '.join(failed)}",
                source_ok=source_ok,
                destination_ok=destination_ok,
            )
        return {'source': source_ok, 'destination': destination_ok}

    async def get_source_metadata(self) -> SchemaInfo:
        return await self.reader.describe_schema()

    def get_progress(self) -> Optional[MigrationProgress]:
        """Snapshot of the current (or last) run's progress, None before any run."""
        return self.progress.snapshot() if self.progress else None

    # ------------------------------------------------------------------
    # Run / resume
    # ------------------------------------------------------------------

    async def run(
        self,
        start: TimeBound = None,
        end: TimeBound = None,
        verify: Optional[bool] = None,
    ) -> MigrationResult:
        """
        Execute a fresh migration over ``[start, end)``.

        Args:
            start: Read lower bound (default: the reader's default start)
            end: Read upper bound (default: now)
            verify: Run the verifier afterwards (default: settings.verify)

        Returns:
            MigrationResult of the completed run

        Raises:
            MigrationFailedError: On any fatal read or write error
        """
        migration_id = self.checkpoint_store.generate_id(
            self.config.source.host,
            self.config.source.bucket,
            self.config.destination.host,
            self.config.destination.database,
        )
        progress = MigrationProgress(migration_id=migration_id)
        return await self._execute(progress, start, end, resumed=False, verify=verify)

    async def resume(
        self,
        migration_id: str,
        end: TimeBound = None,
        verify: Optional[bool] = None,
    ) -> MigrationResult:
        """
        Continue a migration from its checkpoint.

        Reading starts just after the checkpoint's last processed timestamp.

        Raises:
            CheckpointNotFoundError: If no checkpoint exists for the id
            CheckpointMismatchError: If the checkpoint belongs to another source/destination
            CheckpointIOError: If the checkpoint cannot be read
            MigrationFailedError: On any fatal read or write error
        """
        record = self.checkpoint_store.load(migration_id)
        if record is None:
            raise CheckpointNotFoundError(migration_id)

        mismatches = self._identity_mismatches(record)
        if mismatches:
            raise CheckpointMismatchError(migration_id, mismatches)

        progress = MigrationProgress(
            migration_id=record.migration_id,
            total_records=record.total_records,
            migrated_records=record.migrated_records,
            current_batch_number=record.current_batch_number,
            last_processed_timestamp=record.last_processed_timestamp,
            start_time=record.start_time,
            skipped_records=record.skipped_records,
            rejected_records=record.rejected_records,
        )
        start = cursor_after(record.last_processed_timestamp)
        return await self._execute(progress, start, end, resumed=True, verify=verify)

    def _identity_mismatches(self, record: CheckpointRecord) -> List[str]:
        mismatches = []
        expected = self.source_descriptor
        for name in ('host', 'org', 'bucket'):
            saved, current = getattr(record.source, name), getattr(expected, name)
            if saved != current:
                mismatches.append(f"source {name} is {current!r}, checkpoint has {saved!r}")
        expected = self.destination_descriptor
        for name in ('host', 'database'):
            saved, current = getattr(record.destination, name), getattr(expected, name)
            if saved != current:
                mismatches.append(f"destination {name} is {current!r}, checkpoint has {saved!r}")
        return mismatches

    async def _execute(
        self,
        progress: MigrationProgress,
        start: TimeBound,
        end: TimeBound,
        resumed: bool,
        verify: Optional[bool],
    ) -> MigrationResult:
        self.progress = progress
        progress.status = MigrationStatus.RUNNING
        progress.error = None
        started = time.monotonic()
        self.observer.run_started(progress.snapshot(), resumed)

        try:
            await self._estimate_total(progress, start, end)
            async with aclosing(self.reader.read(start, end)) as batches:
                async for batch in batches:
                    if not batch:
                        continue
                    await self._process_batch(progress, batch)
        except Exception as e:
            progress.status = MigrationStatus.FAILED
            progress.error = str(e)
            self.observer.run_failed(progress.snapshot(), e)
            raise MigrationFailedError(
                f"Migration {progress.migration_id} failed: {e}", progress.snapshot()
            ) from e

        progress.status = MigrationStatus.COMPLETED
        self.observer.run_completed(progress.snapshot())

        result = MigrationResult(
            success=True,
            status=progress.status,
            progress=progress.snapshot(),
            duration_seconds=time.monotonic() - started,
            message=f"Migrated {format_count(progress.migrated_records)} records",
        )

        should_verify = self.settings.verify if verify is None else verify
        if should_verify:
            result.verification = await MigrationVerifier(self.reader, self.writer).verify()
        return result

    async def _estimate_total(self, progress: MigrationProgress, start: TimeBound,
                              end: TimeBound) -> None:
        try:
            remaining = await self.reader.estimate_row_count(start, end)
        except MigrationError as e:
            logger.debug(f"Row count estimate unavailable: {e}")
            return
        progress.total_records = progress.migrated_records + remaining

    async def _process_batch(self, progress: MigrationProgress, batch: Batch) -> None:
        self.observer.batch_started(progress.snapshot(), len(batch))

        result = await self.writer.write_batch(batch)
        if result.accepted_count == 0:
            raise BatchWriteError(
                f"Batch {progress.current_batch_number + 1}: none of {len(batch)} records "
                f"could be written ({result.skipped_count} skipped, "
                f"{result.rejected_count} rejected)",
                batch_size=len(batch),
                skipped_count=result.skipped_count,
                rejected_count=result.rejected_count,
            )

        previous = progress.migrated_records
        progress.migrated_records += result.accepted_count
        progress.skipped_records += result.skipped_count
        progress.rejected_records += result.rejected_count
        cursor = last_timestamp(batch)
        if cursor is not None:
            progress.last_processed_timestamp = cursor
        progress.current_batch_number += 1
        self.observer.batch_completed(progress.snapshot(), result)

        interval = self.settings.checkpoint_interval
        if previous // interval < progress.migrated_records // interval:
            await self._save_checkpoint(progress)

    async def _save_checkpoint(self, progress: MigrationProgress) -> None:
        metadata = None
        try:
            schema = await self.reader.describe_schema()
            metadata = CheckpointMetadata(
                measurements=schema.measurements, time_range=schema.time_range
            )
        except MigrationError as e:
            logger.debug(f"Checkpoint metadata unavailable: {e}")

        record = CheckpointRecord.from_progress(
            progress, self.source_descriptor, self.destination_descriptor, metadata
        )
        try:
            path = self.checkpoint_store.save(record)
        except CheckpointIOError as e:
            self.observer.checkpoint_failed(progress.snapshot(), e)
            return
        self.observer.checkpoint_saved(progress.snapshot(), path)

    # ------------------------------------------------------------------
    # Checkpoint management
    # ------------------------------------------------------------------

    def list_checkpoints(self) -> List[CheckpointRecord]:
        return self.checkpoint_store.list()

    def delete_checkpoint(self, migration_id: str) -> bool:
        return self.checkpoint_store.delete(migration_id)
