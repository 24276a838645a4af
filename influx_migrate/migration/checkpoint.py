"""
Migration Checkpoints
=====================

Durable progress snapshots that let an interrupted migration resume.

One JSON file per migration id lives in the checkpoint directory
(``<migration_id>.json``). Files are replaced atomically so a crash during a
save leaves the previous checkpoint intact.

Usage:
    store = CheckpointStore('./checkpoints')
    migration_id = store.generate_id('influx2', 'metrics', 'influx3', 'metrics')
    store.save(record)
    record = store.load(migration_id)
"""

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import CheckpointIOError
from .models import MigrationProgress, MigrationStatus, TimeRange, utc_now_iso

logger = logging.getLogger(__name__)

CHECKPOINT_SUFFIX = '.json'

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]+')
_SAFE_ID = re.compile(r'^[A-Za-z0-9_-][A-Za-z0-9._-]*$')


@dataclass
class SourceDescriptor:
    """Identity of the source a checkpoint was taken against."""
    host: str
    org: str
    bucket: str

    def to_dict(self) -> Dict[str, str]:
        return {'host': self.host, 'org': self.org, 'bucket': self.bucket}


@dataclass
class DestinationDescriptor:
    """Identity of the destination a checkpoint was taken against."""
    host: str
    database: str

    def to_dict(self) -> Dict[str, str]:
        return {'host': self.host, 'database': self.database}


@dataclass
class CheckpointMetadata:
    """Source schema details captured when the checkpoint was written."""
    measurements: List[str] = field(default_factory=list)
    time_range: TimeRange = field(default_factory=TimeRange)

    def to_dict(self) -> Dict[str, Any]:
        return {'measurements': list(self.measurements), 'time_range': self.time_range.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CheckpointMetadata':
        return cls(
            measurements=list(data.get('measurements') or []),
            time_range=TimeRange.from_dict(data.get('time_range')),
        )


@dataclass
class CheckpointRecord:
    """
    On-disk projection of MigrationProgress plus the source/destination identity.

    ``last_processed_timestamp`` is the resume cursor. ``last_update_time`` is
    set by CheckpointStore.save and only ever moves forward.
    """
    migration_id: str
    source: SourceDescriptor
    destination: DestinationDescriptor
    last_processed_timestamp: Optional[str] = None
    migrated_records: int = 0
    total_records: int = 0
    current_batch_number: int = 0
    status: MigrationStatus = MigrationStatus.RUNNING
    start_time: str = field(default_factory=utc_now_iso)
    last_update_time: Optional[str] = None
    skipped_records: int = 0
    rejected_records: int = 0
    error: Optional[str] = None
    metadata: Optional[CheckpointMetadata] = None

    @classmethod
    def from_progress(
        cls,
        progress: MigrationProgress,
        source: SourceDescriptor,
        destination: DestinationDescriptor,
        metadata: Optional[CheckpointMetadata] = None,
    ) -> 'CheckpointRecord':
        return cls(
            migration_id=progress.migration_id,
            source=source,
            destination=destination,
            last_processed_timestamp=progress.last_processed_timestamp,
            migrated_records=progress.migrated_records,
            total_records=progress.total_records,
            current_batch_number=progress.current_batch_number,
            status=progress.status,
            start_time=progress.start_time,
            skipped_records=progress.skipped_records,
            rejected_records=progress.rejected_records,
            error=progress.error,
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'migration_id': self.migration_id,
            'last_processed_timestamp': self.last_processed_timestamp,
            'migrated_records': self.migrated_records,
            'total_records': self.total_records,
            'current_batch_number': self.current_batch_number,
            'status': self.status.value,
            'start_time': self.start_time,
            'last_update_time': self.last_update_time,
            'skipped_records': self.skipped_records,
            'rejected_records': self.rejected_records,
            'error': self.error,
            'source': self.source.to_dict(),
            'destination': self.destination.to_dict(),
            'metadata': self.metadata.to_dict() if self.metadata else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CheckpointRecord':
        """
        Create from dictionary.

        Raises:
            KeyError, TypeError, ValueError: If required fields are missing or malformed
        """
        source = data['source']
        destination = data['destination']
        metadata = data.get('metadata')
        return cls(
            migration_id=str(data['migration_id']),
            source=SourceDescriptor(
                host=source['host'], org=source['org'], bucket=source['bucket']
            ),
            destination=DestinationDescriptor(
                host=destination['host'], database=destination['database']
            ),
            last_processed_timestamp=data.get('last_processed_timestamp'),
            migrated_records=int(data.get('migrated_records', 0)),
            total_records=int(data.get('total_records', 0)),
            current_batch_number=int(data.get('current_batch_number', 0)),
            status=MigrationStatus(data.get('status', MigrationStatus.RUNNING.value)),
            start_time=data.get('start_time') or utc_now_iso(),
            last_update_time=data.get('last_update_time'),
            skipped_records=int(data.get('skipped_records', 0)),
            rejected_records=int(data.get('rejected_records', 0)),
            error=data.get('error'),
            metadata=CheckpointMetadata.from_dict(metadata) if metadata else None,
        )


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _next_update_time(*previous: Optional[str]) -> str:
    """Current UTC time, nudged past every ``previous`` stamp when the clock has not advanced."""
    now = _utc_now()
    stamps = [stamp for stamp in (_parse_iso(value) for value in previous) if stamp is not None]
    last = max(stamps) if stamps else None
    if last is not None and now <= last:
        now = last + timedelta(microseconds=1)
    return now.isoformat(timespec='microseconds').replace('+00:00', 'Z')


def _sort_key(record: CheckpointRecord) -> datetime:
    return _parse_iso(record.last_update_time) or datetime.min.replace(tzinfo=timezone.utc)


class CheckpointStore:
    """
    File-backed checkpoint persistence.

    The directory is created on first save. There is no locking: running two
    migrations with the same id at once is the caller's problem.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory).expanduser()

    @staticmethod
    def generate_id(source_host: str, source_bucket: str, dest_host: str, dest_database: str) -> str:
        """
        Build a migration id from the four endpoints plus the creation time.

        The result contains only letters, digits, ``.``, ``_`` and ``-``, so it
        is usable as a file name on any platform.
        """
        def clean(part: str) -> str:
            return _UNSAFE_CHARS.sub('-', part).strip('-.') or 'unknown'

        stamp = datetime.now(timezone.utc).isoformat(timespec='milliseconds')
        stamp = re.sub(r'[:.]', '-', stamp.replace('+00:00', 'Z'))
        return (
            f"{clean(source_host)}_{clean(source_bucket)}_to_"
            f"{clean(dest_host)}_{clean(dest_database)}_{stamp}"
        )

    def path_for(self, migration_id: str) -> Path:
        """
        Checkpoint file path for a migration id.

        Raises:
            ValueError: If the id could escape the checkpoint directory
        """
        if not _SAFE_ID.match(migration_id):
            raise ValueError(f"Invalid migration ID: {migration_id!r}")
        return self.directory / f"{migration_id}{CHECKPOINT_SUFFIX}"

    def save(self, record: CheckpointRecord) -> Path:
        """
        Persist a checkpoint, replacing any previous one for the same id.

        Sets ``record.last_update_time``, strictly later than the one already
        on disk for this id.

        Raises:
            CheckpointIOError: If the checkpoint could not be written
        """
        path = self.path_for(record.migration_id)
        record.last_update_time = _next_update_time(
            record.last_update_time, self._stored_update_time(path)
        )
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.directory, prefix=f".{record.migration_id}.", suffix='.tmp'
            )
            try:
                with os.fdopen(fd, 'w') as f:
                    json.dump(record.to_dict(), f, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise CheckpointIOError(
                f"Failed to save checkpoint {record.migration_id}: {e}", record.migration_id
            ) from e

        logger.debug(f"Checkpoint saved: {path} ({record.migrated_records} records)")
        return path

    def load(self, migration_id: str) -> Optional[CheckpointRecord]:
        """
        Load the checkpoint for a migration id.

        Returns:
            The record, or None if no checkpoint exists

        Raises:
            CheckpointIOError: If the file exists but cannot be read or parsed
        """
        path = self.path_for(migration_id)
        if not path.exists():
            logger.debug(f"No checkpoint at {path}")
            return None
        return self._read(path, migration_id)

    def _stored_update_time(self, path: Path) -> Optional[str]:
        """``last_update_time`` of the file being replaced; None if absent or unreadable."""
        if not path.exists():
            return None
        try:
            return self._read(path).last_update_time
        except CheckpointIOError as e:
            logger.warning(f"Overwriting unreadable checkpoint: {e}")
            return None

    def _read(self, path: Path, migration_id: Optional[str] = None) -> CheckpointRecord:
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            return CheckpointRecord.from_dict(data)
        except OSError as e:
            raise CheckpointIOError(f"Failed to read checkpoint {path}: {e}", migration_id) from e
        except (ValueError, KeyError, TypeError) as e:
            raise CheckpointIOError(f"Malformed checkpoint {path}: {e}", migration_id) from e

    def list(self) -> List[CheckpointRecord]:
        """All readable checkpoints, most recently updated first. Malformed files are skipped."""
        if not self.directory.is_dir():
            return []

        records = []
        for path in sorted(self.directory.glob(f"*{CHECKPOINT_SUFFIX}")):
            try:
                records.append(self._read(path))
            except CheckpointIOError as e:
                logger.warning(f"Skipping checkpoint file {path.name}: {e}")
        records.sort(key=_sort_key, reverse=True)
        return records

    def delete(self, migration_id: str) -> bool:
        """
        Remove the checkpoint for a migration id.

        Returns:
            True if a checkpoint existed and was removed
        """
        path = self.path_for(migration_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CheckpointIOError(f"Failed to delete checkpoint {path}: {e}", migration_id) from e
        logger.debug(f"Checkpoint deleted: {path}")
        return True
