"""
Migration Exceptions
====================

Error taxonomy for the migration core.

Hierarchy:
    MigrationError (base)
    +-- ConfigError              invalid or incomplete configuration
    +-- ConnectivityError        source or destination unreachable at startup
    +-- ExtractionError          batch read from the source failed
    +-- BatchWriteError          destination accepted zero points of a batch
    +-- DestinationQueryError    count / time-range query against the destination failed
    +-- CheckpointError
    |   +-- CheckpointIOError        checkpoint medium unreadable / unwritable
    |   +-- CheckpointNotFoundError  resume requested for an unknown id
    |   +-- CheckpointMismatchError  checkpoint belongs to another source/destination
    +-- MigrationFailedError     wraps any fatal run error with a progress snapshot

Point-level data problems are never raised; they are counted as skipped.
"""

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .models import MigrationProgress


class MigrationError(Exception):
    """Base class for all migration errors."""


class ConfigError(MigrationError):
    """Configuration is missing or invalid."""

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = problems or []


class ConnectivityError(MigrationError):
    """Source and/or destination could not be reached."""

    def __init__(self, message: str, source_ok: bool, destination_ok: bool):
        super().__init__(message)
        self.source_ok = source_ok
        self.destination_ok = destination_ok


class ExtractionError(MigrationError):
    """Reading a batch from the source store failed."""


class DestinationQueryError(MigrationError):
    """A metadata query (count, time range) against the destination failed."""


class BatchWriteError(MigrationError):
    """The destination accepted none of the points of a non-empty batch."""

    def __init__(self, message: str, batch_size: int = 0, skipped_count: int = 0,
                 rejected_count: int = 0):
        super().__init__(message)
        self.batch_size = batch_size
        self.skipped_count = skipped_count
        self.rejected_count = rejected_count


class CheckpointError(MigrationError):
    """Base class for checkpoint problems."""


class CheckpointIOError(CheckpointError):
    """The checkpoint medium could not be read or written."""

    def __init__(self, message: str, migration_id: Optional[str] = None):
        super().__init__(message)
        self.migration_id = migration_id


class CheckpointNotFoundError(CheckpointError):
    """No checkpoint exists for the requested migration id."""

    def __init__(self, migration_id: str):
        super().__init__(f"No checkpoint found for migration ID: {migration_id}")
        self.migration_id = migration_id


class CheckpointMismatchError(CheckpointError):
    """The checkpoint was created for a different source/destination pair."""

    def __init__(self, migration_id: str, mismatches: List[str]):
        super().__init__(
            f"Checkpoint {migration_id} does not match current configuration: "
            + "; ".join(mismatches)
        )
        self.migration_id = migration_id
        self.mismatches = mismatches


class MigrationFailedError(MigrationError):
    """
    A migration run stopped on a fatal error.

    Carries a snapshot of the progress reached so the caller can decide on a
    manual resume. The underlying error is available as ``__cause__``.
    """

    def __init__(self, message: str, progress: 'MigrationProgress'):
        super().__init__(message)
        self.progress = progress

    @property
    def migrated_records(self) -> int:
        return self.progress.migrated_records

    @property
    def last_processed_timestamp(self) -> Optional[str]:
        return self.progress.last_processed_timestamp
