"""
influx-migrate Migration Core
=============================

Moves time-series data from an InfluxDB 2.x bucket to an InfluxDB 3.x
database in bounded batches, checkpoints progress for resume, and verifies
the result.

Components:
    - InfluxSourceReader: Time-ordered batch extraction over the Flux HTTP API
    - InfluxDestinationWriter: Line protocol writes with per-point failure isolation
    - CheckpointStore: JSON checkpoint files for resumable migrations
    - MigrationJob: Orchestrates read -> write -> checkpoint, and resume
    - MigrationVerifier: Record count and time range comparison
"""

from .checkpoint import (
    CheckpointMetadata,
    CheckpointRecord,
    CheckpointStore,
    DestinationDescriptor,
    SourceDescriptor,
)
from .destination import InfluxDestinationWriter
from .exceptions import (
    BatchWriteError,
    CheckpointError,
    CheckpointIOError,
    CheckpointMismatchError,
    CheckpointNotFoundError,
    ConfigError,
    ConnectivityError,
    DestinationQueryError,
    ExtractionError,
    MigrationError,
    MigrationFailedError,
)
from .interfaces import DestinationWriter, SourceReader
from .line_protocol import classify, encode_records, serialize_point
from .migrator import (
    CompositeObserver,
    LoggingObserver,
    MigrationJob,
    MigrationObserver,
    MigrationResult,
)
from .models import (
    MigrationProgress,
    MigrationStatus,
    Point,
    RejectedPoint,
    SchemaInfo,
    TimeRange,
    WriteResult,
)
from .source import InfluxSourceReader
from .verify import MigrationVerifier, VerificationReport, verify_migration

__all__ = [
    'BatchWriteError',
    'CheckpointError',
    'CheckpointIOError',
    'CheckpointMetadata',
    'CheckpointMismatchError',
    'CheckpointNotFoundError',
    'CheckpointRecord',
    'CheckpointStore',
    'CompositeObserver',
    'ConfigError',
    'ConnectivityError',
    'DestinationDescriptor',
    'DestinationQueryError',
    'DestinationWriter',
    'ExtractionError',
    'InfluxDestinationWriter',
    'InfluxSourceReader',
    'LoggingObserver',
    'MigrationError',
    'MigrationFailedError',
    'MigrationJob',
    'MigrationObserver',
    'MigrationProgress',
    'MigrationResult',
    'MigrationStatus',
    'MigrationVerifier',
    'Point',
    'RejectedPoint',
    'SchemaInfo',
    'SourceDescriptor',
    'SourceReader',
    'TimeRange',
    'VerificationReport',
    'WriteResult',
    'classify',
    'encode_records',
    'serialize_point',
    'verify_migration',
]
