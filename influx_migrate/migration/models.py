"""
Migration Data Model
====================

Records and progress structures that flow through the migration pipeline.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

FieldValue = Union[bool, int, float, str]


@dataclass(frozen=True)
class Point:
    """
    One time-stamped observation.

    Attributes:
        measurement: Measurement (table) name, never empty
        timestamp: Nanoseconds since the Unix epoch
        field_name: Name of the single field carried by the point
        field_value: Field value (bool, int, float or str)
        tags: Tag key/value pairs, strings only
    """
    measurement: str
    timestamp: int
    field_name: str
    field_value: FieldValue
    tags: Dict[str, str] = field(default_factory=dict)

    def identity(self) -> tuple:
        """Key that identifies the point in the destination (series + field + time)."""
        return (
            self.measurement,
            tuple(sorted(self.tags.items())),
            self.field_name,
            self.timestamp,
        )


# Ordered, non-empty group of raw source records moved together.
Batch = List[Dict[str, Any]]


class MigrationStatus(str, Enum):
    """Status of a migration run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string with microseconds."""
    return datetime.now(timezone.utc).isoformat(timespec='microseconds').replace('+00:00', 'Z')


@dataclass
class MigrationProgress:
    """
    In-memory progress of one running migration.

    Owned and mutated by a single MigrationJob. ``last_processed_timestamp`` is
    the resume cursor: the timestamp of the last point of the most recently
    completed batch.
    """
    migration_id: str
    total_records: int = 0
    migrated_records: int = 0
    current_batch_number: int = 0
    last_processed_timestamp: Optional[str] = None
    status: MigrationStatus = MigrationStatus.RUNNING
    error: Optional[str] = None
    start_time: str = field(default_factory=utc_now_iso)
    skipped_records: int = 0
    rejected_records: int = 0

    @property
    def percent_complete(self) -> Optional[float]:
        """Percentage of the estimated total migrated, or None when unknown."""
        if self.total_records <= 0:
            return None
        return self.migrated_records / self.total_records * 100

    def snapshot(self) -> 'MigrationProgress':
        """Return an independent copy safe to hand out to callers."""
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'migration_id': self.migration_id,
            'total_records': self.total_records,
            'migrated_records': self.migrated_records,
            'current_batch_number': self.current_batch_number,
            'last_processed_timestamp': self.last_processed_timestamp,
            'status': self.status.value,
            'error': self.error,
            'start_time': self.start_time,
            'skipped_records': self.skipped_records,
            'rejected_records': self.rejected_records,
        }


@dataclass
class RejectedPoint:
    """A point the destination refused during per-point isolation."""
    line: str
    reason: str


@dataclass
class WriteResult:
    """Outcome of writing one batch to the destination."""
    accepted_count: int
    skipped_count: int = 0
    rejected: List[RejectedPoint] = field(default_factory=list)

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)

    @property
    def lost_count(self) -> int:
        """Points of the batch that did not reach the destination."""
        return self.skipped_count + self.rejected_count


@dataclass
class TimeRange:
    """Earliest and latest timestamps observed in a store (RFC3339, '' when unknown)."""
    earliest: str = ""
    latest: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.earliest or not self.latest

    def to_dict(self) -> Dict[str, str]:
        return {'earliest': self.earliest, 'latest': self.latest}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TimeRange':
        data = data or {}
        return cls(earliest=data.get('earliest') or "", latest=data.get('latest') or "")


@dataclass
class SchemaInfo:
    """Measurement names and observed time range of a store."""
    measurements: List[str] = field(default_factory=list)
    time_range: TimeRange = field(default_factory=TimeRange)

    @property
    def is_empty(self) -> bool:
        return not self.measurements and self.time_range.is_empty
