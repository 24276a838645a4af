"""
Migration Verification
======================

Compares the source and destination after (or independently of) a migration:

1. Record count: ``|source - destination| / source`` as a percentage.
   Up to 0.1% passes, below 1% passes with a warning, 1% or more is an error.
2. Time range: earliest and latest timestamps of both stores, with a one
   second tolerance. An empty destination is an error, an empty source a
   warning, diverging endpoints are warnings.

Verification never raises; query failures become errors in the report.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .interfaces import DestinationWriter, SourceReader
from .models import TimeRange, utc_now_iso
from .timestamps import NANOS_PER_SECOND, parse_timestamp_ns

logger = logging.getLogger(__name__)

COUNT_TOLERANCE_PERCENT = 0.1
COUNT_ERROR_PERCENT = 1.0
TIME_TOLERANCE_NS = NANOS_PER_SECOND


@dataclass
class RecordCountCheck:
    """Record counts of both stores and their relative difference."""
    passed: bool = False
    source: int = 0
    destination: int = 0
    difference: int = 0
    percent_difference: float = 0.0

    @property
    def within_tolerance(self) -> bool:
        return self.percent_difference <= COUNT_TOLERANCE_PERCENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            'passed': self.passed,
            'source': self.source,
            'destination': self.destination,
            'difference': self.difference,
            'percent_difference': self.percent_difference,
        }


@dataclass
class TimeRangeCheck:
    """Observed time ranges of both stores."""
    passed: bool = False
    source: TimeRange = field(default_factory=TimeRange)
    destination: TimeRange = field(default_factory=TimeRange)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'passed': self.passed,
            'source': self.source.to_dict(),
            'destination': self.destination.to_dict(),
            'message': self.message,
        }


@dataclass
class VerificationReport:
    """Complete verification report for a source/destination pair."""
    record_count: RecordCountCheck = field(default_factory=RecordCountCheck)
    time_range: TimeRangeCheck = field(default_factory=TimeRangeCheck)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def passed(self) -> bool:
        return self.record_count.passed and self.time_range.passed and not self.errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        return {
            'passed': self.passed,
            'checks': {
                'record_count': self.record_count.to_dict(),
                'time_range': self.time_range.to_dict(),
            },
            'warnings': list(self.warnings),
            'errors': list(self.errors),
            'timestamp': self.timestamp,
        }


def percent_difference(source: int, destination: int) -> float:
    """Relative difference in percent; an empty source counts as 0% or 100%."""
    if source == 0:
        return 0.0 if destination == 0 else 100.0
    return abs(source - destination) / source * 100


def evaluate_record_count(report: VerificationReport, source: int, destination: int) -> None:
    check = report.record_count
    check.source = source
    check.destination = destination
    check.difference = abs(source - destination)
    check.percent_difference = percent_difference(source, destination)

    if check.percent_difference <= COUNT_TOLERANCE_PERCENT:
        check.passed = True
        return

    message = (
        f"Record count mismatch: source={source}, destination={destination}, "
        f"difference={check.difference} ({check.percent_difference:.2f}%)"
    )
    if check.percent_difference < COUNT_ERROR_PERCENT:
        check.passed = True
        report.warnings.append(message)
    else:
        check.passed = False
        report.errors.append(message)


def evaluate_time_range(report: VerificationReport, source: TimeRange,
                        destination: TimeRange) -> None:
    check = report.time_range
    check.source = source
    check.destination = destination

    if destination.is_empty:
        check.passed = False
        check.message = "Destination time range is empty"
        report.errors.append("Destination time range is empty: no data was migrated")
        return

    if source.is_empty:
        check.passed = True
        check.message = "Source is empty"
        report.warnings.append("Source time range is empty: there was nothing to migrate")
        return

    earliest_diff = abs(parse_timestamp_ns(source.earliest) - parse_timestamp_ns(destination.earliest))
    latest_diff = abs(parse_timestamp_ns(source.latest) - parse_timestamp_ns(destination.latest))

    mismatches = []
    if earliest_diff > TIME_TOLERANCE_NS:
        mismatches.append(f"earliest timestamp differs by {earliest_diff / 1_000_000:.0f}ms")
    if latest_diff > TIME_TOLERANCE_NS:
        mismatches.append(f"latest timestamp differs by {latest_diff / 1_000_000:.0f}ms")

    check.passed = True
    if mismatches:
        check.message = "; ".join(mismatches)
        report.warnings.append(f"Time range differences detected: {check.message}")
    else:
        check.message = "Time ranges match"


class MigrationVerifier:
    """
    Runs the record count and time range checks against a source and a destination.

    Both checks run concurrently; neither touches migration state.
    """

    def __init__(self, source: SourceReader, destination: DestinationWriter):
        self.source = source
        self.destination = destination

    async def verify_record_count(self, report: VerificationReport) -> None:
        try:
            source_count, destination_count = await asyncio.gather(
                self.source.estimate_row_count(),
                self.destination.count_records(),
            )
            evaluate_record_count(report, source_count, destination_count)
        except Exception as e:
            logger.debug(f"Record count check failed: {e}")
            report.record_count.passed = False
            report.errors.append(f"Record count verification failed: {e}")

    async def verify_time_range(self, report: VerificationReport) -> None:
        try:
            schema, destination_range = await asyncio.gather(
                self.source.describe_schema(),
                self.destination.describe_time_range(),
            )
            evaluate_time_range(report, schema.time_range, destination_range)
        except Exception as e:
            logger.debug(f"Time range check failed: {e}")
            report.time_range.passed = False
            report.errors.append(f"Time range verification failed: {e}")

    async def verify(self) -> VerificationReport:
        """
        Run all checks.

        Returns:
            VerificationReport; ``passed`` is False when any hard error was found
        """
        report = VerificationReport()
        await asyncio.gather(
            self.verify_record_count(report),
            self.verify_time_range(report),
        )
        logger.debug(
            f"Verification finished: passed={report.passed}, "
            f"{len(report.warnings)} warnings, {len(report.errors)} errors"
        )
        return report


async def verify_migration(source: SourceReader, destination: DestinationWriter) -> VerificationReport:
    """Convenience wrapper: verify a source/destination pair with a fresh MigrationVerifier."""
    return await MigrationVerifier(source, destination).verify()
