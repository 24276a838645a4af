"""
Shared fixtures for the influx-migrate test suite.

The orchestrator and verifier are exercised against in-memory fakes of the
source and destination stores. Destination HTTP tests use httpx.MockTransport,
source reader tests a stand-in for the influxdb-client async client.
"""

from typing import Any, Dict, List, Optional

import pytest

from influx_migrate.config import AppConfig, DestinationConfig, MigrationSettings, SourceConfig
from influx_migrate.config.config import ENV_MAPPING
from influx_migrate.migration.exceptions import BatchWriteError, ExtractionError
from influx_migrate.migration.line_protocol import classify
from influx_migrate.migration.migrator import MigrationObserver
from influx_migrate.migration.models import SchemaInfo, TimeRange, WriteResult
from influx_migrate.migration.source import TimestampBatcher
from influx_migrate.migration.timestamps import format_timestamp_ns, parse_timestamp_ns

BASE_TIME_NS = parse_timestamp_ns("2024-01-01T00:00:00Z")


# =============================================================================
# Record helpers
# =============================================================================

def make_records(count: int, start: int = 0, measurement: str = "cpu",
                 step_ns: int = 1_000_000_000) -> List[Dict[str, Any]]:
    """Source records as the Flux reader produces them, one second apart."""
    return [
        {
            "result": "_result",
            "table": 0,
            "_time": format_timestamp_ns(BASE_TIME_NS + (start + i) * step_ns),
            "_measurement": measurement,
            "_field": "usage",
            "_value": str(start + i),
            "host": "server01",
        }
        for i in range(count)
    ]


def make_series_records(timestamps: int, hosts: List[str],
                        measurement: str = "cpu") -> List[Dict[str, Any]]:
    """One record per host at every timestamp, time-sorted as the Flux reader yields them."""
    return [
        {
            "result": "_result",
            "table": 0,
            "_time": format_timestamp_ns(BASE_TIME_NS + i * 1_000_000_000),
            "_measurement": measurement,
            "_field": "usage",
            "_value": str(i),
            "host": host,
        }
        for i in range(timestamps)
        for host in hosts
    ]


# =============================================================================
# Fakes
# =============================================================================

class FakeSourceReader:
    """In-memory SourceReader over a time-sorted list of records."""

    def __init__(self, records: List[Dict[str, Any]], batch_size: int = 10,
                 fail_after_batches: Optional[int] = None, reachable: bool = True,
                 estimate_error: bool = False):
        self.records = records
        self.batch_size = batch_size
        self.fail_after_batches = fail_after_batches
        self.reachable = reachable
        self.estimate_error = estimate_error
        self.reads: List[Any] = []
        self.closed = False

    def _window(self, start=None, end=None) -> List[Dict[str, Any]]:
        selected = self.records
        if start is not None:
            lower = parse_timestamp_ns(start)
            selected = [r for r in selected if parse_timestamp_ns(r["_time"]) >= lower]
        if end is not None:
            upper = parse_timestamp_ns(end)
            selected = [r for r in selected if parse_timestamp_ns(r["_time"]) < upper]
        return selected

    async def read(self, start=None, end=None):
        self.reads.append(start)
        batcher = TimestampBatcher(self.batch_size)
        emitted = 0

        def check_failure():
            if self.fail_after_batches is not None and emitted >= self.fail_after_batches:
                raise ExtractionError("source went away")

        for record in self._window(start, end):
            batch = batcher.add(dict(record))
            if batch:
                check_failure()
                yield batch
                emitted += 1
        batch = batcher.flush()
        if batch:
            check_failure()
            yield batch

    async def estimate_row_count(self, start=None, end=None) -> int:
        if self.estimate_error:
            raise ExtractionError("count() not supported")
        return len(self._window(start, end))

    async def describe_schema(self) -> SchemaInfo:
        if not self.records:
            return SchemaInfo()
        return SchemaInfo(
            measurements=sorted({r["_measurement"] for r in self.records}),
            time_range=TimeRange(self.records[0]["_time"], self.records[-1]["_time"]),
        )

    async def test_connection(self) -> bool:
        return self.reachable

    async def close(self) -> None:
        self.closed = True


class FakeDestinationWriter:
    """In-memory DestinationWriter that keeps every written point in order."""

    def __init__(self, reachable: bool = True, fail_on_batch: Optional[int] = None):
        self.reachable = reachable
        self.fail_on_batch = fail_on_batch
        self.points = []
        self.batches_written = 0

    async def write_batch(self, batch) -> WriteResult:
        self.batches_written += 1
        if self.fail_on_batch is not None and self.batches_written == self.fail_on_batch:
            raise BatchWriteError("destination refused the batch", batch_size=len(batch))
        points = [classify(record) for record in batch]
        accepted = [p for p in points if p is not None]
        self.points.extend(accepted)
        return WriteResult(accepted_count=len(accepted), skipped_count=len(points) - len(accepted))

    def identities(self):
        return [p.identity() for p in self.points]

    async def count_records(self) -> int:
        return len(self.points)

    async def describe_time_range(self) -> TimeRange:
        if not self.points:
            return TimeRange()
        stamps = [p.timestamp for p in self.points]
        return TimeRange(format_timestamp_ns(min(stamps)), format_timestamp_ns(max(stamps)))

    async def test_connection(self) -> bool:
        return self.reachable

    async def close(self) -> None:
        pass


class RecordingObserver(MigrationObserver):
    """Collects lifecycle events as (name, progress snapshot) pairs."""

    def __init__(self):
        self.events = []

    def run_started(self, progress, resumed):
        self.events.append(("run_started", progress))

    def batch_started(self, progress, batch_size):
        self.events.append(("batch_started", progress))

    def batch_completed(self, progress, result):
        self.events.append(("batch_completed", progress))

    def checkpoint_saved(self, progress, path):
        self.events.append(("checkpoint_saved", progress))

    def checkpoint_failed(self, progress, error):
        self.events.append(("checkpoint_failed", progress))

    def run_completed(self, progress):
        self.events.append(("run_completed", progress))

    def run_failed(self, progress, error):
        self.events.append(("run_failed", progress))

    def named(self, name):
        return [progress for event, progress in self.events if event == name]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(
        source=SourceConfig(host="influx2", token="source-token", org="acme", bucket="metrics"),
        destination=DestinationConfig(host="influx3", token="dest-token", database="metrics"),
        migration=MigrationSettings(
            batch_size=10,
            checkpoint_interval=100,
            checkpoint_path=str(tmp_path / "checkpoints"),
            verify=False,
        ),
    )


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every influx-migrate environment variable."""
    for env_var in ENV_MAPPING:
        monkeypatch.delenv(env_var, raising=False)
    return monkeypatch
