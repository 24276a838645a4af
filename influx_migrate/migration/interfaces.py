"""
Store Capability Contracts
==========================

What the orchestrator and the verifier require from the source and
destination stores. The InfluxDB implementations live in ``source.py`` and
``destination.py``; tests substitute in-memory fakes.
"""

from datetime import datetime
from typing import AsyncIterator, Protocol, Union, runtime_checkable

from .models import Batch, SchemaInfo, TimeRange, WriteResult

TimeBound = Union[str, datetime, None]


@runtime_checkable
class SourceReader(Protocol):
    """Time-ordered batch extraction from the source store."""

    def read(self, start: TimeBound = None, end: TimeBound = None) -> AsyncIterator[Batch]:
        """
        Lazily yield batches for the time window.

        The iterator is finite and not restartable. No batch ends between two
        records sharing a timestamp. A read failure ends it with
        ExtractionError, after flushing the records of fully read timestamps.
        """
        ...

    async def estimate_row_count(self, start: TimeBound = None, end: TimeBound = None) -> int:
        """Best-effort record count for the window; may raise, callers treat failure as unknown."""
        ...

    async def describe_schema(self) -> SchemaInfo:
        """Measurement names and observed time range; empty store gives empty info."""
        ...

    async def test_connection(self) -> bool:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class DestinationWriter(Protocol):
    """Batch encoding and transmission to the destination store."""

    async def write_batch(self, batch: Batch) -> WriteResult:
        """
        Write one batch, isolating bad points.

        Raises BatchWriteError when a transmittable batch is refused entirely.
        """
        ...

    async def count_records(self) -> int:
        ...

    async def describe_time_range(self) -> TimeRange:
        ...

    async def test_connection(self) -> bool:
        ...

    async def close(self) -> None:
        ...
