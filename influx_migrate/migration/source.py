"""
InfluxDB 2.x Source Reader
==========================

Streams records out of an InfluxDB 2.x bucket through the ``influxdb-client``
async query API and groups them into batches.

The requested range is walked in consecutive windows of ``read_window``
seconds. Each window merges every series into one table sorted by ``_time``,
so the server never has to sort more than one window at a time and batches
still come out globally time-ordered. A batch never ends inside a run of
records sharing one ``_time``, which makes the last record of every batch a
safe resume cursor.

Field values travel as strings next to a ``_type`` column holding their Flux
type, and ``_time`` is accompanied by its integer nanoseconds because the
client parses timestamps into microsecond datetimes.
"""

import asyncio
import logging
import re
import time
from contextlib import aclosing
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
from influxdb_client.client.flux_csv_parser import FluxCsvParserException, FluxQueryException
from influxdb_client.client.flux_table import FluxRecord
from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync
from influxdb_client.rest import ApiException

from ..utils import error_body_message
from .exceptions import ExtractionError
from .interfaces import TimeBound
from .models import Batch, SchemaInfo, TimeRange
from .timestamps import NANOS_PER_SECOND, format_timestamp_ns, parse_timestamp_ns

if TYPE_CHECKING:
    from ..config.config import SourceConfig

logger = logging.getLogger(__name__)

# Flux duration literal, optionally negative and compound (e.g. -1h30m, -7d)
_DURATION_PATTERN = re.compile(r'^-?(?:\d+(?:ns|us|µs|ms|mo|s|m|h|d|w|y))+$')
_DURATION_PART = re.compile(r'(\d+)(ns|us|µs|ms|mo|s|m|h|d|w|y)')

_DAY_NS = 86400 * NANOS_PER_SECOND

# mo and y are calendar units in Flux; 30 and 365 days here
_DURATION_UNITS_NS = {
    'ns': 1,
    'us': 1_000,
    'µs': 1_000,
    'ms': 1_000_000,
    's': NANOS_PER_SECOND,
    'm': 60 * NANOS_PER_SECOND,
    'h': 3600 * NANOS_PER_SECOND,
    'd': _DAY_NS,
    'w': 7 * _DAY_NS,
    'mo': 30 * _DAY_NS,
    'y': 365 * _DAY_NS,
}

DEFAULT_START = "1970-01-01T00:00:00Z"
DEFAULT_READ_WINDOW = 3600.0  # seconds

_QUERY_ERRORS = (
    ApiException,
    FluxQueryException,
    FluxCsvParserException,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)

_DATA_QUERY = '''import "types"

{source}
  |> drop(columns: ["_start", "_stop"])
  |> map(fn: (r) => ({{r with
      _type: if types.isType(v: r._value, type: "float") then "float"
        else if types.isType(v: r._value, type: "int") then "int"
        else if types.isType(v: r._value, type: "uint") then "uint"
        else if types.isType(v: r._value, type: "bool") then "bool"
        else "string",
      _value: string(v: r._value),
      _time_ns: int(v: r._time)
  }}))
  |> group()
  |> sort(columns: ["_time"])'''


def flux_string(value: str) -> str:
    """Escape a value for use inside a Flux string literal."""
    return value.replace('\\', '\\\\').replace('"', '\\"')


def resolve_time_bound(value: TimeBound, default: int, now_ns: Optional[int] = None) -> int:
    """
    Resolve a time bound to nanoseconds since the epoch.

    Args:
        value: Absolute timestamp (RFC3339 string, date, datetime), relative
            duration such as ``-30d`` counted from now, ``now()``, or None
        default: Returned when ``value`` is empty
        now_ns: Reference time for relative bounds (the current time if None)

    Raises:
        ValueError: If the value is neither a timestamp nor a duration
    """
    if value is None:
        return default
    if isinstance(value, datetime):
        return parse_timestamp_ns(value)

    text = str(value).strip()
    if not text:
        return default
    if now_ns is None:
        now_ns = time.time_ns()
    if text in ('now()', 'now'):
        return now_ns
    if _DURATION_PATTERN.match(text):
        offset = sum(int(count) * _DURATION_UNITS_NS[unit]
                     for count, unit in _DURATION_PART.findall(text))
        return now_ns - offset if text.startswith('-') else now_ns + offset
    try:
        return parse_timestamp_ns(text)
    except ValueError:
        raise ValueError(f"Unsupported time bound: {value!r}") from None


def record_values(record: FluxRecord) -> Dict[str, Any]:
    """Plain dict for a FluxRecord with ``_time`` as a nanosecond-exact RFC3339 string."""
    values = dict(record.values)
    time_ns = values.pop('_time_ns', None)
    if time_ns is not None:
        values['_time'] = format_timestamp_ns(int(time_ns))
    elif isinstance(values.get('_time'), datetime):
        values['_time'] = format_timestamp_ns(parse_timestamp_ns(values['_time']))
    return values


def _describe_error(error: Exception) -> str:
    if isinstance(error, ApiException):
        body = error.body
        if isinstance(body, bytes):
            body = body.decode('utf-8', errors='replace')
        return f"HTTP {error.status}: {error_body_message(body) if body else error.reason}"
    if isinstance(error, FluxQueryException):
        return error.message
    return f"{type(error).__name__}: {error}"


def _timestamp_group_start(batch: Batch) -> int:
    """Index where the trailing run of records sharing the last ``_time`` begins."""
    if not batch:
        return 0
    index = len(batch) - 1
    last_time = batch[-1].get('_time')
    while index > 0 and batch[index - 1].get('_time') == last_time:
        index -= 1
    return index


class TimestampBatcher:
    """
    Cuts a time-ordered record stream into batches of about ``batch_size``.

    A batch is only closed between two different timestamps. When the batch
    is full and the next record shares the last timestamp, the trailing run
    with that timestamp moves over to the next batch. A single timestamp
    holding more than ``batch_size`` records produces one oversized batch.
    """

    def __init__(self, batch_size: int):
        self.batch_size = batch_size
        self._batch: Batch = []

    def add(self, record: Dict[str, Any]) -> Optional[Batch]:
        """Add a record; returns a completed batch when one closes."""
        batch = self._batch
        if len(batch) >= self.batch_size:
            if record.get('_time') != batch[-1].get('_time'):
                self._batch = [record]
                return batch
            split = _timestamp_group_start(batch)
            if split > 0:
                self._batch = batch[split:] + [record]
                return batch[:split]
        batch.append(record)
        return None

    def flush(self) -> Optional[Batch]:
        """Everything buffered, at the end of a complete stream."""
        batch, self._batch = self._batch, []
        return batch or None

    def flush_complete(self) -> Optional[Batch]:
        """Everything buffered except the last timestamp, which may be incomplete."""
        batch = self._batch[:_timestamp_group_start(self._batch)]
        self._batch = []
        return batch or None


class InfluxSourceReader:
    """
    Batched, time-ordered extraction from an InfluxDB 2.x bucket.

    Args:
        config: Source connection settings
        batch_size: Target number of records per yielded batch
        default_start: Read lower bound when none is given
        timeout: Per-request timeout in seconds
        read_window: Width in seconds of each sorted range query
        client: Optional pre-built ``InfluxDBClientAsync``
    """

    def __init__(
        self,
        config: "SourceConfig",
        batch_size: int = 10000,
        default_start: str = DEFAULT_START,
        timeout: float = 30.0,
        read_window: float = DEFAULT_READ_WINDOW,
        client: Optional[InfluxDBClientAsync] = None,
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if read_window <= 0:
            raise ValueError(f"read_window must be positive, got {read_window}")
        # fail fast on a bad default
        resolve_time_bound(default_start, 0)

        self.config = config
        self.batch_size = batch_size
        self.default_start = default_start or DEFAULT_START
        self.window_ns = int(read_window * NANOS_PER_SECOND)
        self._client = client or InfluxDBClientAsync(
            url=config.base_url,
            token=config.token,
            org=config.org,
            timeout=int(timeout * 1000),
        )
        self._query_api = self._client.query_api()

    async def __aenter__(self) -> "InfluxSourceReader":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _bounds(self, start: TimeBound = None, end: TimeBound = None) -> Tuple[int, int]:
        now_ns = time.time_ns()
        default_start = resolve_time_bound(self.default_start, 0, now_ns)
        return resolve_time_bound(start, default_start, now_ns), resolve_time_bound(end, now_ns, now_ns)

    def _from_range(self, lower: int, upper: int) -> str:
        return (
            f'from(bucket: "{flux_string(self.config.bucket)}")\n'
            f'  |> range(start: {format_timestamp_ns(lower)}, stop: {format_timestamp_ns(upper)})'
        )

    def build_data_query(self, lower: int, upper: int) -> str:
        return _DATA_QUERY.format(source=self._from_range(lower, upper))

    async def _stream(self, query: str) -> AsyncIterator[Dict[str, Any]]:
        logger.debug(f"Flux query: {query}")
        try:
            records = await self._query_api.query_stream(query, org=self.config.org)
            async for record in records:
                yield record_values(record)
        except _QUERY_ERRORS as e:
            raise ExtractionError(f"Source query failed: {_describe_error(e)}") from e

    async def _query(self, query: str) -> List[Dict[str, Any]]:
        return [record async for record in self._stream(query)]

    async def _time_extent(self, lower: int, upper: int) -> Tuple[Optional[int], Optional[int]]:
        """Earliest and latest timestamps in ``[lower, upper)``, from per-series first/last."""
        def extent_query(selector: str, aggregate: str) -> str:
            return (
                self._from_range(lower, upper) + '\n'
                f'  |> {selector}()\n'
                '  |> keep(columns: ["_time"])\n'
                '  |> group()\n'
                f'  |> {aggregate}(column: "_time")\n'
                '  |> map(fn: (r) => ({r with _time_ns: int(v: r._time)}))'
            )

        earliest_rows, latest_rows = await asyncio.gather(
            self._query(extent_query('first', 'min')),
            self._query(extent_query('last', 'max')),
        )

        def first_time(rows):
            return next((parse_timestamp_ns(r['_time']) for r in rows if r.get('_time')), None)

        return first_time(earliest_rows), first_time(latest_rows)

    # ------------------------------------------------------------------
    # SourceReader
    # ------------------------------------------------------------------

    async def read(self, start: TimeBound = None, end: TimeBound = None) -> AsyncIterator[Batch]:
        """
        Yield batches of raw records for ``[start, end)`` in time order.

        Windows before the first and after the last stored point are skipped.
        A failure mid-stream yields the records of fully read timestamps as a
        final short batch and then raises ExtractionError.
        """
        lower, upper = self._bounds(start, end)
        batcher = TimestampBatcher(self.batch_size)
        failure: Optional[ExtractionError] = None
        try:
            earliest, latest = (None, None)
            if lower < upper:
                earliest, latest = await self._time_extent(lower, upper)
            if earliest is not None and latest is not None:
                cursor = max(lower, earliest)
                stop = min(upper, latest + 1)
                while cursor < stop:
                    window_end = min(cursor + self.window_ns, stop)
                    logger.debug(f"Reading source window {format_timestamp_ns(cursor)} "
                                 f"to {format_timestamp_ns(window_end)}")
                    query = self.build_data_query(cursor, window_end)
                    async with aclosing(self._stream(query)) as records:
                        async for record in records:
                            batch = batcher.add(record)
                            if batch:
                                yield batch
                    cursor = window_end
        except ExtractionError as e:
            failure = e

        batch = batcher.flush() if failure is None else batcher.flush_complete()
        if batch:
            yield batch
        if failure is not None:
            raise failure

    async def estimate_row_count(self, start: TimeBound = None, end: TimeBound = None) -> int:
        """Number of field values in the window, summed over all series."""
        lower, upper = self._bounds(start, end)
        if lower >= upper:
            return 0
        query = (
            self._from_range(lower, upper) + '\n'
            '  |> count()\n'
            '  |> group()\n'
            '  |> sum(column: "_value")'
        )
        records = await self._query(query)
        return sum(int(r.get('_value') or 0) for r in records)

    async def describe_schema(self) -> SchemaInfo:
        """Measurement names plus the earliest and latest timestamps of the bucket."""
        lower, upper = self._bounds()
        measurements_query = (
            'import "influxdata/influxdb/schema"\n'
            f'schema.measurements(bucket: "{flux_string(self.config.bucket)}", '
            f'start: {format_timestamp_ns(lower)})'
        )
        measurement_rows, (earliest, latest) = await asyncio.gather(
            self._query(measurements_query),
            self._time_extent(lower, upper),
        )

        measurements = sorted({str(r['_value']) for r in measurement_rows if r.get('_value')})
        return SchemaInfo(
            measurements=measurements,
            time_range=TimeRange(
                format_timestamp_ns(earliest) if earliest is not None else "",
                format_timestamp_ns(latest) if latest is not None else "",
            ),
        )

    async def test_connection(self) -> bool:
        query = (
            f'from(bucket: "{flux_string(self.config.bucket)}")\n'
            '  |> range(start: -1m)\n'
            '  |> limit(n: 1)'
        )
        try:
            await self._query(query)
        except ExtractionError as e:
            logger.debug(f"Source connection test failed: {e}")
            return False
        return True
