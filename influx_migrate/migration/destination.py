"""
InfluxDB 3.x Destination Writer
===============================

Encodes batches as line protocol and writes them to an InfluxDB 3.x database
(``POST /api/v3/write_lp``) with nanosecond precision.

A batch is first sent as a single request. When that request fails, every
point is retried on its own so that the rejected points can be named and the
rest of the batch still lands. Only a batch with zero accepted points is an
error.

Record counts and time ranges for verification are answered with SQL over
``/api/v3/query_sql``.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import httpx

from ..utils import http_error_message
from .exceptions import BatchWriteError, DestinationQueryError
from .line_protocol import encode_records
from .models import Batch, RejectedPoint, TimeRange, WriteResult
from .timestamps import format_timestamp_ns, parse_timestamp_ns

if TYPE_CHECKING:
    from ..config.config import DestinationConfig

logger = logging.getLogger(__name__)

# Tag columns are stored dictionary-encoded; everything else except time is a field
_TAG_TYPE_PREFIX = "Dictionary"


def quote_identifier(name: str) -> str:
    """Double-quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


class InfluxDestinationWriter:
    """
    Line protocol writer for an InfluxDB 3.x database.

    Args:
        config: Destination connection settings
        timeout: Per-request timeout in seconds
        write_concurrency: Parallel single-point requests while isolating a failed batch
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
    """

    def __init__(
        self,
        config: "DestinationConfig",
        timeout: float = 30.0,
        write_concurrency: int = 8,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.write_concurrency = max(1, write_concurrency)
        headers = {}
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def __aenter__(self) -> "InfluxDestinationWriter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _send(self, lines: List[str]) -> Optional[str]:
        """Send lines in one request. Returns None on success, else the HTTP failure reason."""
        response = await self._client.post(
            "/api/v3/write_lp",
            params={
                "db": self.config.database,
                "precision": "nanosecond",
                "accept_partial": "false",
            },
            content="\n".join(lines).encode("utf-8"),
            headers={"Content-Type": "text/plain; charset=utf-8"},
        )
        if response.status_code >= 400:
            return f"HTTP {response.status_code}: {http_error_message(response)}"
        return None

    async def _post_lines(self, lines: List[str]) -> Optional[str]:
        """Like _send, with transport errors reported as the failure reason."""
        try:
            return await self._send(lines)
        except httpx.HTTPError as e:
            return f"{type(e).__name__}: {e}"

    async def _isolate(self, lines: List[str]) -> Optional[List[RejectedPoint]]:
        """
        Retry each line on its own; returns the rejected ones in batch order.

        The first ``write_concurrency`` lines go out before the rest. When all
        of them fail at the transport level the destination is unreachable and
        None is returned without sending the remaining lines.
        """
        semaphore = asyncio.Semaphore(self.write_concurrency)

        async def attempt(line: str) -> Tuple[Optional[str], bool]:
            async with semaphore:
                try:
                    return await self._send([line]), False
                except httpx.TransportError as e:
                    return f"{type(e).__name__}: {e}", True
                except httpx.HTTPError as e:
                    return f"{type(e).__name__}: {e}", False

        head = lines[:self.write_concurrency]
        outcomes = list(await asyncio.gather(*(attempt(line) for line in head)))
        if all(unreachable for _, unreachable in outcomes):
            return None
        outcomes.extend(await asyncio.gather(*(attempt(line) for line in lines[len(head):])))
        return [
            RejectedPoint(line=line, reason=reason)
            for line, (reason, _) in zip(lines, outcomes)
            if reason is not None
        ]

    async def write_batch(self, batch: Batch) -> WriteResult:
        """
        Write one batch of raw source records.

        Records that cannot be classified are skipped and counted. When the
        batch request fails, points are retried individually.

        Returns:
            WriteResult with accepted, skipped and rejected points. A batch in
            which every record was skipped yields ``accepted_count == 0``
            without any request being made.

        Raises:
            BatchWriteError: If no point of a transmittable batch was accepted
        """
        lines, skipped = encode_records(batch)
        if not lines:
            logger.debug(f"No transmittable points in batch of {len(batch)} records")
            return WriteResult(accepted_count=0, skipped_count=skipped)

        reason = await self._post_lines(lines)
        if reason is None:
            return WriteResult(accepted_count=len(lines), skipped_count=skipped)

        logger.debug(f"Batch write of {len(lines)} points failed ({reason}); retrying per point")
        rejected = await self._isolate(lines)
        if rejected is None:
            raise BatchWriteError(
                f"Destination unreachable while retrying {len(lines)} points one by one: {reason}",
                batch_size=len(batch),
                skipped_count=skipped,
                rejected_count=len(lines),
            )
        accepted = len(lines) - len(rejected)
        if accepted == 0:
            raise BatchWriteError(
                f"Destination rejected all {len(lines)} points of the batch: {reason}",
                batch_size=len(batch),
                skipped_count=skipped,
                rejected_count=len(rejected),
            )
        return WriteResult(accepted_count=accepted, skipped_count=skipped, rejected=rejected)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def query_sql(self, sql: str) -> List[Dict[str, Any]]:
        """Run an SQL query against the destination database and return its rows."""
        logger.debug(f"SQL query: {sql}")
        try:
            response = await self._client.post(
                "/api/v3/query_sql",
                json={"db": self.config.database, "q": sql, "format": "json"},
            )
        except httpx.HTTPError as e:
            raise DestinationQueryError(f"Destination query failed: {e}") from e
        if response.status_code >= 400:
            raise DestinationQueryError(
                f"Destination query returned HTTP {response.status_code}: "
                f"{http_error_message(response)}"
            )
        if not response.content.strip():
            return []
        try:
            rows = response.json()
        except ValueError as e:
            raise DestinationQueryError("Destination returned a non-JSON query result") from e
        return rows if isinstance(rows, list) else []

    async def list_tables(self) -> List[str]:
        rows = await self.query_sql("SHOW TABLES")
        return sorted(
            row["table_name"] for row in rows
            if row.get("table_schema") == "iox" and row.get("table_name")
        )

    async def _field_columns(self) -> Dict[str, List[str]]:
        rows = await self.query_sql(
            "SELECT table_name, column_name, data_type FROM information_schema.columns "
            "WHERE table_schema = 'iox'"
        )
        fields: Dict[str, List[str]] = {}
        for row in rows:
            column = row.get("column_name")
            data_type = str(row.get("data_type") or "")
            if not column or column == "time" or data_type.startswith(_TAG_TYPE_PREFIX):
                continue
            fields.setdefault(row["table_name"], []).append(column)
        return fields

    async def _table_stats(self) -> List[Tuple[int, Optional[int], Optional[int]]]:
        """(field value count, min time ns, max time ns) for every table."""
        tables = await self.list_tables()
        if not tables:
            return []
        fields = await self._field_columns()

        stats = []
        for table in tables:
            columns = fields.get(table, [])
            selects = [
                f"COUNT({quote_identifier(column)}) AS c{i}" for i, column in enumerate(columns)
            ]
            selects += ["MIN(time) AS min_time", "MAX(time) AS max_time"]
            rows = await self.query_sql(
                f"SELECT {', '.join(selects)} FROM {quote_identifier(table)}"
            )
            row = rows[0] if rows else {}
            count = sum(int(row.get(f"c{i}") or 0) for i in range(len(columns)))
            stats.append((count, _to_ns(row.get("min_time")), _to_ns(row.get("max_time"))))
        return stats

    async def count_records(self) -> int:
        """Number of stored field values across all tables (one per source point)."""
        return sum(count for count, _, _ in await self._table_stats())

    async def describe_time_range(self) -> TimeRange:
        stats = await self._table_stats()
        minimums = [low for _, low, _ in stats if low is not None]
        maximums = [high for _, _, high in stats if high is not None]
        if not minimums or not maximums:
            return TimeRange()
        return TimeRange(
            earliest=format_timestamp_ns(min(minimums)),
            latest=format_timestamp_ns(max(maximums)),
        )

    async def test_connection(self) -> bool:
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError as e:
            logger.debug(f"Destination connection test failed: {e}")
            return False
        if response.status_code >= 400:
            logger.debug(f"Destination health check returned HTTP {response.status_code}")
            return False
        return True


def _to_ns(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return parse_timestamp_ns(value)
    except ValueError as e:
        raise DestinationQueryError(f"Unexpected timestamp from destination: {value!r}") from e
