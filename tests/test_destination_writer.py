"""
Destination Writer Tests
========================
Line protocol writes and SQL metadata queries against httpx.MockTransport.
"""

import json

import httpx
import pytest

from conftest import make_records

from influx_migrate.config import DestinationConfig
from influx_migrate.migration.destination import InfluxDestinationWriter, quote_identifier
from influx_migrate.migration.exceptions import BatchWriteError, DestinationQueryError


def make_writer(handler, token="dest-token"):
    config = DestinationConfig(host="influx3", token=token, database="metrics")
    return InfluxDestinationWriter(config, transport=httpx.MockTransport(handler))


def body_lines(request):
    return request.content.decode("utf-8").split("\n")


# =============================================================================
# Writes
# =============================================================================

class TestWriteBatch:
    """Tests for batch writes and per-point isolation."""

    @pytest.mark.asyncio
    async def test_successful_batch(self):
        """Test request shape and the accepted count of a clean batch."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(204)

        writer = make_writer(handler)
        result = await writer.write_batch(make_records(3))
        await writer.close()

        assert result.accepted_count == 3
        assert result.skipped_count == 0
        assert result.rejected == []

        assert len(requests) == 1
        request = requests[0]
        assert request.url.path == "/api/v3/write_lp"
        assert request.url.params["db"] == "metrics"
        assert request.url.params["precision"] == "nanosecond"
        assert request.url.params["accept_partial"] == "false"
        assert request.headers["Authorization"] == "Bearer dest-token"
        assert body_lines(request) == [
            "cpu,host=server01 usage=0i 1704067200000000000",
            "cpu,host=server01 usage=1i 1704067201000000000",
            "cpu,host=server01 usage=2i 1704067202000000000",
        ]

    @pytest.mark.asyncio
    async def test_no_auth_header_without_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        writer = make_writer(handler, token="")
        await writer.write_batch(make_records(1))
        await writer.close()

        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_skipped_records_are_counted(self):
        records = make_records(4)
        records[1]["_value"] = ""
        writer = make_writer(lambda request: httpx.Response(204))

        result = await writer.write_batch(records)
        await writer.close()

        assert result.accepted_count == 3
        assert result.skipped_count == 1

    @pytest.mark.asyncio
    async def test_all_malformed_batch_sends_nothing(self):
        """Test that a batch without transmittable points makes no request."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(204)

        records = make_records(3)
        for r in records:
            r["_value"] = None
        writer = make_writer(handler)
        result = await writer.write_batch(records)
        await writer.close()

        assert result.accepted_count == 0
        assert result.skipped_count == 3
        assert requests == []

    @pytest.mark.asyncio
    async def test_failed_batch_is_isolated_per_point(self):
        """Test that a rejected batch is retried point by point and bad points reported."""
        records = make_records(5)
        records[2]["host"] = "bad"
        records[4]["host"] = "bad"

        def handler(request):
            if b"host=bad" in request.content:
                return httpx.Response(400, json={"error": "invalid field type"})
            return httpx.Response(204)

        writer = make_writer(handler)
        result = await writer.write_batch(records)
        await writer.close()

        assert result.accepted_count == 3
        assert result.rejected_count == 2
        assert [r.line.split(" ")[0] for r in result.rejected] == ["cpu,host=bad", "cpu,host=bad"]
        assert "usage=2i" in result.rejected[0].line
        assert "invalid field type" in result.rejected[0].reason
        assert result.lost_count == 2

    @pytest.mark.asyncio
    async def test_every_point_rejected_raises(self):
        def handler(request):
            return httpx.Response(500, text="write buffer full")

        writer = make_writer(handler)
        with pytest.raises(BatchWriteError) as exc_info:
            await writer.write_batch(make_records(3))
        await writer.close()

        assert exc_info.value.rejected_count == 3
        assert "write buffer full" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_errors_count_as_rejections(self):
        def handler(request):
            raise httpx.ConnectError("connection reset", request=request)

        writer = make_writer(handler)
        with pytest.raises(BatchWriteError, match="ConnectError"):
            await writer.write_batch(make_records(2))
        await writer.close()

    @pytest.mark.asyncio
    async def test_unreachable_destination_stops_isolation_early(self):
        """Test that timeouts on the first single-point writes abort the remaining retries."""
        requests = []

        def handler(request):
            requests.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        config = DestinationConfig(host="influx3", token="t", database="metrics")
        writer = InfluxDestinationWriter(config, write_concurrency=4,
                                         transport=httpx.MockTransport(handler))
        with pytest.raises(BatchWriteError, match="unreachable") as exc_info:
            await writer.write_batch(make_records(50))
        await writer.close()

        # one batch request plus one round of single-point requests
        assert len(requests) == 1 + 4
        assert exc_info.value.rejected_count == 50

    @pytest.mark.asyncio
    async def test_isolation_continues_after_mixed_first_round(self):
        """Test that one reachable point in the first round keeps isolation going."""
        def handler(request):
            if b"\n" in request.content:
                raise httpx.ReadTimeout("timed out", request=request)
            if b"usage=0i" in request.content:
                return httpx.Response(204)
            raise httpx.ConnectError("connection reset", request=request)

        config = DestinationConfig(host="influx3", token="t", database="metrics")
        writer = InfluxDestinationWriter(config, write_concurrency=2,
                                         transport=httpx.MockTransport(handler))
        result = await writer.write_batch(make_records(6))
        await writer.close()

        assert result.accepted_count == 1
        assert result.rejected_count == 5


# =============================================================================
# SQL queries
# =============================================================================

def sql_handler(responses):
    """Route /api/v3/query_sql requests by a substring of the SQL text."""
    def handler(request):
        assert request.url.path == "/api/v3/query_sql"
        payload = json.loads(request.content)
        assert payload["db"] == "metrics"
        assert payload["format"] == "json"
        for needle, rows in responses.items():
            if needle in payload["q"]:
                return httpx.Response(200, json=rows)
        raise AssertionError(f"unexpected query {payload['q']}")
    return handler


TABLES = [
    {"table_catalog": "public", "table_schema": "iox", "table_name": "mem", "table_type": "BASE TABLE"},
    {"table_catalog": "public", "table_schema": "iox", "table_name": "cpu", "table_type": "BASE TABLE"},
    {"table_catalog": "public", "table_schema": "system", "table_name": "queries", "table_type": "BASE TABLE"},
]

COLUMNS = [
    {"table_name": "cpu", "column_name": "host", "data_type": "Dictionary(Int32, Utf8)"},
    {"table_name": "cpu", "column_name": "usage", "data_type": "Float64"},
    {"table_name": "cpu", "column_name": "system", "data_type": "Float64"},
    {"table_name": "cpu", "column_name": "time", "data_type": "Timestamp(Nanosecond, None)"},
    {"table_name": "mem", "column_name": "used", "data_type": "Int64"},
    {"table_name": "mem", "column_name": "time", "data_type": "Timestamp(Nanosecond, None)"},
]


class TestQueries:
    """Tests for destination counts and time ranges."""

    def stats_handler(self):
        return sql_handler({
            "SHOW TABLES": TABLES,
            "information_schema.columns": COLUMNS,
            'FROM "cpu"': [{"c0": 6, "c1": 4, "min_time": "2024-01-01T00:00:00",
                            "max_time": "2024-01-01T10:00:00"}],
            'FROM "mem"': [{"c0": 5, "min_time": "2023-12-31T00:00:00",
                            "max_time": "2024-01-01T05:00:00.5"}],
        })

    @pytest.mark.asyncio
    async def test_list_tables_ignores_system_tables(self):
        writer = make_writer(sql_handler({"SHOW TABLES": TABLES}))
        assert await writer.list_tables() == ["cpu", "mem"]
        await writer.close()

    @pytest.mark.asyncio
    async def test_count_records_sums_field_values(self):
        writer = make_writer(self.stats_handler())
        assert await writer.count_records() == 15
        await writer.close()

    @pytest.mark.asyncio
    async def test_describe_time_range(self):
        writer = make_writer(self.stats_handler())
        time_range = await writer.describe_time_range()
        await writer.close()

        assert time_range.earliest == "2023-12-31T00:00:00Z"
        assert time_range.latest == "2024-01-01T10:00:00Z"

    @pytest.mark.asyncio
    async def test_empty_database(self):
        writer = make_writer(sql_handler({"SHOW TABLES": []}))
        assert await writer.count_records() == 0
        assert (await writer.describe_time_range()).is_empty
        await writer.close()

    @pytest.mark.asyncio
    async def test_query_error(self):
        def handler(request):
            return httpx.Response(404, json={"error": "database not found"})

        writer = make_writer(handler)
        with pytest.raises(DestinationQueryError, match="database not found"):
            await writer.query_sql("SHOW TABLES")
        await writer.close()

    def test_quote_identifier(self):
        assert quote_identifier('we"ird') == '"we""ird"'


# =============================================================================
# Health
# =============================================================================

class TestConnection:
    """Tests for the destination health check."""

    @pytest.mark.asyncio
    async def test_healthy(self):
        def handler(request):
            assert request.url.path == "/health"
            return httpx.Response(200, text="OK")

        writer = make_writer(handler)
        assert await writer.test_connection() is True
        await writer.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 503])
    async def test_unhealthy_status(self, status):
        writer = make_writer(lambda request: httpx.Response(status))
        assert await writer.test_connection() is False
        await writer.close()

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("no route to host", request=request)

        writer = make_writer(handler)
        assert await writer.test_connection() is False
        await writer.close()
