"""
Line Protocol Tests
===================
Classification of source records and line protocol serialization.
"""

import pytest

from influx_migrate.migration.line_protocol import (
    classify,
    coerce_field_value,
    encode_records,
    escape_identifier,
    serialize_point,
    typed_field_value,
)
from influx_migrate.migration.models import Point


def record(**overrides):
    base = {
        "result": "_result",
        "table": 0,
        "_start": "2024-01-01T00:00:00Z",
        "_stop": "2024-01-02T00:00:00Z",
        "_time": "2024-01-01T00:00:00.000000001Z",
        "_measurement": "cpu",
        "_field": "usage",
        "_value": "12.5",
        "host": "server01",
    }
    base.update(overrides)
    return base


# =============================================================================
# Field value coercion
# =============================================================================

class TestCoerceFieldValue:
    """Tests for string -> typed field value resolution."""

    @pytest.mark.parametrize("raw,expected", [
        ("42", 42),
        ("  -7 ", -7),
        ("12.5", 12.5),
        ("1e3", 1000.0),
        ("true", True),
        ("FALSE", False),
        ("running", "running"),
        (3, 3),
        (2.5, 2.5),
        (True, True),
    ])
    def test_resolves_values(self, raw, expected):
        """Test that values resolve to the expected type and value."""
        value = coerce_field_value(raw)
        assert value == expected
        assert type(value) is type(expected)

    @pytest.mark.parametrize("raw", [None, "", "   ", float("nan"), float("inf")])
    def test_unusable_values_resolve_to_none(self, raw):
        """Test that empty and non-finite values are not transmittable."""
        assert coerce_field_value(raw) is None

    def test_nan_text_stays_a_string(self):
        """Test that non-finite numeric text is kept as a string field."""
        assert coerce_field_value("NaN") == "NaN"
        assert coerce_field_value("inf") == "inf"


class TestTypedFieldValue:
    """Tests for values whose Flux type is known."""

    @pytest.mark.parametrize("raw,value_type,expected", [
        ("1", "float", 1.0),
        ("-0.5", "float", -0.5),
        ("1e+20", "float", 1e20),
        ("7", "int", 7),
        ("18446744073709551615", "uint", 18446744073709551615),
        ("true", "bool", True),
        ("false", "bool", False),
        ("42", "string", 42),
        ("42", None, 42),
    ])
    def test_resolves_values(self, raw, value_type, expected):
        """Test that numeric and boolean types win over the text's shape."""
        value = typed_field_value(raw, value_type)
        assert value == expected
        assert type(value) is type(expected)

    @pytest.mark.parametrize("raw,value_type", [
        ("", "float"),
        ("NaN", "float"),
        ("+Inf", "float"),
        ("abc", "int"),
    ])
    def test_unusable_typed_values(self, raw, value_type):
        assert typed_field_value(raw, value_type) is None

    def test_whole_number_double_is_written_as_float(self):
        """Test that a double printed as "1" does not become an integer field."""
        point = classify(record(_value="1", _type="float"))
        assert point.field_value == 1.0
        assert isinstance(point.field_value, float)
        assert "_type" not in point.tags
        assert serialize_point(point) == "cpu,host=server01 usage=1.0 1704067200000000001"


# =============================================================================
# Classification
# =============================================================================

class TestClassify:
    """Tests for splitting records into measurement, field and tags."""

    def test_classifies_complete_record(self):
        """Test that a complete record becomes a Point."""
        point = classify(record())
        assert point == Point(
            measurement="cpu",
            timestamp=1704067200_000_000_001,
            field_name="usage",
            field_value=12.5,
            tags={"host": "server01"},
        )

    def test_system_and_underscore_columns_are_not_tags(self):
        """Test that result, table and underscore columns never become tags."""
        point = classify(record(region="eu"))
        assert point.tags == {"host": "server01", "region": "eu"}

    def test_empty_tag_values_are_omitted(self):
        """Test that None and blank tag values are dropped."""
        point = classify(record(region="  ", rack=None))
        assert point.tags == {"host": "server01"}

    @pytest.mark.parametrize("overrides", [
        {"_measurement": ""},
        {"_measurement": None},
        {"_field": ""},
        {"_value": ""},
        {"_value": "   "},
        {"_value": None},
        {"_time": "not a time"},
        {"_time": None},
    ])
    def test_untransmittable_records_are_dropped(self, overrides):
        """Test that records without measurement, field, value or time give None."""
        assert classify(record(**overrides)) is None

    def test_missing_keys_are_dropped(self):
        """Test that a record lacking the designated columns gives None."""
        assert classify({"host": "a"}) is None


# =============================================================================
# Serialization
# =============================================================================

class TestSerializePoint:
    """Tests for line protocol rendering."""

    def test_tag_value_escaping(self):
        """Test that comma, equals sign and space are escaped in tag values."""
        point = Point("cpu", 1, "usage", 1.0, {"host": "a,b=c d"})
        assert serialize_point(point) == r"cpu,host=a\,b\=c\ d usage=1.0 1"

    def test_measurement_and_keys_escaping(self):
        """Test that measurement, tag keys and field keys are escaped."""
        point = Point("cpu load", 5, "user,time", 2, {"data center": "x"})
        assert serialize_point(point) == r"cpu\ load,data\ center=x user\,time=2i 5"

    def test_string_field_quoting(self):
        """Test that string fields are quoted with inner quotes escaped."""
        point = Point("logs", 10, "message", 'say "hi" \\ bye', {})
        assert serialize_point(point) == r'logs message="say \"hi\" \\ bye" 10'

    @pytest.mark.parametrize("value,rendered", [
        (42, "42i"),
        (-3, "-3i"),
        (0.1, "0.1"),
        (1e20, "1e+20"),
        (True, "true"),
        (False, "false"),
    ])
    def test_field_value_forms(self, value, rendered):
        """Test canonical forms of numeric and boolean field values."""
        point = Point("m", 1, "f", value, {})
        assert serialize_point(point) == f"m f={rendered} 1"

    def test_tags_are_sorted(self):
        """Test that tags are written in key order."""
        point = Point("m", 1, "f", 1, {"zone": "b", "app": "a"})
        assert serialize_point(point) == "m,app=a,zone=b f=1i 1"

    def test_newline_in_identifier_is_escaped(self):
        """Test that a newline cannot split the line."""
        assert escape_identifier("a\nb") == "a\\nb"

    @pytest.mark.parametrize("raw,escaped", [
        ("C:\\", "C:\\\\"),
        ("a\\,b", "a\\\\\\,b"),
        ("a\\b", "a\\b"),
    ])
    def test_backslash_before_separator_is_doubled(self, raw, escaped):
        """Test that a backslash cannot escape the separator that follows it."""
        assert escape_identifier(raw) == escaped

    def test_trailing_backslash_in_tag_value(self):
        point = Point("disk\\", 1, "free", 1, {"path": "C:\\", "host": "a"})
        assert serialize_point(point) == "disk\\\\,host=a,path=C:\\\\ free=1i 1"


class TestEncodeRecords:
    """Tests for batch encoding."""

    def test_counts_skipped_records(self):
        """Test that malformed records are counted and excluded."""
        lines, skipped = encode_records([
            record(),
            record(_value=""),
            record(_measurement=""),
            record(_value="7", _time="2024-01-01T00:00:01Z"),
        ])
        assert skipped == 2
        assert lines == [
            "cpu,host=server01 usage=12.5 1704067200000000001",
            "cpu,host=server01 usage=7i 1704067201000000000",
        ]

    def test_all_malformed_batch(self):
        """Test that a batch of empty-field records yields no lines."""
        lines, skipped = encode_records([record(_value=""), record(_value=" ")])
        assert lines == []
        assert skipped == 2
