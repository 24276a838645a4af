"""
Line Protocol Encoding
======================

Turns loosely typed source records into Points and Points into destination
line protocol: ``measurement[,tag=value...] field=value timestamp``.

Source records are the column/value mappings produced by a Flux query, where
``_measurement``, ``_field``, ``_value`` and ``_time`` are the designated
columns and every other non-system column is a tag.
"""

import math
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import FieldValue, Point
from .timestamps import parse_timestamp_ns

# Columns added by the Flux CSV encoder that are neither tags nor data.
SYSTEM_COLUMNS = frozenset({'result', 'table'})

_INTEGER_PATTERN = re.compile(r'^[+-]?\d+$')

# Flux types reported in the ``_type`` column whose string form is parsed strictly
TYPED_VALUES = frozenset({'float', 'int', 'uint', 'bool'})

# A backslash before a separator or at the end would escape what follows it
_SEPARATOR_BACKSLASH = re.compile(r'\\(?=[,= \n]|$)')

# Applied to measurement names, tag keys, tag values and field keys.
_IDENTIFIER_ESCAPES = str.maketrans({
    ',': r'\,',
    '=': r'\=',
    ' ': r'\ ',
    '\n': r'\n',
})


def coerce_field_value(value: Any) -> Optional[FieldValue]:
    """
    Resolve a raw field value to a transmittable type.

    Strings are trimmed and parsed: ``true``/``false`` become booleans, integer
    literals ints, other finite numeric literals floats, and anything else stays
    a string. Returns None when no usable value exists (None, empty string,
    non-finite float).
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None

    text = str(value).strip()
    if not text:
        return None

    lowered = text.lower()
    if lowered in ('true', 'false'):
        return lowered == 'true'
    if _INTEGER_PATTERN.match(text):
        return int(text)
    try:
        number = float(text)
    except ValueError:
        return text
    # "nan" / "inf" parse as floats but cannot be written as numbers
    return number if math.isfinite(number) else text


def typed_field_value(value: Any, value_type: Optional[str]) -> Optional[FieldValue]:
    """
    Resolve a field value whose source type is known.

    ``float`` values stay floats even when they print as whole numbers, so a
    double column is never turned into an integer one. Values without a
    numeric or boolean source type go through coerce_field_value.
    """
    if value_type not in TYPED_VALUES or not isinstance(value, str):
        return coerce_field_value(value)

    text = value.strip()
    if not text:
        return None
    if value_type == 'bool':
        return text.lower() == 'true'
    try:
        if value_type == 'float':
            number = float(text)
            return number if math.isfinite(number) else None
        return int(text)
    except ValueError:
        return None


def classify(record: Dict[str, Any]) -> Optional[Point]:
    """
    Split a source record into measurement, its single field, and its tags.

    Returns None when the record is not transmittable: no measurement, no
    field name, no usable field value, or no parseable timestamp.
    """
    measurement = record.get('_measurement')
    if measurement is None or str(measurement) == '':
        return None

    field_name = record.get('_field')
    if field_name is None or str(field_name) == '':
        return None

    field_value = typed_field_value(record.get('_value'), record.get('_type'))
    if field_value is None:
        return None

    raw_time = record.get('_time')
    if raw_time is None or raw_time == '':
        return None
    try:
        timestamp = parse_timestamp_ns(raw_time)
    except ValueError:
        return None

    tags = {}
    for key, value in record.items():
        if key.startswith('_') or key in SYSTEM_COLUMNS or value is None:
            continue
        tag_value = str(value).strip()
        if tag_value:
            tags[key] = tag_value

    return Point(
        measurement=str(measurement),
        timestamp=timestamp,
        field_name=str(field_name),
        field_value=field_value,
        tags=tags,
    )


def escape_identifier(text: str) -> str:
    """Backslash-escape commas, equals signs and spaces."""
    return _SEPARATOR_BACKSLASH.sub(r'\\\\', text).translate(_IDENTIFIER_ESCAPES)


def escape_string_field(text: str) -> str:
    """Escape a string field value for use inside double quotes."""
    return text.replace('\\', '\\\\').replace('"', '\\"')


def format_field_value(value: FieldValue) -> str:
    """Render a field value in its canonical line protocol form."""
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, int):
        return f"{value}i"
    if isinstance(value, float):
        return repr(value)
    return f'"{escape_string_field(value)}"'


def serialize_point(point: Point) -> str:
    """Serialize one point to a single line of line protocol."""
    parts = [escape_identifier(point.measurement)]
    for key in sorted(point.tags):
        parts.append(f"{escape_identifier(key)}={escape_identifier(point.tags[key])}")
    series = ','.join(parts)
    field_part = f"{escape_identifier(point.field_name)}={format_field_value(point.field_value)}"
    return f"{series} {field_part} {point.timestamp}"


def encode_records(records: Iterable[Dict[str, Any]]) -> Tuple[List[str], int]:
    """
    Classify and serialize a batch of source records.

    Returns:
        Tuple of (line protocol lines in batch order, count of dropped records)
    """
    lines = []
    skipped = 0
    for record in records:
        point = classify(record)
        if point is None:
            skipped += 1
            continue
        lines.append(serialize_point(point))
    return lines, skipped
