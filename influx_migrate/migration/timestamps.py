"""
Nanosecond Timestamp Helpers
============================

Python's datetime only carries microseconds, so RFC3339 timestamps with up to
nine fractional digits are converted to and from integer nanoseconds with
integer arithmetic.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

NANOS_PER_SECOND = 1_000_000_000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_RFC3339_PATTERN = re.compile(
    r'^(?P<date>\d{4}-\d{2}-\d{2})'
    r'(?:[T ](?P<time>\d{2}:\d{2}(?::\d{2})?)(?:\.(?P<frac>\d+))?)?'
    r'\s*(?P<tz>Z|z|[+-]\d{2}:?\d{2})?$'
)


def parse_timestamp_ns(value: Union[str, int, datetime]) -> int:
    """
    Convert a timestamp to nanoseconds since the epoch.

    Accepts RFC3339 strings (fractional seconds up to nanoseconds, ``Z`` or a
    numeric offset; naive strings are taken as UTC), bare dates, integer
    nanoseconds and datetimes.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        delta = dt - _EPOCH
        return (delta.days * 86400 + delta.seconds) * NANOS_PER_SECOND + delta.microseconds * 1000
    if not isinstance(value, str):
        raise ValueError(f"Not a timestamp: {value!r}")

    match = _RFC3339_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Unable to parse timestamp: {value!r}")

    clock = match.group('time') or '00:00:00'
    if clock.count(':') == 1:
        clock += ':00'
    tz = match.group('tz')
    if tz is None or tz in ('Z', 'z'):
        tz = '+00:00'
    elif ':' not in tz:
        tz = f"{tz[:3]}:{tz[3:]}"

    dt = datetime.fromisoformat(f"{match.group('date')}T{clock}{tz}")
    delta = dt - _EPOCH
    seconds = delta.days * 86400 + delta.seconds
    frac = (match.group('frac') or '')[:9].ljust(9, '0')
    return seconds * NANOS_PER_SECOND + int(frac)


def format_timestamp_ns(timestamp_ns: int) -> str:
    """Format nanoseconds since the epoch as RFC3339 UTC, trailing zeros trimmed."""
    seconds, nanos = divmod(timestamp_ns, NANOS_PER_SECOND)
    dt = _EPOCH + timedelta(seconds=seconds)
    text = dt.strftime('%Y-%m-%dT%H:%M:%S')
    if nanos:
        text += '.' + f"{nanos:09d}".rstrip('0')
    return text + 'Z'


def cursor_after(timestamp: Optional[str]) -> Optional[str]:
    """Read lower bound that excludes ``timestamp`` itself (one nanosecond later)."""
    if not timestamp:
        return None
    return format_timestamp_ns(parse_timestamp_ns(timestamp) + 1)
