"""
influx-migrate Utility Functions
================================
Formatting helpers shared by the migration observers and the CLI.
"""

import json
from typing import Optional

import httpx


def format_duration(seconds: float) -> str:
    """
    Convert seconds to human-readable duration.

    Args:
        seconds: Duration in seconds

    Returns:
        Human-readable string like "2.5s", "1m 30s", "2h 15m"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def format_count(count: int) -> str:
    """
    Thousands-separated record count.

    Examples:
        >>> format_count(1234567)
        '1,234,567'
    """
    return f"{count:,}"


def format_rate(records: int, seconds: float) -> str:
    """Records per second, e.g. "12,500 records/s"; "n/a" before any time has passed."""
    if seconds <= 0:
        return "n/a"
    return f"{records / seconds:,.0f} records/s"


def format_percent(percent: Optional[float]) -> str:
    """Percentage with one decimal, or "unknown" when no estimate exists."""
    if percent is None:
        return "unknown"
    return f"{percent:.1f}%"


def truncate_text(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """
    Truncate text to a maximum length with suffix.

    Args:
        text: Text to truncate
        max_length: Maximum length including suffix
        suffix: Suffix to append when truncated

    Returns:
        Truncated text with suffix if exceeded max_length
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix


def http_error_message(response: httpx.Response) -> str:
    """Pull the ``message`` (or ``error``) out of an InfluxDB JSON error body, else the raw text."""
    return error_body_message(response.text)


def error_body_message(body: Optional[str]) -> str:
    text = (body or "").strip()
    try:
        payload = json.loads(text)
    except ValueError:
        return truncate_text(text, 500)
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
        if message:
            return truncate_text(str(message), 500)
    return truncate_text(text, 500)
