"""Timestamp helpers shared by the client and server sides.

All timestamps are timezone-aware UTC. The canonical text form always
carries microseconds and an explicit offset, so string order in SQLite
matches chronological order.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

# Smallest step used to keep local updated_at strictly increasing
TICK = timedelta(milliseconds=1)


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are assumed UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format a datetime in the canonical wire/storage form.

    Args:
        dt: Datetime to format.

    Returns:
        ISO-8601 string like "2026-01-02T03:04:05.000000+00:00".
    """
    return to_utc(dt).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> datetime:
    """Parse a timestamp from the wire or from storage.

    Accepts datetimes, ISO-8601 strings (with "Z", an offset, or naive)
    and epoch milliseconds as int/float.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp.
    """
    if isinstance(value, datetime):
        try:
            return to_utc(value)
        except OverflowError as e:
            raise ValueError(f"Timestamp out of range: {value!r}") from e

    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"Timestamp out of range: {value!r}") from e

    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        try:
            return to_utc(parsed)
        except OverflowError as e:
            raise ValueError(f"Timestamp out of range: {value!r}") from e

    raise ValueError(f"Invalid timestamp: {value!r}")


def parse_optional_timestamp(value: Any) -> datetime | None:
    """Parse a timestamp, mapping None/empty to None."""
    if value is None or value == "":
        return None
    return parse_timestamp(value)
