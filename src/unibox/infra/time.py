"""Time utilities for consistent timestamp handling.

Providers report time as unix seconds, epoch millis or ISO-8601 strings.
Everything is converted to timezone-aware UTC datetimes at the edge.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Literal

NumericUnit = Literal["seconds", "millis"]


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any, numeric_unit: NumericUnit = "seconds") -> datetime | None:
    """Parse a provider timestamp into an aware UTC datetime.

    Args:
        value: datetime, int/float, numeric string or ISO-8601 string.
        numeric_unit: How to interpret numbers ("seconds" or "millis").

    Returns:
        Aware UTC datetime, or None when the value is missing or unparseable.
        Non-positive epochs are treated as missing.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        # isdigit() also accepts superscripts and other non-ASCII digits
        if text.isascii() and text.lstrip("-").isdigit():
            try:
                value = int(text)
            except ValueError:
                return None
        else:
            # fromisoformat does not accept a trailing Z before 3.11
            if text.endswith("Z") or text.endswith("z"):
                text = text[:-1] + "+00:00"
            try:
                return ensure_utc(datetime.fromisoformat(text))
            except ValueError:
                return None

    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        seconds = value / 1000 if numeric_unit == "millis" else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    return None


def hour_bucket(now: datetime) -> str:
    """Calendar-hour bucket key, e.g. 2024-03-01T14."""
    return ensure_utc(now).strftime("%Y-%m-%dT%H")


def day_bucket(now: datetime) -> str:
    """Calendar-day bucket key, e.g. 2024-03-01."""
    return ensure_utc(now).strftime("%Y-%m-%d")


def hour_bucket_end(now: datetime) -> datetime:
    """First instant of the next UTC hour."""
    start = ensure_utc(now).replace(minute=0, second=0, microsecond=0)
    return start + timedelta(hours=1)


def day_bucket_end(now: datetime) -> datetime:
    """First instant of the next UTC day."""
    start = ensure_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)
    return start + timedelta(days=1)


def isoformat(value: datetime | None) -> str | None:
    """Serialize a datetime for JSON payloads."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()
