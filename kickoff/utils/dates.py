"""UTC helpers.

All timestamps are stored as naive UTC datetimes.
"""

from datetime import datetime, timezone
from typing import Optional

EPOCH_MILLIS_THRESHOLD = 1e11


def utc_now() -> datetime:
    """Current instant as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_remote_datetime(value) -> Optional[datetime]:
    """
    Parse ISO-8601 strings (with or without 'Z') or epoch numbers into naive UTC.

    Epoch values above 1e11 are read as milliseconds. Anything that cannot be
    represented as a datetime yields None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (ValueError, OverflowError, OSError):
            return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def isoformat_z(value: datetime) -> str:
    """Render a naive UTC datetime as ISO-8601 with a trailing 'Z' (millisecond precision)."""
    return to_naive_utc(value).strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
