"""
Time helpers.

The store keeps naive UTC datetimes; everything coming from a provider is
converted here at ingestion time.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(value: datetime) -> datetime:
    return start_of_day(value) + timedelta(days=1) - timedelta(microseconds=1)


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into naive UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return to_naive_utc(parsed)


def from_epoch_millis(value: Any) -> Optional[datetime]:
    """Convert an epoch-milliseconds value (int or numeric string) into naive UTC"""
    if value is None or value == "":
        return None
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).replace(tzinfo=None)


def to_epoch_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def millis_to_minutes(value: Any) -> Optional[int]:
    """Provider durations are milliseconds; estimates and spent time are stored in minutes"""
    if value is None or value == "":
        return None
    try:
        return round(int(value) / 60000)
    except (TypeError, ValueError):
        return None
