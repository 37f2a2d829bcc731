"""Time Utilities - UTC timestamps, parsing and storage normalization"""
from datetime import datetime, timezone, timedelta
from typing import Any, Optional, Union
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (Mongo returns naive UTC) and convert aware ones"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime to ISO 8601 string with Z suffix"""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted datetime string

    Returns:
        Datetime object in UTC
    """
    return ensure_utc(date_parser.isoparse(iso_string))


def coerce_datetime(value: Union[datetime, str, None]) -> Optional[datetime]:
    """Accept datetimes or date strings (lenient parse), return aware UTC or None"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(date_parser.parse(str(value)))


def to_storage(value: Any) -> Any:
    """
    Normalize datetimes for MongoDB: naive UTC, recursively through dicts and lists.

    pymongo hands back naive UTC datetimes, so queries and stored values use the
    same representation.
    """
    if isinstance(value, datetime):
        return ensure_utc(value).replace(tzinfo=None)
    if isinstance(value, dict):
        return {k: to_storage(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_storage(v) for v in value]
    return value


def add_minutes(dt: datetime, minutes: float) -> datetime:
    """Add minutes to datetime"""
    return dt + timedelta(minutes=minutes)


def add_hours(dt: datetime, hours: float) -> datetime:
    """Add hours to datetime"""
    return dt + timedelta(hours=hours)


def minutes_until(dt: datetime, now: Optional[datetime] = None) -> float:
    """
    Minutes until the given datetime

    Returns:
        Positive if in future, negative if in past
    """
    now = ensure_utc(now) if now else utc_now()
    return (ensure_utc(dt) - now).total_seconds() / 60


def minutes_since(dt: datetime, now: Optional[datetime] = None) -> float:
    """
    Minutes since the given datetime

    Returns:
        Positive if in past, negative if in future
    """
    return -minutes_until(dt, now)
