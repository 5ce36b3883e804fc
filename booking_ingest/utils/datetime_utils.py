"""
Timestamp helpers.

All timestamps are stored as naive UTC, matching datetime.utcnow() defaults on
the models.
"""

from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.utcnow()


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def localize(value: datetime, tz_name: str) -> datetime:
    """Interpret a naive wall-clock time in tz_name and return naive UTC."""
    aware = value.replace(tzinfo=ZoneInfo(tz_name))
    return aware.astimezone(timezone.utc).replace(tzinfo=None)


def parse_date_header(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 2822 Date header into naive UTC."""
    if not value:
        return None
    try:
        return to_utc_naive(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        return None


def from_epoch_millis(value: Union[str, int, None]) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.utcfromtimestamp(int(value) / 1000)
    except (TypeError, ValueError, OverflowError):
        return None


def coerce_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])
