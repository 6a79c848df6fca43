"""Time helpers shared by the service and executor."""

from datetime import date, datetime, time, timezone
from typing import Any, Optional, Tuple, Union

from dateutil.parser import isoparse


def utc_now() -> datetime:
    """Current UTC timestamp."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    if isinstance(value, datetime):
        parsed = value
    elif not value:
        return None
    else:
        try:
            parsed = isoparse(str(value))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_date(value: Union[date, datetime, str, None]) -> Optional[date]:
    """
    Coerce a date-like value to a date.

    Raises:
        ValueError: If a string is not an ISO-8601 date or timestamp
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    return isoparse(text).date()


def day_bounds(start: date, end: date) -> Tuple[datetime, datetime]:
    """Whole-day UTC bounds covering [start, end]."""
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end, time.max, tzinfo=timezone.utc),
    )
