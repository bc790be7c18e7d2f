"""
Timezone utilities for schedule materialization.

Weekly rules carry wall-clock times in the schedule timezone; everything the
core persists is UTC.
"""

from datetime import date, datetime, time, timezone
from typing import Optional

import pytz

from .config import settings


def get_schedule_timezone(name: Optional[str] = None) -> pytz.BaseTzInfo:
    """Return the pytz zone that rule times are expressed in."""
    return pytz.timezone(name or settings.schedule_timezone)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def local_to_utc(day: date, at: time, tz: pytz.BaseTzInfo) -> datetime:
    """
    Combine a local date and wall-clock time into an aware UTC datetime.

    Uses ``localize`` so DST offsets apply to the given day, not to today.
    """
    local = tz.localize(datetime.combine(day, at))
    return local.astimezone(timezone.utc)


def local_date(dt: datetime, tz: pytz.BaseTzInfo) -> date:
    """Return the calendar date of a UTC instant in the given zone."""
    return ensure_utc(dt).astimezone(tz).date()
