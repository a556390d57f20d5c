"""
Clock and end-date arithmetic shared by the lifecycle API and the expiry sweep.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from app.core.config import settings

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime to aware UTC.

    Naive values are taken to be UTC already; some backends (SQLite) drop the
    offset on the way back from the database.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_end_date(start_date: datetime, duration_in_days: int, tz_name: Optional[str] = None) -> datetime:
    """
    End date of a subscription: start_date plus duration_in_days calendar days.

    Days are added on the wall clock of the billing time zone, so a
    subscription ends at the same local time of day it started even across
    a DST change. The result is returned in UTC.
    """
    if isinstance(duration_in_days, bool) or not isinstance(duration_in_days, int):
        raise ValueError("duration_in_days must be an integer")
    if duration_in_days <= 0:
        raise ValueError("duration_in_days must be positive")

    zone = ZoneInfo(tz_name or settings.BILLING_TIMEZONE)
    local_start = ensure_utc(start_date).astimezone(zone)
    # Aware arithmetic within one tzinfo keeps the wall-clock time
    local_end = local_start + timedelta(days=duration_in_days)
    return local_end.astimezone(timezone.utc)


def days_remaining(end_date: datetime, now: datetime) -> int:
    """Whole days left before end_date, rounded up; 0 once it has passed."""
    remaining = ensure_utc(end_date) - ensure_utc(now)
    if remaining <= timedelta(0):
        return 0
    return remaining.days + (1 if remaining % timedelta(days=1) else 0)
