from datetime import datetime, date, time, timedelta, timezone as dt_timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from taskflow.core.config import settings


def get_zoneinfo(tz_name: Optional[str] = None):
    tz_name = tz_name or getattr(settings, "DEFAULT_TIMEZONE", None)
    if not tz_name:
        return dt_timezone.utc
    try:
        return ZoneInfo(tz_name)
    except Exception:
        return dt_timezone.utc


def utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)


def to_utc_aware(dt: datetime | None) -> datetime | None:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC).
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def ensure_aware(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes, leave aware ones in their own zone."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt


def day_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """
    Return [start of day, start of next day) for the calendar day of ``now``,
    evaluated in ``now``'s own time zone (naive values are UTC).
    """
    now = ensure_aware(now)
    tz = now.tzinfo
    today: date = now.date()
    start = datetime.combine(today, time.min, tzinfo=tz)
    end = datetime.combine(today + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def same_calendar_day(moment: datetime, now: datetime) -> bool:
    start, end = day_bounds(now)
    return start <= ensure_aware(moment) < end


def week_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Return [Monday 00:00, next Monday 00:00) for the ISO week containing ``now``."""
    start_of_today, _ = day_bounds(now)
    start = start_of_today - timedelta(days=start_of_today.weekday())
    start = datetime.combine(start.date(), time.min, tzinfo=start.tzinfo)
    end = datetime.combine(start.date() + timedelta(days=7), time.min, tzinfo=start.tzinfo)
    return start, end
