"""
Structured schedule definitions shared by the in-process runner and Celery beat.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from celery.schedules import crontab

from taskflow.utils.timezone import ensure_aware, get_zoneinfo
from .config import reminder_settings


@dataclass(frozen=True)
class IntervalSchedule:
    seconds: float

    def __post_init__(self):
        if self.seconds <= 0:
            raise ValueError("Interval must be positive")

    def next_fire_after(self, now: datetime) -> datetime:
        return ensure_aware(now) + timedelta(seconds=self.seconds)

    def to_celery(self) -> timedelta:
        return timedelta(seconds=self.seconds)


@dataclass(frozen=True)
class CalendarSchedule:
    """Fires daily at hour:minute, or weekly when ``weekday`` is set (Monday=0)."""
    hour: int
    minute: int = 0
    weekday: Optional[int] = None
    tz: str = "UTC"

    def __post_init__(self):
        if not 0 <= self.hour <= 23:
            raise ValueError(f"Invalid hour: {self.hour}")
        if not 0 <= self.minute <= 59:
            raise ValueError(f"Invalid minute: {self.minute}")
        if self.weekday is not None and not 0 <= self.weekday <= 6:
            raise ValueError(f"Invalid weekday: {self.weekday}")

    def next_fire_after(self, now: datetime) -> datetime:
        """First fire time strictly after ``now``, returned in the schedule's zone."""
        local_now = ensure_aware(now).astimezone(get_zoneinfo(self.tz))
        candidate = local_now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if self.weekday is None:
            if candidate <= local_now:
                candidate += timedelta(days=1)
            return candidate
        candidate += timedelta(days=(self.weekday - local_now.weekday()) % 7)
        if candidate <= local_now:
            candidate += timedelta(days=7)
        return candidate

    def to_celery(self) -> crontab:
        if self.weekday is None:
            return crontab(hour=self.hour, minute=self.minute)
        # crontab counts days from Sunday=0
        return crontab(hour=self.hour, minute=self.minute, day_of_week=(self.weekday + 1) % 7)


def to_celery_schedule(schedule):
    return schedule.to_celery()


def reminder_scan_schedule() -> IntervalSchedule:
    return IntervalSchedule(reminder_settings.SCAN_INTERVAL_SECONDS)


def daily_digest_schedule() -> CalendarSchedule:
    return CalendarSchedule(
        hour=reminder_settings.DAILY_DIGEST_HOUR,
        minute=reminder_settings.DAILY_DIGEST_MINUTE,
        tz=reminder_settings.DIGEST_TIMEZONE,
    )


def weekly_digest_schedule() -> CalendarSchedule:
    return CalendarSchedule(
        hour=reminder_settings.WEEKLY_DIGEST_HOUR,
        minute=reminder_settings.WEEKLY_DIGEST_MINUTE,
        weekday=reminder_settings.WEEKLY_DIGEST_WEEKDAY,
        tz=reminder_settings.DIGEST_TIMEZONE,
    )


def presence_sweep_schedule() -> IntervalSchedule:
    return IntervalSchedule(reminder_settings.PRESENCE_SWEEP_SECONDS)
