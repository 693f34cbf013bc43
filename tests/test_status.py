from datetime import datetime, timedelta, timezone

import pytest

from taskflow.models.task import DueDateStatus, LifecycleStatus
from taskflow.reminders.status import classify_due_date

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


def test_done_wins_over_everything():
    assert classify_due_date(NOW - timedelta(days=3), LifecycleStatus.DONE, NOW) == DueDateStatus.COMPLETED
    assert classify_due_date(None, "done", NOW) == DueDateStatus.COMPLETED


def test_no_due_date():
    assert classify_due_date(None, LifecycleStatus.TODO, NOW) == DueDateStatus.NONE


def test_past_due_is_overdue_even_on_same_day():
    assert classify_due_date(NOW - timedelta(minutes=1), "todo", NOW) == DueDateStatus.OVERDUE
    assert classify_due_date(NOW.replace(hour=0), "in_progress", NOW) == DueDateStatus.OVERDUE


@pytest.mark.parametrize("due_at", [
    NOW,
    NOW + timedelta(hours=14, minutes=59),
])
def test_due_later_today(due_at):
    assert classify_due_date(due_at, "todo", NOW) == DueDateStatus.DUE_TODAY


def test_due_soon_and_on_track_boundary():
    assert classify_due_date(NOW + timedelta(hours=15), "todo", NOW) == DueDateStatus.DUE_SOON
    assert classify_due_date(NOW + timedelta(hours=71, minutes=59), "todo", NOW) == DueDateStatus.DUE_SOON
    assert classify_due_date(NOW + timedelta(hours=72), "todo", NOW) == DueDateStatus.ON_TRACK


def test_naive_datetimes_are_utc():
    naive_now = NOW.replace(tzinfo=None)
    assert classify_due_date(naive_now + timedelta(hours=2), "todo", NOW) == DueDateStatus.DUE_TODAY
    assert classify_due_date(NOW + timedelta(hours=2), "todo", naive_now) == DueDateStatus.DUE_TODAY


def test_calendar_day_follows_now_timezone():
    plus_ten = timezone(timedelta(hours=10))
    now = datetime(2026, 3, 10, 20, 0, tzinfo=plus_ten)
    # 2026-03-11 01:00 at +10 is tomorrow there, though still 2026-03-10 in UTC
    due = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
    assert classify_due_date(due, "todo", now) == DueDateStatus.DUE_SOON
