"""
Reminder eligibility.

A reminder kind is eligible when the task is open and dated, the kind has not
fired yet, the task is not snoozed and the kind's time window contains the
due date. The windows are deliberately wider than the polling interval
(±1h around 24h, ±15m around 1h) so a 15 minute scan cannot step over them.

Eligibility is a pure predicate; claiming a kind is the scheduler's job.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Tuple

from taskflow.reminders.status import is_done
from taskflow.utils.timezone import ensure_aware, same_calendar_day


class ReminderKind(str, Enum):
    OVERDUE = "overdue"
    DUE_IN_24H = "due_in_24h"
    DUE_IN_1H = "due_in_1h"
    DUE_TODAY = "due_today"


# Evaluation order used by the scheduler
REMINDER_KINDS: Tuple[ReminderKind, ...] = (
    ReminderKind.OVERDUE,
    ReminderKind.DUE_IN_24H,
    ReminderKind.DUE_IN_1H,
    ReminderKind.DUE_TODAY,
)

# Inclusive [now + lower, now + upper] windows for the lead-time kinds
LEAD_WINDOWS: Dict[ReminderKind, Tuple[timedelta, timedelta]] = {
    ReminderKind.DUE_IN_24H: (timedelta(hours=23), timedelta(hours=25)),
    ReminderKind.DUE_IN_1H: (timedelta(minutes=45), timedelta(minutes=75)),
}

_MESSAGES = {
    ReminderKind.OVERDUE: 'Task "{title}" is overdue',
    ReminderKind.DUE_IN_24H: 'Task "{title}" is due in 24 hours',
    ReminderKind.DUE_IN_1H: 'Task "{title}" is due in 1 hour',
    ReminderKind.DUE_TODAY: 'Task "{title}" is due today',
}


def in_window(kind: ReminderKind, due_at: datetime, now: datetime) -> bool:
    due = ensure_aware(due_at)
    now = ensure_aware(now)
    if kind == ReminderKind.OVERDUE:
        return due < now
    if kind == ReminderKind.DUE_TODAY:
        return same_calendar_day(due, now)
    lower, upper = LEAD_WINDOWS[kind]
    return now + lower <= due <= now + upper


def is_snoozed(task: Any, now: datetime) -> bool:
    snoozed_until = getattr(task, "snoozed_until", None)
    if snoozed_until is None:
        return False
    return ensure_aware(now) < ensure_aware(snoozed_until)


def is_reminder_eligible(task: Any, kind: ReminderKind, now: datetime) -> bool:
    if task.due_at is None or is_done(task.lifecycle_status):
        return False
    fired = task.fired_reminder_kinds or ()
    if kind.value in fired:
        return False
    if is_snoozed(task, now):
        return False
    return in_window(kind, task.due_at, now)


def eligible_kinds(task: Any, now: datetime) -> List[ReminderKind]:
    return [kind for kind in REMINDER_KINDS if is_reminder_eligible(task, kind, now)]


def reminder_message(kind: ReminderKind, title: str) -> str:
    return _MESSAGES[kind].format(title=title)
