"""
Due-date status classification.

``classify_due_date`` is a pure, total function of (due_at, lifecycle_status,
now): it never reads the clock, so the scheduler, the mutation hooks and the
tests all get identical answers for identical inputs.
"""
from datetime import datetime, timedelta
from typing import Any, Optional

from taskflow.models.task import DueDateStatus, LifecycleStatus
from taskflow.utils.timezone import ensure_aware, same_calendar_day

DUE_SOON_HORIZON = timedelta(hours=72)


def is_done(lifecycle_status: Any) -> bool:
    value = getattr(lifecycle_status, "value", lifecycle_status)
    return value == LifecycleStatus.DONE.value


def classify_due_date(
    due_at: Optional[datetime],
    lifecycle_status: Any,
    now: datetime,
) -> DueDateStatus:
    """Map a task's due date and lifecycle state onto the due-date status lattice.

    Rules are evaluated in order and the first match wins:
      1. done                                 -> completed
      2. no due date                          -> none
      3. due_at < now                         -> overdue
      4. due_at on the calendar day of now    -> due_today
      5. due_at < now + 72h                   -> due_soon
      6. otherwise                            -> on_track

    The calendar day is that of ``now`` in its own time zone; naive datetimes
    are treated as UTC.
    """
    if is_done(lifecycle_status):
        return DueDateStatus.COMPLETED
    if due_at is None:
        return DueDateStatus.NONE

    now = ensure_aware(now)
    due = ensure_aware(due_at)

    if due < now:
        return DueDateStatus.OVERDUE
    if same_calendar_day(due, now):
        return DueDateStatus.DUE_TODAY
    if due < now + DUE_SOON_HORIZON:
        return DueDateStatus.DUE_SOON
    return DueDateStatus.ON_TRACK


def classify_task(task: Any, now: datetime) -> DueDateStatus:
    return classify_due_date(task.due_at, task.lifecycle_status, now)
