import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from sqlalchemy.orm import Session
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from taskflow.models.user import User
from taskflow.models.task import Task, LifecycleStatus
from taskflow.models.notification import (
    NotificationRecord,
    NotificationPreference,
    default_channel_matrix,
)
from taskflow.utils.timezone import to_utc_aware, utc_now
from .errors import ConcurrencyConflict, StorageError

logger = logging.getLogger(__name__)

_OPEN = Task.lifecycle_status != LifecycleStatus.DONE.value

_NOTIFICATION_FIELDS = ("user_id", "type", "message", "related_task_id", "related_project_id")
_PREFERENCE_FIELDS = ("email_enabled", "webhook_enabled", "webhook_url", "channels")


def _normalize(value: Any) -> Any:
    # Timestamps are always stored as UTC
    if isinstance(value, datetime):
        return to_utc_aware(value)
    return value


# --- Tasks ---

def find_due_tasks(db: Session, limit: Optional[int] = None) -> List[Task]:
    """Open tasks that carry a due date, soonest first."""
    stmt = (
        select(Task)
        .where(_OPEN)
        .where(Task.due_at.isnot(None))
        .order_by(Task.due_at.asc())
    )
    if limit:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars())


def get_task(db: Session, task_id: str) -> Optional[Task]:
    return db.get(Task, task_id)


def reload_task(db: Session, task_id: str) -> Optional[Task]:
    return db.get(Task, task_id, populate_existing=True)


def update_task(db: Session, task_id: str, fields: Mapping[str, Any]) -> Optional[Task]:
    """Unconditional edit. Still bumps ``version`` so in-flight reminder claims
    made against the previous row conflict and re-check eligibility."""
    task = db.get(Task, task_id)
    if not task:
        return None
    for key, value in fields.items():
        if key == "version":
            continue
        setattr(task, key, _normalize(value))
    task.version = (task.version or 0) + 1
    db.commit()
    db.refresh(task)
    return task


def update_task_versioned(db: Session, task: Task, fields: Mapping[str, Any]) -> Task:
    """Compare-and-set write keyed on ``task.version``.

    Raises ConcurrencyConflict when another writer bumped the version since
    ``task`` was read; nothing is written in that case.
    """
    expected = task.version
    values = {key: _normalize(value) for key, value in fields.items()}
    values["version"] = expected + 1
    values["updated_at"] = utc_now()
    result = db.execute(
        update(Task)
        .where(Task.id == task.id, Task.version == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ConcurrencyConflict(task.id, expected)
    db.commit()
    db.refresh(task)
    return task


def claim_reminder_kind(db: Session, task: Task, kind: str, now: datetime) -> Task:
    """Append ``kind`` to the task's fired set; the set only ever grows here."""
    fired = set(task.fired_reminder_kinds or ())
    fired.add(kind)
    return update_task_versioned(
        db,
        task,
        {"fired_reminder_kinds": sorted(fired), "last_reminder_at": now},
    )


def reset_fired_reminders(db: Session, task: Task) -> Task:
    return update_task_versioned(db, task, {"fired_reminder_kinds": []})


def set_due_date_status(db: Session, task: Task, status: str) -> Task:
    # Derived column: written without a version bump so it never races reminder claims
    db.execute(
        update(Task)
        .where(Task.id == task.id)
        .values(due_date_status=status)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(task)
    return task


def count_tasks_by_status(db: Session, user_id: str) -> Dict[str, int]:
    rows = db.execute(
        select(Task.due_date_status, func.count(Task.id))
        .where(Task.assignee_id == user_id)
        .where(_OPEN)
        .group_by(Task.due_date_status)
    ).all()
    return {status: int(count) for status, count in rows}


def count_open_tasks_due_between(db: Session, user_id: str, start: datetime, end: datetime) -> int:
    """Open tasks assigned to ``user_id`` with start <= due_at < end."""
    return int(
        db.execute(
            select(func.count(Task.id))
            .where(Task.assignee_id == user_id)
            .where(_OPEN)
            .where(Task.due_at >= to_utc_aware(start))
            .where(Task.due_at < to_utc_aware(end))
        ).scalar()
        or 0
    )


def count_overdue_tasks(db: Session, user_id: str, before: datetime) -> int:
    return int(
        db.execute(
            select(func.count(Task.id))
            .where(Task.assignee_id == user_id)
            .where(_OPEN)
            .where(Task.due_at < to_utc_aware(before))
        ).scalar()
        or 0
    )


def count_completed_between(db: Session, user_id: str, start: datetime, end: datetime) -> int:
    return int(
        db.execute(
            select(func.count(Task.id))
            .where(Task.assignee_id == user_id)
            .where(Task.lifecycle_status == LifecycleStatus.DONE.value)
            .where(Task.updated_at >= to_utc_aware(start))
            .where(Task.updated_at < to_utc_aware(end))
        ).scalar()
        or 0
    )


# --- Users ---

def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.get(User, user_id)


def list_users(db: Session) -> List[User]:
    return list(db.execute(select(User).order_by(User.created_at.asc())).scalars())


# --- Preferences ---

def get_preferences(db: Session, user_id: str) -> Optional[NotificationPreference]:
    return (
        db.query(NotificationPreference)
        .filter(NotificationPreference.user_id == user_id)
        .first()
    )


def get_or_create_preferences(db: Session, user_id: str) -> NotificationPreference:
    """Upsert-by-key: concurrent first reads for one user end with a single row."""
    existing = get_preferences(db, user_id)
    if existing:
        return existing
    prefs = NotificationPreference(user_id=user_id, channels=default_channel_matrix())
    db.add(prefs)
    try:
        db.commit()
    except IntegrityError:
        # Another writer created the row first; use theirs
        db.rollback()
        existing = get_preferences(db, user_id)
        if existing is None:
            raise StorageError(f"Could not create notification preferences for user {user_id}")
        return existing
    db.refresh(prefs)
    return prefs


def update_preferences(db: Session, user_id: str, fields: Mapping[str, Any]) -> NotificationPreference:
    prefs = get_or_create_preferences(db, user_id)
    for key in _PREFERENCE_FIELDS:
        if key not in fields:
            continue
        if key == "channels":
            merged = {channel: dict(events) for channel, events in (prefs.channels or {}).items()}
            for channel, events in (fields["channels"] or {}).items():
                merged.setdefault(channel, {}).update(events)
            prefs.channels = merged
        else:
            setattr(prefs, key, fields[key])
    db.add(prefs)
    db.commit()
    db.refresh(prefs)
    return prefs


# --- Notification records ---

def create_notification_record(db: Session, fields: Mapping[str, Any]) -> NotificationRecord:
    record = NotificationRecord(**{key: fields.get(key) for key in _NOTIFICATION_FIELDS})
    db.add(record)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Could not persist notification for user {fields.get('user_id')}: {e}") from e
    db.refresh(record)
    return record


def list_notifications(db: Session, user_id: str, limit: int = 50) -> List[NotificationRecord]:
    stmt = (
        select(NotificationRecord)
        .where(NotificationRecord.user_id == user_id)
        .order_by(NotificationRecord.created_at.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def count_unread(db: Session, user_id: str) -> int:
    return int(
        db.execute(
            select(func.count(NotificationRecord.id))
            .where(NotificationRecord.user_id == user_id)
            .where(NotificationRecord.read.is_(False))
        ).scalar()
        or 0
    )


def mark_read(db: Session, notification_id: str) -> bool:
    result = db.execute(
        update(NotificationRecord)
        .where(NotificationRecord.id == notification_id)
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount > 0


def mark_all_read(db: Session, user_id: str) -> int:
    result = db.execute(
        update(NotificationRecord)
        .where(NotificationRecord.user_id == user_id)
        .where(NotificationRecord.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount
