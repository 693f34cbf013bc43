"""
Task model as seen by the reminder subsystem.

Tasks are owned by the wider application; this service reads them and writes
only the reminder bookkeeping columns (due_date_status, fired_reminder_kinds,
last_reminder_at, version).
"""
import uuid
from datetime import datetime, timezone as dt_timezone
from enum import Enum
from sqlalchemy import Column, String, DateTime, Boolean, Integer, JSON, ForeignKey, Index

from taskflow.db.base import Base


class LifecycleStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"


class DueDateStatus(str, Enum):
    NONE = "none"
    OVERDUE = "overdue"
    DUE_TODAY = "due_today"
    DUE_SOON = "due_soon"
    ON_TRACK = "on_track"
    COMPLETED = "completed"


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    project_id = Column(String, nullable=False, index=True)
    assignee_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    lifecycle_status = Column(String, nullable=False, default=LifecycleStatus.TODO.value)

    due_at = Column(DateTime(timezone=True), nullable=True)
    has_time_component = Column(Boolean, nullable=False, default=False)
    due_date_status = Column(String, nullable=False, default=DueDateStatus.NONE.value)

    # Append-only set of reminder kinds already triggered (stored as a JSON list)
    fired_reminder_kinds = Column(JSON, nullable=False, default=list)
    snoozed_until = Column(DateTime(timezone=True), nullable=True)
    last_reminder_at = Column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency counter for reminder bookkeeping writes
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_tasks_status_due", "lifecycle_status", "due_at"),
        Index("ix_tasks_assignee_due_status", "assignee_id", "due_date_status"),
    )

    @property
    def fired_kinds(self) -> frozenset:
        return frozenset(self.fired_reminder_kinds or ())

    def snapshot(self) -> dict:
        """Full serialisable view used for task:created / task:updated events."""
        return {
            "id": self.id,
            "title": self.title,
            "projectId": self.project_id,
            "assigneeId": self.assignee_id,
            "status": self.lifecycle_status,
            "dueAt": self.due_at.isoformat() if self.due_at else None,
            "hasTimeComponent": bool(self.has_time_component),
            "dueDateStatus": self.due_date_status,
            "snoozedUntil": self.snoozed_until.isoformat() if self.snoozed_until else None,
            "remindersSent": sorted(self.fired_kinds),
            "lastReminderAt": self.last_reminder_at.isoformat() if self.last_reminder_at else None,
        }
