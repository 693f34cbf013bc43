import uuid
from datetime import datetime, timezone as dt_timezone
from enum import Enum
from typing import Dict
from sqlalchemy import Column, String, DateTime, Boolean, JSON, ForeignKey, Index

from taskflow.db.base import Base


class Channel(str, Enum):
    """External delivery channels. In-app delivery is implicit and always on."""
    EMAIL = "email"
    WEBHOOK = "webhook"


class PreferenceCategory(str, Enum):
    ASSIGNED = "assigned"
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"
    MENTION = "mention"
    DIGEST = "digest"


_DEFAULT_OPT_IN = {
    PreferenceCategory.ASSIGNED: True,
    PreferenceCategory.DUE_SOON: True,
    PreferenceCategory.OVERDUE: True,
    PreferenceCategory.MENTION: True,
    PreferenceCategory.DIGEST: False,
}


def default_channel_matrix() -> Dict[str, Dict[str, bool]]:
    return {
        channel.value: {category.value: enabled for category, enabled in _DEFAULT_OPT_IN.items()}
        for channel in Channel
    }


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


class NotificationRecord(Base):
    """Durable in-app notification; only `read` is ever mutated."""
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String, nullable=False)
    message = Column(String, nullable=False)
    related_task_id = Column(String, nullable=True)
    related_project_id = Column(String, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_user_read", "user_id", "read"),
    )

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "message": self.message,
            "taskId": self.related_task_id,
            "projectId": self.related_project_id,
            "read": bool(self.read),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class NotificationPreference(Base):
    """Per-user opt-in matrix, created lazily with defaults on first read."""
    __tablename__ = "notification_preferences"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    email_enabled = Column(Boolean, nullable=False, default=True)
    webhook_enabled = Column(Boolean, nullable=False, default=True)
    webhook_url = Column(String, nullable=True)
    channels = Column(JSON, nullable=False, default=default_channel_matrix)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
