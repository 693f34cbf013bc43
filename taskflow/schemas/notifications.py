from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskflow.models.notification import Channel, PreferenceCategory


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    type: str
    message: str
    related_task_id: Optional[str] = None
    related_project_id: Optional[str] = None
    read: bool
    created_at: datetime


class NotificationList(BaseModel):
    notifications: List[NotificationRead]
    unread_count: int


class NotificationAck(BaseModel):
    """Result of a mark-read call"""
    success: bool = True
    updated: int = 0


class PreferenceRead(BaseModel):
    user_id: str
    email_enabled: bool
    webhook_enabled: bool
    webhook_url: Optional[str] = None
    channels: Dict[str, Dict[str, bool]]


class PreferenceUpdate(BaseModel):
    """Partial update; only fields present in the request body are written."""
    email_enabled: Optional[bool] = None
    webhook_enabled: Optional[bool] = None
    webhook_url: Optional[str] = Field(default=None, max_length=2048)
    channels: Optional[Dict[str, Dict[str, bool]]] = None

    @field_validator("channels")
    @classmethod
    def validate_channels(cls, v):
        if v is None:
            return v
        known_channels = {c.value for c in Channel}
        known_categories = {c.value for c in PreferenceCategory}
        for channel, events in v.items():
            if channel not in known_channels:
                raise ValueError(f"Unknown channel: {channel}")
            unknown = set(events) - known_categories
            if unknown:
                raise ValueError(f"Unknown event types for {channel}: {', '.join(sorted(unknown))}")
        return v

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, v):
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return v


class DueDateSummary(BaseModel):
    """Open tasks assigned to a user, counted by cached due-date status."""
    model_config = ConfigDict(populate_by_name=True)

    overdue: int = 0
    due_today: int = Field(default=0, alias="dueToday")
    due_soon: int = Field(default=0, alias="dueSoon")
    on_track: int = Field(default=0, alias="onTrack")

    def to_payload(self) -> Dict[str, int]:
        return self.model_dump(by_alias=True)
