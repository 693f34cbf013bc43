"""
Notification fan-out: durable in-app record, live event, external channels.

The in-app record is written first and is the source of truth. Live delivery
is a single best-effort attempt to whoever is connected; external channel
sends are handed to the channel pool and never block the caller.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from taskflow.core.config import settings
from taskflow.db.session import SessionLocal
from taskflow.models.notification import Channel, NotificationRecord, PreferenceCategory
from taskflow.realtime.events import user_topic
from . import repository
from .channels import ChannelMessage
from .errors import StorageError
from .metrics import digests_sent_total, notifications_created_total, notifications_lost_total

logger = logging.getLogger(__name__)

# Event type -> preference category governing its external channels
PREFERENCE_CATEGORY_BY_TYPE: Dict[str, PreferenceCategory] = {
    "overdue": PreferenceCategory.OVERDUE,
    "due_in_24h": PreferenceCategory.DUE_SOON,
    "due_in_1h": PreferenceCategory.DUE_SOON,
    "due_today": PreferenceCategory.DUE_SOON,
    "task_assigned": PreferenceCategory.ASSIGNED,
    "comment_mention": PreferenceCategory.MENTION,
    "digest": PreferenceCategory.DIGEST,
}

_SUBJECTS = {
    "overdue": "Task overdue",
    "due_in_24h": "Task due in 24 hours",
    "due_in_1h": "Task due in 1 hour",
    "due_today": "Task due today",
    "task_assigned": "New task assignment",
    "comment_mention": "You were mentioned",
}


@dataclass
class NotificationEvent:
    user_id: str
    type: str
    message: str
    related_task_id: Optional[str] = None
    related_project_id: Optional[str] = None

    def to_record_fields(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "type": self.type,
            "message": self.message,
            "related_task_id": self.related_task_id,
            "related_project_id": self.related_project_id,
        }


def task_link(task_id: Optional[str]) -> str:
    base = settings.FRONTEND_URL.rstrip("/")
    if task_id:
        return f"{base}/tasks/{task_id}"
    return f"{base}/dashboard"


class NotificationDispatcher:
    def __init__(
        self,
        router: Any,
        preferences: Any,
        channel_pool: Any,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.router = router
        self.preferences = preferences
        self.channel_pool = channel_pool
        self._session_factory = session_factory

    async def dispatch(self, event: NotificationEvent) -> Optional[NotificationRecord]:
        """Persist, publish live, then submit external channel sends.

        Returns the stored record, or None when persistence failed (the event
        is then dropped: no live publish and no channel sends).
        """
        to_email = to_name = None
        db = self._session_factory()
        try:
            record = repository.create_notification_record(db, event.to_record_fields())
            try:
                user = repository.get_user(db, event.user_id)
            except SQLAlchemyError as e:
                logger.warning("⚠️ [Dispatcher] Could not load user %s: %s", event.user_id, e)
                user = None
            if user is not None:
                to_email, to_name = user.email, user.name
        except StorageError as e:
            notifications_lost_total.inc()
            logger.error("❌ [Dispatcher] Lost %s notification for user %s: %s", event.type, event.user_id, e)
            return None
        finally:
            db.close()
        notifications_created_total.inc()

        try:
            await self.router.publish(
                user_topic(event.user_id),
                "notification:new",
                {"notification": record.to_payload()},
            )
        except Exception as e:
            logger.warning("⚠️ [Dispatcher] Live publish failed for user %s: %s", event.user_id, e)

        category = PREFERENCE_CATEGORY_BY_TYPE.get(event.type)
        if category is None:
            logger.debug("[Dispatcher] No channel category for event type %s", event.type)
            return record

        messages = self._channel_messages(
            event.user_id,
            category,
            event_type=event.type,
            subject=_SUBJECTS.get(event.type, "TaskFlow notification"),
            text=event.message,
            link=task_link(event.related_task_id),
            to_email=to_email,
            to_name=to_name,
            notification_id=record.id,
        )
        for message in messages:
            self._submit(message)
        return record

    async def send_digest(self, user: Any, subject: str, text: str, period: str = "daily") -> int:
        """Send a digest to the user's external channels only; returns the submit count."""
        messages = self._channel_messages(
            user.id,
            PreferenceCategory.DIGEST,
            event_type="digest",
            subject=subject,
            text=text,
            link=task_link(None),
            to_email=user.email,
            to_name=user.name,
        )
        submitted = sum(1 for message in messages if self._submit(message))
        if submitted:
            digests_sent_total.labels(period=period).inc()
        return submitted

    def _channel_messages(self, user_id: str, category: PreferenceCategory, **fields) -> List[ChannelMessage]:
        try:
            matrix = self.preferences.resolve(user_id)
        except Exception as e:
            logger.error("❌ [Dispatcher] Could not resolve preferences for user %s: %s", user_id, e)
            return []
        messages = []
        for channel in matrix.enabled_channels(category):
            messages.append(
                ChannelMessage(
                    channel=channel.value,
                    user_id=user_id,
                    webhook_url=matrix.webhook_url if channel == Channel.WEBHOOK else None,
                    **fields,
                )
            )
        return messages

    def _submit(self, message: ChannelMessage) -> bool:
        try:
            return self.channel_pool.submit(message) is not None
        except Exception as e:
            logger.error("❌ [Dispatcher] Could not submit %s send for user %s: %s", message.channel, message.user_id, e)
            return False
