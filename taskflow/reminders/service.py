"""
Hooks run after a task is created or mutated elsewhere in the application,
plus the per-user due-date summary they keep current.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from taskflow.db.session import SessionLocal
from taskflow.models.task import DueDateStatus, Task
from taskflow.realtime.events import project_topic, user_topic
from taskflow.schemas.notifications import DueDateSummary
from taskflow.utils.timezone import utc_now
from . import repository
from .dispatcher import NotificationEvent
from .errors import ConcurrencyConflict
from .metrics import due_status_updates_total
from .status import classify_task

logger = logging.getLogger(__name__)


class TaskAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    MOVED = "moved"
    DUE_DATE_CHANGED = "due_date_changed"


_PROJECT_EVENTS = {
    TaskAction.CREATED: "task:created",
    TaskAction.UPDATED: "task:updated",
    TaskAction.DELETED: "task:deleted",
    TaskAction.MOVED: "task:moved",
    TaskAction.DUE_DATE_CHANGED: "task:dueDateUpdated",
}


@dataclass
class TaskChange:
    action: TaskAction
    due_at_changed: bool = False
    assignee_changed: bool = False
    previous_assignee_id: Optional[str] = None

    def __post_init__(self):
        self.action = TaskAction(self.action)
        if self.action == TaskAction.DUE_DATE_CHANGED:
            self.due_at_changed = True


def build_due_date_summary(db: Session, user_id: str) -> DueDateSummary:
    counts = repository.count_tasks_by_status(db, user_id)
    return DueDateSummary(
        overdue=counts.get(DueDateStatus.OVERDUE.value, 0),
        due_today=counts.get(DueDateStatus.DUE_TODAY.value, 0),
        due_soon=counts.get(DueDateStatus.DUE_SOON.value, 0),
        on_track=counts.get(DueDateStatus.ON_TRACK.value, 0),
    )


class TaskEventService:
    def __init__(
        self,
        dispatcher: Any,
        router: Any,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.dispatcher = dispatcher
        self.router = router
        self._session_factory = session_factory
        self._clock = clock

    async def on_task_mutated(self, task: Task, change: TaskChange) -> Dict[str, Any]:
        """Bring reminder bookkeeping in line with a mutated task and notify observers.

        ``task`` is the task as the caller last saw it; for deletions only its
        id, project and assignee are used. Returns the task snapshot published.
        """
        snapshot = task.snapshot()
        if change.action != TaskAction.DELETED:
            snapshot = self._refresh_bookkeeping(task.id, change) or snapshot

        assignee_id = snapshot.get("assigneeId")
        if change.assignee_changed and assignee_id and change.action != TaskAction.DELETED:
            await self.dispatcher.dispatch(
                NotificationEvent(
                    user_id=assignee_id,
                    type="task_assigned",
                    message=f'You were assigned "{snapshot["title"]}"',
                    related_task_id=snapshot["id"],
                    related_project_id=snapshot["projectId"],
                )
            )

        await self._publish_project_event(snapshot, change)

        affected = {assignee_id, change.previous_assignee_id} - {None}
        for user_id in affected:
            await self.publish_summary(user_id)
        return snapshot

    def _refresh_bookkeeping(self, task_id: str, change: TaskChange) -> Optional[Dict[str, Any]]:
        now = self._clock()
        db = self._session_factory()
        try:
            current = repository.get_task(db, task_id)
            if current is None:
                logger.warning("[TaskEvents] Task %s no longer exists", task_id)
                return None
            if change.due_at_changed and current.fired_reminder_kinds:
                current = self._reset_reminders(db, current)
            status = classify_task(current, now)
            if current.due_date_status != status.value:
                repository.set_due_date_status(db, current, status.value)
                due_status_updates_total.inc()
            return current.snapshot()
        finally:
            db.close()

    def _reset_reminders(self, db: Session, task: Task) -> Task:
        # New due date: every reminder kind may fire again
        for attempt in range(2):
            try:
                return repository.reset_fired_reminders(db, task)
            except ConcurrencyConflict:
                if attempt:
                    logger.warning("⚠️ [TaskEvents] Could not reset reminders for task %s after retry", task.id)
                    return repository.reload_task(db, task.id) or task
                task = repository.reload_task(db, task.id) or task
        return task

    async def _publish_project_event(self, snapshot: Dict[str, Any], change: TaskChange) -> None:
        topic = project_topic(snapshot["projectId"])
        event = _PROJECT_EVENTS[change.action]
        if change.action in (TaskAction.CREATED, TaskAction.UPDATED):
            payload = {"task": snapshot}
        elif change.action == TaskAction.DELETED:
            payload = {"taskId": snapshot["id"]}
        elif change.action == TaskAction.MOVED:
            payload = {"taskId": snapshot["id"], "status": snapshot["status"]}
        else:
            payload = {
                "taskId": snapshot["id"],
                "dueAt": snapshot["dueAt"],
                "dueDateStatus": snapshot["dueDateStatus"],
            }
        try:
            await self.router.publish(topic, event, payload)
            if change.due_at_changed and change.action != TaskAction.DUE_DATE_CHANGED:
                await self.router.publish(
                    topic,
                    _PROJECT_EVENTS[TaskAction.DUE_DATE_CHANGED],
                    {"taskId": snapshot["id"], "dueAt": snapshot["dueAt"], "dueDateStatus": snapshot["dueDateStatus"]},
                )
        except Exception as e:
            logger.warning("⚠️ [TaskEvents] Could not publish %s for task %s: %s", event, snapshot["id"], e)

    def get_due_date_summary(self, user_id: str) -> DueDateSummary:
        db = self._session_factory()
        try:
            return build_due_date_summary(db, user_id)
        finally:
            db.close()

    async def publish_summary(self, user_id: str) -> int:
        topic = user_topic(user_id)
        if not self.router.has_subscribers(topic):
            return 0
        try:
            summary = self.get_due_date_summary(user_id)
            return await self.router.publish(topic, "dueDateSummary:updated", summary.to_payload())
        except Exception as e:
            logger.warning("⚠️ [TaskEvents] Could not publish due-date summary for user %s: %s", user_id, e)
            return 0
