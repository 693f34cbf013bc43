"""
Periodic due-date scan.

Each tick walks the open, dated tasks, claims every eligible reminder kind
with a versioned write and only then dispatches it, so a kind fires at most
once per task even when two scans overlap (or two processes run the scan).
A crash between claim and dispatch loses that reminder; it is never sent
twice.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from taskflow.db.session import SessionLocal
from taskflow.models.task import Task
from taskflow.realtime.events import user_topic
from taskflow.utils.timezone import utc_now
from . import repository
from .config import reminder_settings
from .dispatcher import NotificationEvent
from .errors import ConcurrencyConflict
from .metrics import (
    due_status_updates_total,
    reminder_conflicts_total,
    reminders_fired_total,
    scheduler_tasks_scanned_total,
    scheduler_tick_failures_total,
    scheduler_ticks_total,
)
from .policy import REMINDER_KINDS, ReminderKind, is_reminder_eligible, reminder_message
from .service import build_due_date_summary
from .status import classify_task

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    scanned: int = 0
    fired: int = 0
    status_updates: int = 0
    conflicts: int = 0
    failures: int = 0
    summaries: int = 0
    skipped: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


class ReminderScheduler:
    def __init__(
        self,
        dispatcher: Any,
        router: Any,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = utc_now,
        batch_size: Optional[int] = None,
    ):
        self.dispatcher = dispatcher
        self.router = router
        self._session_factory = session_factory
        self._clock = clock
        self.batch_size = batch_size if batch_size is not None else reminder_settings.SCHEDULER_BATCH_SIZE
        self._tick_lock = asyncio.Lock()

    async def run_tick(self, now: Optional[datetime] = None) -> TickResult:
        """Run one scan. Never raises; failures are logged and counted."""
        if self._tick_lock.locked():
            logger.info("⚠️ [Scheduler] Previous scan still running - skipping this tick")
            return TickResult(skipped=True)
        async with self._tick_lock:
            now = now or self._clock()
            result = TickResult()
            scheduler_ticks_total.inc()
            try:
                await self._scan(now, result)
            except Exception:
                result.failures += 1
                scheduler_tick_failures_total.inc()
                logger.exception("❌ [Scheduler] Scan failed")
            try:
                result.summaries = await self._publish_summaries()
            except Exception:
                logger.exception("❌ [Scheduler] Summary broadcast failed")
            logger.info(
                "📊 [Scheduler] Tick done: scanned=%d fired=%d status_updates=%d conflicts=%d failures=%d",
                result.scanned, result.fired, result.status_updates, result.conflicts, result.failures,
            )
            return result

    async def _scan(self, now: datetime, result: TickResult) -> None:
        db = self._session_factory()
        try:
            tasks = repository.find_due_tasks(db, limit=self.batch_size)
            for task in tasks:
                result.scanned += 1
                scheduler_tasks_scanned_total.inc()
                try:
                    await self._process_task(db, task, now, result)
                except Exception as e:
                    db.rollback()
                    result.failures += 1
                    scheduler_tick_failures_total.inc()
                    logger.error("❌ [Scheduler] Task %s failed: %s", getattr(task, "id", "?"), e)
        finally:
            db.close()

    async def _process_task(self, db: Session, task: Task, now: datetime, result: TickResult) -> None:
        for kind in REMINDER_KINDS:
            if not is_reminder_eligible(task, kind, now):
                continue
            task, claimed = self._claim(db, task, kind, now, result)
            if not claimed:
                continue
            result.fired += 1
            reminders_fired_total.labels(kind=kind.value).inc()
            await self._fire(task, kind)

        status = classify_task(task, now)
        if task.due_date_status != status.value:
            repository.set_due_date_status(db, task, status.value)
            result.status_updates += 1
            due_status_updates_total.inc()

    def _claim(self, db: Session, task: Task, kind: ReminderKind, now: datetime, result: TickResult) -> Tuple[Task, bool]:
        """Returns the freshest copy of the task and whether this tick owns ``kind``."""
        for attempt in range(2):
            try:
                return repository.claim_reminder_kind(db, task, kind.value, now), True
            except ConcurrencyConflict:
                result.conflicts += 1
                reminder_conflicts_total.inc()
                if attempt:
                    logger.warning("⚠️ [Scheduler] Skipping %s for task %s after repeated conflicts", kind.value, task.id)
                    return task, False
                fresh = repository.reload_task(db, task.id)
                if fresh is None:
                    raise LookupError(f"Task {task.id} disappeared during scan")
                task = fresh
                if not is_reminder_eligible(task, kind, now):
                    # Someone else fired it, or the task moved on
                    return task, False
        return task, False

    async def _fire(self, task: Task, kind: ReminderKind) -> None:
        if not task.assignee_id:
            logger.debug("[Scheduler] Task %s has no assignee; %s claimed without notification", task.id, kind.value)
            return
        await self.dispatcher.dispatch(
            NotificationEvent(
                user_id=task.assignee_id,
                type=kind.value,
                message=reminder_message(kind, task.title),
                related_task_id=task.id,
                related_project_id=task.project_id,
            )
        )

    async def _publish_summaries(self) -> int:
        user_ids: List[str] = self.router.topic_ids("user")
        if not user_ids:
            return 0
        published = 0
        db = self._session_factory()
        try:
            for user_id in user_ids:
                summary = build_due_date_summary(db, user_id)
                await self.router.publish(user_topic(user_id), "dueDateSummary:updated", summary.to_payload())
                published += 1
        finally:
            db.close()
        return published
