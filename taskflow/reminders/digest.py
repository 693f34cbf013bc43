"""
Daily and weekly digest summaries sent to users who opted in.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

from taskflow.db.session import SessionLocal
from taskflow.models.notification import PreferenceCategory
from taskflow.utils.timezone import day_bounds, week_bounds
from . import repository

logger = logging.getLogger(__name__)


class DigestService:
    def __init__(self, dispatcher: Any, preferences: Any, session_factory: Callable[[], Session] = SessionLocal):
        self.dispatcher = dispatcher
        self.preferences = preferences
        self._session_factory = session_factory

    def _wants_digest(self, user_id: str) -> bool:
        return bool(self.preferences.resolve(user_id).enabled_channels(PreferenceCategory.DIGEST))

    async def run_daily(self, now: datetime) -> Dict[str, int]:
        """Overdue, due-today and rest-of-week counts for each opted-in user.

        Users with nothing overdue and nothing due today are skipped.
        """
        day_start, next_day = day_bounds(now)
        _, week_end = week_bounds(now)
        sent = skipped = failed = 0
        db = self._session_factory()
        try:
            users = repository.list_users(db)
            for user in users:
                try:
                    if not self._wants_digest(user.id):
                        skipped += 1
                        continue
                    overdue = repository.count_overdue_tasks(db, user.id, day_start)
                    due_today = repository.count_open_tasks_due_between(db, user.id, day_start, next_day)
                    if overdue + due_today == 0:
                        skipped += 1
                        continue
                    this_week = repository.count_open_tasks_due_between(db, user.id, next_day, week_end)
                    text = "\n".join([
                        f"Overdue: {overdue}",
                        f"Due today: {due_today}",
                        f"Due later this week: {this_week}",
                    ])
                    subject = f"Your daily digest for {day_start.strftime('%b %d')}"
                    if await self.dispatcher.send_digest(user, subject, text, period="daily"):
                        sent += 1
                except Exception as e:
                    db.rollback()
                    failed += 1
                    logger.error("❌ [DailyDigest] Failed for user %s: %s", user.id, e)
        finally:
            db.close()
        logger.info("[DailyDigest] Done: sent=%d skipped=%d failed=%d", sent, skipped, failed)
        return {"sent": sent, "skipped": skipped, "failed": failed}

    async def run_weekly(self, now: datetime) -> Dict[str, int]:
        """Tasks completed last week and currently overdue, per opted-in user."""
        this_week_start, _ = week_bounds(now)
        last_week_start = this_week_start - timedelta(days=7)
        sent = skipped = failed = 0
        db = self._session_factory()
        try:
            users = repository.list_users(db)
            for user in users:
                try:
                    if not self._wants_digest(user.id):
                        skipped += 1
                        continue
                    completed = repository.count_completed_between(db, user.id, last_week_start, this_week_start)
                    overdue = repository.count_overdue_tasks(db, user.id, now)
                    lines = [f"Tasks completed: {completed}"]
                    if overdue:
                        lines.append(f"Overdue tasks: {overdue}")
                    subject = f"Weekly summary - week of {last_week_start.strftime('%b %d')}"
                    if await self.dispatcher.send_digest(user, subject, "\n".join(lines), period="weekly"):
                        sent += 1
                except Exception as e:
                    db.rollback()
                    failed += 1
                    logger.error("❌ [WeeklyDigest] Failed for user %s: %s", user.id, e)
        finally:
            db.close()
        logger.info("[WeeklyDigest] Done: sent=%d skipped=%d failed=%d", sent, skipped, failed)
        return {"sent": sent, "skipped": skipped, "failed": failed}
