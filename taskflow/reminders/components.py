"""
Wiring for the reminder subsystem.

Everything is built here and passed down explicitly; the FastAPI app keeps the
result on ``app.state.reminders`` and Celery workers build their own copy.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from taskflow.db.session import SessionLocal
from taskflow.realtime.events import EventRouter
from taskflow.realtime.presence import PresenceTracker
from taskflow.utils.timezone import utc_now
from .channels import build_channel_pool
from .config import reminder_settings
from .digest import DigestService
from .dispatcher import NotificationDispatcher
from .preferences import PreferenceResolver
from .runner import PeriodicJob, PeriodicRunner
from .schedule import (
    daily_digest_schedule,
    presence_sweep_schedule,
    reminder_scan_schedule,
    weekly_digest_schedule,
)
from .scheduler import ReminderScheduler
from .service import TaskEventService

logger = logging.getLogger(__name__)


@dataclass
class ReminderComponents:
    session_factory: Callable[[], Session]
    router: EventRouter
    presence: PresenceTracker
    preferences: PreferenceResolver
    channel_pool: Any
    dispatcher: NotificationDispatcher
    scheduler: ReminderScheduler
    digests: DigestService
    task_events: TaskEventService
    clock: Callable[[], datetime] = utc_now

    def shutdown(self) -> None:
        self.channel_pool.shutdown(wait=True)


def build_reminder_components(
    session_factory: Callable[[], Session] = SessionLocal,
    channel_pool: Optional[Any] = None,
    clock: Callable[[], datetime] = utc_now,
    channel_backend: Optional[str] = None,
) -> ReminderComponents:
    router = EventRouter()
    presence = PresenceTracker(
        clock=clock,
        online_for=timedelta(seconds=reminder_settings.PRESENCE_ONLINE_SECONDS),
        away_for=timedelta(seconds=reminder_settings.PRESENCE_AWAY_SECONDS),
        grace_seconds=reminder_settings.PRESENCE_GRACE_SECONDS,
        retention=timedelta(seconds=reminder_settings.PRESENCE_RETENTION_SECONDS),
    )
    preferences = PreferenceResolver(session_factory, clock=clock)
    if channel_pool is None:
        channel_pool = build_channel_pool(channel_backend)
    dispatcher = NotificationDispatcher(router, preferences, channel_pool, session_factory)
    return ReminderComponents(
        session_factory=session_factory,
        router=router,
        presence=presence,
        preferences=preferences,
        channel_pool=channel_pool,
        dispatcher=dispatcher,
        scheduler=ReminderScheduler(dispatcher, router, session_factory, clock),
        digests=DigestService(dispatcher, preferences, session_factory),
        task_events=TaskEventService(dispatcher, router, session_factory, clock),
        clock=clock,
    )


async def sweep_presence(components: ReminderComponents) -> int:
    """Broadcast every presence transition since the previous sweep."""
    transitions = components.presence.sweep()
    for observer_id, state in transitions:
        await components.router.publish_presence(observer_id, state)
    return len(transitions)


def build_runner(components: ReminderComponents) -> PeriodicRunner:
    async def scan(now):
        return await components.scheduler.run_tick()

    async def presence(now):
        return await sweep_presence(components)

    jobs = [
        PeriodicJob("reminder-scan", reminder_scan_schedule(), scan, run_on_start=reminder_settings.SCAN_ON_STARTUP),
        PeriodicJob("presence-sweep", presence_sweep_schedule(), presence),
    ]
    if reminder_settings.DIGESTS_ENABLED:
        jobs.append(PeriodicJob("daily-digest", daily_digest_schedule(), components.digests.run_daily))
        jobs.append(PeriodicJob("weekly-digest", weekly_digest_schedule(), components.digests.run_weekly))
    return PeriodicRunner(jobs, clock=components.clock)
