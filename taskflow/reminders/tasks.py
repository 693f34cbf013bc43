"""
Celery entry points for the worker deployment.

Workers have no live connections, so their EventRouter delivers nothing; the
in-app records they write are picked up by clients on their next fetch.
"""
import asyncio
import logging
from typing import Optional

from celery import shared_task

from taskflow.utils.timezone import utc_now
from .channels import ChannelMessage, build_channel_senders, record_send_failure, record_send_outcome
from .components import ReminderComponents, build_reminder_components
from .errors import ChannelSendError

logger = logging.getLogger(__name__)

_components: Optional[ReminderComponents] = None


def get_worker_components() -> ReminderComponents:
    global _components
    if _components is None:
        _components = build_reminder_components()
    return _components


@shared_task(name="reminders.scan_and_dispatch")
def scan_and_dispatch_task() -> dict:
    """Run one reminder scan. Returns the tick counters."""
    result = asyncio.run(get_worker_components().scheduler.run_tick(utc_now()))
    return result.as_dict()


@shared_task(name="reminders.daily_digest")
def daily_digest_task() -> dict:
    return asyncio.run(get_worker_components().digests.run_daily(utc_now()))


@shared_task(name="reminders.weekly_digest")
def weekly_digest_task() -> dict:
    return asyncio.run(get_worker_components().digests.run_weekly(utc_now()))


@shared_task(name="reminders.deliver_channel")
def deliver_channel_task(message: dict) -> str:
    msg = ChannelMessage.from_dict(message)
    sender = build_channel_senders().get(msg.channel)
    if sender is None:
        logger.warning("[Channels] No sender registered for channel %s", msg.channel)
        return "unknown_channel"
    try:
        delivered = sender.send(msg)
    except ChannelSendError as e:
        # Channel failures are terminal; the in-app record already exists
        record_send_failure(msg, e)
        return "failed"
    record_send_outcome(msg, delivered)
    return "sent" if delivered else "skipped"
