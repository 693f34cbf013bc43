from celery import Celery
from kombu import Exchange, Queue
from .config import reminder_settings as settings
from .schedule import (
    daily_digest_schedule,
    reminder_scan_schedule,
    to_celery_schedule,
    weekly_digest_schedule,
)


celery_app = Celery(
    "reminders",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND or None,
)

exchange = Exchange(settings.CELERY_EXCHANGE, type="direct", durable=True)

celery_app.conf.update(
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    timezone=settings.DIGEST_TIMEZONE,
    enable_utc=True,
    task_default_queue=settings.CELERY_QUEUE,
    task_default_exchange=settings.CELERY_EXCHANGE,
    task_default_routing_key=settings.CELERY_QUEUE,
    include=["taskflow.reminders.tasks"],
    task_queues=(
        Queue(settings.CELERY_QUEUE, exchange=exchange, routing_key=settings.CELERY_QUEUE, durable=True),
        Queue(settings.CHANNEL_QUEUE, exchange=exchange, routing_key=settings.CHANNEL_QUEUE, durable=True),
    ),
)

# Celery Beat schedule; the same structured schedules drive the in-process runner
celery_app.conf.beat_schedule = {
    "scan-and-dispatch": {
        "task": "reminders.scan_and_dispatch",
        "schedule": to_celery_schedule(reminder_scan_schedule()),
    },
}
if settings.DIGESTS_ENABLED:
    celery_app.conf.beat_schedule.update({
        "daily-digest": {
            "task": "reminders.daily_digest",
            "schedule": to_celery_schedule(daily_digest_schedule()),
        },
        "weekly-digest": {
            "task": "reminders.weekly_digest",
            "schedule": to_celery_schedule(weekly_digest_schedule()),
        },
    })
