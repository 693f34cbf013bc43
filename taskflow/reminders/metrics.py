from prometheus_client import Counter, Gauge


scheduler_ticks_total = Counter(
    "reminder_scheduler_ticks_total",
    "Total scheduler scan cycles",
)

scheduler_tick_failures_total = Counter(
    "reminder_scheduler_tick_failures_total",
    "Per-task failures isolated during scheduler scans",
)

scheduler_tasks_scanned_total = Counter(
    "reminder_scheduler_tasks_scanned_total",
    "Tasks examined by the scheduler",
)

reminders_fired_total = Counter(
    "reminders_fired_total",
    "Reminder kinds claimed and triggered",
    ["kind"],
)

reminder_conflicts_total = Counter(
    "reminder_claim_conflicts_total",
    "Versioned reminder claims that lost a concurrent write",
)

due_status_updates_total = Counter(
    "reminder_due_status_updates_total",
    "Cached due-date statuses rewritten",
)

notifications_created_total = Counter(
    "notifications_created_total",
    "In-app notification records persisted",
)

notifications_lost_total = Counter(
    "notifications_lost_total",
    "Notification events dropped because the in-app record could not be persisted",
)

channel_sends_total = Counter(
    "notification_channel_sends_total",
    "External channel send outcomes",
    ["channel", "outcome"],
)

live_events_delivered_total = Counter(
    "realtime_events_delivered_total",
    "Live events delivered to connected observers",
)

live_connections = Gauge(
    "realtime_connections",
    "Currently open realtime connections",
)

digests_sent_total = Counter(
    "notification_digests_sent_total",
    "Digest summaries submitted to external channels",
    ["period"],
)
