from .notifications import (
    NotificationRead,
    NotificationList,
    NotificationAck,
    PreferenceRead,
    PreferenceUpdate,
    DueDateSummary,
)
