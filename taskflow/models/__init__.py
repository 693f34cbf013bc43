from .user import User
from .task import Task, LifecycleStatus, DueDateStatus
from .notification import (
    NotificationRecord,
    NotificationPreference,
    Channel,
    PreferenceCategory,
    default_channel_matrix,
)
