class ReminderError(Exception):
    """Base error for the reminder subsystem."""


class StorageError(ReminderError):
    """A read or write against the task/notification store failed."""


class ConcurrencyConflict(ReminderError):
    """A versioned task write lost the race against a concurrent writer."""

    def __init__(self, task_id: str, expected_version: int):
        super().__init__(f"Task {task_id} changed since version {expected_version}")
        self.task_id = task_id
        self.expected_version = expected_version


class ChannelSendError(ReminderError):
    """An external channel (email, webhook) rejected or failed a send."""

    def __init__(self, channel: str, reason: str):
        super().__init__(f"{channel} send failed: {reason}")
        self.channel = channel
        self.reason = reason
