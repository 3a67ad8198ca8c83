"""Exception types raised by the dispatch layer."""

from __future__ import annotations


class TaskDispatchError(Exception):
    """Base class for dispatcher errors."""


class TaskNotFoundError(TaskDispatchError, LookupError):
    """Raised when a task id does not exist in the store."""

    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class NotificationChannelError(TaskDispatchError):
    """Raised when the notification subscription is lost or cannot be established."""


class InvalidChannelNameError(TaskDispatchError, ValueError):
    """Raised for channel names that are not plain SQL identifiers."""


class BootstrapError(TaskDispatchError):
    """Raised when a process cannot start: bad config, unreachable store, failed setup."""
