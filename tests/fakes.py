"""Test doubles for dispatcher collaborators."""

from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Callable

from task_dispatch.dispatch.errors import NotificationChannelError
from task_dispatch.dispatch.models import Notification, TaskView
from task_dispatch.dispatch.notifications import LocalNotificationChannel


class RecordingHandler:
    """Thread-safe handler that counts executions per task id."""

    def __init__(self, *, fail_ids: set[int] | None = None) -> None:
        self.calls: Counter[int] = Counter()
        self.seen: list[TaskView] = []
        self.fail_ids = set(fail_ids or ())
        self._lock = threading.Lock()

    def __call__(self, task: TaskView) -> None:
        with self._lock:
            self.calls[task.task_id] += 1
            self.seen.append(task)
        if task.task_id in self.fail_ids:
            raise RuntimeError(f"boom for task {task.task_id}")


class FlakyChannel:
    """Local channel that drops its connection on the first ``failures`` waits."""

    def __init__(self, inner: LocalNotificationChannel, *, failures: int = 1) -> None:
        self.inner = inner
        self.channel = inner.channel
        self.failures_left = failures
        self.listen_calls = 0

    def listen(self) -> None:
        self.listen_calls += 1
        self.inner.listen()

    def wait(self, timeout: float) -> list[Notification]:
        if self.failures_left > 0:
            self.failures_left -= 1
            self.inner.close()
            raise NotificationChannelError("server closed the connection unexpectedly")
        return self.inner.wait(timeout)

    def close(self) -> None:
        self.inner.close()


class UnreachableChannel:
    """Channel whose subscription can never be established."""

    channel = "tasks_inserted"

    def listen(self) -> None:
        raise NotificationChannelError("connection refused")

    def wait(self, timeout: float) -> list[Notification]:
        raise NotificationChannelError("not listening")

    def close(self) -> None:
        return None


def wait_until(condition: Callable[[], bool], *, timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()
