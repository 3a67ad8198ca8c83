"""Business actions run for a claimed task."""

from __future__ import annotations

import logging
from collections.abc import Callable

from task_dispatch.dispatch.models import TaskView

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TaskView], None]


def log_task_handler(task: TaskView) -> None:
    """Default action: record the task. Payload semantics are left to callers."""

    logger.info(
        "executing task task_id=%s name=%s payload=%s",
        task.task_id,
        task.name,
        task.payload,
    )
