"""Producer: inserts tasks at a fixed cadence."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from task_dispatch.dispatch.models import ProducerRunSummary
from task_dispatch.dispatch.repository import TaskStore
from task_dispatch.dispatch.shutdown import StopController

logger = logging.getLogger(__name__)


class Producer:
    """Appends tasks to the store; the store's insert hook does the notifying."""

    def __init__(
        self,
        *,
        store: TaskStore,
        interval_seconds: float = 1.0,
        task_name: str = "task",
        task_payload: str | None = "payload",
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self.task_name = task_name
        self.task_payload = task_payload
        self.summary = ProducerRunSummary()
        self._stop = StopController()

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop.request(signal_name=signal_name)

    def publish_one(self, *, name: str | None = None, payload: str | None = None) -> int | None:
        """Insert one task; returns its id, or None if the insert failed."""

        task_name = name if name is not None else self.task_name
        task_payload = payload if payload is not None else self.task_payload
        try:
            task_id = self.store.insert(task_name, task_payload)
        except SQLAlchemyError as error:
            self.summary.failed += 1
            logger.error("error inserting task error=%s", error)
            return None
        self.summary.published += 1
        logger.info("published task task_id=%s name=%s", task_id, task_name)
        return task_id

    def run_loop(self, *, max_tasks: int | None = None) -> ProducerRunSummary:
        """Publish one task per interval until stopped or ``max_tasks`` attempts were made."""

        logger.info(
            "running in publisher mode interval_seconds=%s name=%s",
            self.interval_seconds,
            self.task_name,
        )
        attempts = 0
        with self._stop.signal_handlers():
            while self._stop.sleep(self.interval_seconds):
                self.publish_one()
                attempts += 1
                if max_tasks is not None and attempts >= max_tasks:
                    break
        logger.info(
            "publisher stopped published=%s failed=%s",
            self.summary.published,
            self.summary.failed,
        )
        return self.summary
