"""Dispatcher: notification wake-ups plus periodic reconciliation."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError

from task_dispatch.dispatch.errors import NotificationChannelError
from task_dispatch.dispatch.handlers import TaskHandler, log_task_handler
from task_dispatch.dispatch.models import (
    DispatcherRunSummary,
    Notification,
    ReconciliationSummary,
)
from task_dispatch.dispatch.notifications import NotificationChannel, parse_task_id
from task_dispatch.dispatch.repository import TaskClaim, TaskStore
from task_dispatch.dispatch.shutdown import StopController

logger = logging.getLogger(__name__)

# Upper bound on a single channel wait so the stop flag is noticed promptly.
STOP_CHECK_SECONDS = 0.5


class Dispatcher:
    """Drives tasks from pending to executed.

    Two sources are multiplexed in one loop: the notification subscription
    (low latency, best effort) and a fixed-interval reconciliation timer
    (the correctness backstop). Both end in the same claim/execute/mark
    procedure, and claims are exclusive in the store, so they interleave
    safely with each other and with other dispatcher processes.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        channel: NotificationChannel,
        handler: TaskHandler = log_task_handler,
        dispatcher_id: str = "dispatcher",
        reconciliation_interval_seconds: float = 10.0,
        listener_min_reconnect_seconds: float = 1.0,
        listener_max_reconnect_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.channel = channel
        self.handler = handler
        self.dispatcher_id = dispatcher_id
        self.reconciliation_interval_seconds = reconciliation_interval_seconds
        self.listener_min_reconnect_seconds = listener_min_reconnect_seconds
        self.listener_max_reconnect_seconds = listener_max_reconnect_seconds
        self.summary = DispatcherRunSummary()
        self._clock = clock
        self._stop = StopController()

    @property
    def stop_requested(self) -> bool:
        return self._stop.requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Stop after the current unit of work."""

        self._stop.request(signal_name=signal_name)

    def run_forever(self) -> DispatcherRunSummary:
        """Subscribe, drain the backlog, then serve events until stopped.

        Subscribing happens before the startup pass so inserts made while the
        pass runs are buffered rather than lost. A failure to subscribe here
        propagates: it is a startup error.
        """

        with self._stop.signal_handlers():
            self.channel.listen()
            logger.info(
                "dispatcher subscribed dispatcher_id=%s channel=%s interval_seconds=%s",
                self.dispatcher_id,
                self.channel.channel,
                self.reconciliation_interval_seconds,
            )
            try:
                self.reconcile()
                self._serve()
            finally:
                self.channel.close()
                logger.info(
                    "dispatcher stopped dispatcher_id=%s notifications=%s malformed=%s "
                    "executed=%s skipped=%s failed=%s passes=%s reconnects=%s",
                    self.dispatcher_id,
                    self.summary.notifications,
                    self.summary.malformed_notifications,
                    self.summary.executed,
                    self.summary.skipped,
                    self.summary.failed,
                    self.summary.reconciliation_passes,
                    self.summary.reconnects,
                )
        return self.summary

    def reconcile(self) -> ReconciliationSummary:
        """Claim and execute pending tasks until none is claimable.

        Drains the whole backlog. A task whose execution fails stays pending
        and is excluded for the rest of the pass, so each task is tried at
        most once per pass; the next pass retries it.
        """

        summary = ReconciliationSummary()
        failed_ids: set[int] = set()
        logger.info("reconciliation pass started dispatcher_id=%s", self.dispatcher_id)
        while not self._stop.requested:
            try:
                claim = self.store.claim_one_pending(exclude=failed_ids)
            except SQLAlchemyError as error:
                logger.error("error claiming pending task error=%s", error)
                break
            if claim is None:
                break
            summary.claimed += 1
            logger.info("claimed task task_id=%s source=reconciliation", claim.task.task_id)
            if not self._execute_claim(claim):
                summary.failed += 1
                failed_ids.add(claim.task.task_id)
                logger.warning(
                    "task failed, left pending until next pass task_id=%s",
                    claim.task.task_id,
                )
                continue
            summary.executed += 1

        self.summary.add_pass(summary)
        logger.info(
            "reconciliation pass finished dispatcher_id=%s claimed=%s executed=%s failed=%s",
            self.dispatcher_id,
            summary.claimed,
            summary.executed,
            summary.failed,
        )
        return summary

    def handle_notification(self, notification: Notification) -> bool:
        """Decode one event and execute its task; malformed events are dropped."""

        self.summary.notifications += 1
        logger.info(
            "received notification channel=%s payload=%s",
            notification.channel,
            notification.payload,
        )
        try:
            task_id = parse_task_id(notification.payload)
        except ValueError as error:
            self.summary.malformed_notifications += 1
            logger.error("error parsing task id error=%s", error)
            return False
        return self.execute_task(task_id)

    def execute_task(self, task_id: int) -> bool:
        """Claim a specific task and run it; a no-op if it is not claimable."""

        try:
            claim = self.store.claim_task(task_id)
        except SQLAlchemyError as error:
            self.summary.failed += 1
            logger.error("error claiming task task_id=%s error=%s", task_id, error)
            return False
        if claim is None:
            # Executed by someone else, locked by another claimant, or gone.
            self.summary.skipped += 1
            logger.info("task not claimable, skipping task_id=%s", task_id)
            return False

        logger.info("claimed task task_id=%s source=notification", task_id)
        if self._execute_claim(claim):
            self.summary.executed += 1
            return True
        self.summary.failed += 1
        return False

    def _serve(self) -> None:
        next_pass_at = self._clock() + self.reconciliation_interval_seconds
        while not self._stop.requested:
            remaining = next_pass_at - self._clock()
            if remaining <= 0:
                self.reconcile()
                next_pass_at = self._clock() + self.reconciliation_interval_seconds
                continue

            try:
                notifications = self.channel.wait(min(remaining, STOP_CHECK_SECONDS))
            except NotificationChannelError as error:
                logger.error(
                    "notification channel lost channel=%s error=%s",
                    self.channel.channel,
                    error,
                )
                if not self._reconnect():
                    return
                # Events fired while disconnected are gone for good.
                self.reconcile()
                next_pass_at = self._clock() + self.reconciliation_interval_seconds
                continue

            for notification in notifications:
                if self._stop.requested:
                    return
                self.handle_notification(notification)

    def _execute_claim(self, claim: TaskClaim) -> bool:
        task = claim.task
        with claim:
            try:
                self.handler(task)
            except Exception:  # noqa: BLE001
                logger.exception("error executing task task_id=%s", task.task_id)
                return False
            try:
                marked = claim.mark_executed()
            except SQLAlchemyError as error:
                logger.error("error marking task executed task_id=%s error=%s", task.task_id, error)
                return False
        if not marked:
            logger.warning("task was already marked executed task_id=%s", task.task_id)
        logger.info("task executed task_id=%s name=%s", task.task_id, task.name)
        return True

    def _reconnect(self) -> bool:
        delay = self.listener_min_reconnect_seconds
        while self._stop.sleep(delay):
            try:
                self.channel.listen()
            except NotificationChannelError as error:
                delay = min(delay * 2, self.listener_max_reconnect_seconds)
                logger.warning(
                    "listener reconnect failed channel=%s retry_in_seconds=%s error=%s",
                    self.channel.channel,
                    delay,
                    error,
                )
                continue
            self.summary.reconnects += 1
            logger.info("listener reconnected channel=%s", self.channel.channel)
            return True
        return False
