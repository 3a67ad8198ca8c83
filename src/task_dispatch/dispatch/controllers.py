"""Controllers for dispatcher CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from alembic.util import CommandError
from sqlalchemy.exc import SQLAlchemyError

from task_dispatch.config import Settings
from task_dispatch.dispatch.dispatcher import Dispatcher
from task_dispatch.dispatch.errors import BootstrapError, NotificationChannelError
from task_dispatch.dispatch.models import TaskStatus, TaskView
from task_dispatch.dispatch.notifications import (
    LocalNotificationBus,
    NotificationChannel,
    PostgresNotificationChannel,
)
from task_dispatch.dispatch.producer import Producer
from task_dispatch.dispatch.repository import TaskStore
from task_dispatch.logging_setup import setup_logging

logger = logging.getLogger(__name__)


class RunMode(str, Enum):
    """Process roles selectable from the CLI."""

    CONSUMER = "consumer"
    PUBLISHER = "publisher"


@dataclass(slots=True)
class RunCommand:
    """CLI input for the long-running consumer/publisher process."""

    database_url: str | None
    mode: str
    max_tasks: int | None = None


@dataclass(slots=True)
class SetupCommand:
    """CLI input for schema/trigger bootstrap."""

    database_url: str | None


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for a one-off insert."""

    database_url: str | None
    name: str
    payload: str | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    database_url: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    database_url: str | None
    task_id: int


class DispatchCliController:
    """Coordinates bootstrap, consumer, publisher and inspection CLI operations."""

    def run(self, command: RunCommand) -> list[str]:
        try:
            mode = RunMode(command.mode)
        except ValueError as error:
            raise BootstrapError(f"Invalid mode: {command.mode!r}") from error

        settings = _settings(command.database_url)
        local_bus = LocalNotificationBus()
        with _bootstrapped_store(settings, local_bus=local_bus) as store:
            if mode is RunMode.PUBLISHER:
                producer = Producer(
                    store=store,
                    interval_seconds=settings.producer.interval_seconds,
                    task_name=settings.producer.task_name,
                    task_payload=settings.producer.task_payload,
                )
                summary = producer.run_loop(max_tasks=command.max_tasks)
                return [
                    f"Publisher summary: published={summary.published} failed={summary.failed}",
                ]

            logger.info(
                "running in consumer mode dispatcher_id=%s",
                settings.dispatcher.dispatcher_id,
            )
            dispatcher = Dispatcher(
                store=store,
                channel=_channel(settings, store=store, local_bus=local_bus),
                dispatcher_id=settings.dispatcher.dispatcher_id,
                reconciliation_interval_seconds=settings.dispatcher.reconciliation_interval_seconds,
                listener_min_reconnect_seconds=settings.dispatcher.listener_min_reconnect_seconds,
                listener_max_reconnect_seconds=settings.dispatcher.listener_max_reconnect_seconds,
            )
            try:
                run_summary = dispatcher.run_forever()
            except NotificationChannelError as error:
                raise BootstrapError(str(error)) from error

        return [
            "Dispatcher summary: "
            f"executed={run_summary.executed} skipped={run_summary.skipped} "
            f"failed={run_summary.failed} notifications={run_summary.notifications} "
            f"malformed={run_summary.malformed_notifications} "
            f"passes={run_summary.reconciliation_passes} reconnects={run_summary.reconnects}",
        ]

    def setup(self, command: SetupCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _bootstrapped_store(settings) as store:
            trigger = "installed" if store.has_native_notifications else "not supported"
            pending = store.count_pending()
        return [
            f"Schema ready: dialect={store.engine.dialect.name} notify_trigger={trigger} "
            f"pending={pending}",
        ]

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _bootstrapped_store(settings) as store:
            task_id = store.insert(command.name, command.payload)
        return [f"Task enqueued: task_id={task_id} name={command.name}"]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.database_url)
        status = TaskStatus(command.status) if command.status is not None else None
        with _bootstrapped_store(settings) as store:
            tasks = store.list_tasks(status=status, limit=command.limit)
        if not tasks:
            return ["No tasks found."]
        return [_render_task_line(task) for task in tasks]

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _bootstrapped_store(settings) as store:
            task = store.fetch(command.task_id)
        return [
            f"task_id={task.task_id}",
            f"name={task.name}",
            f"payload={task.payload if task.payload is not None else '-'}",
            f"status={task.status.value}",
            f"created_at={_format_datetime(task.created_at)}",
            f"executed_at={_format_datetime(task.executed_at)}",
        ]


def _settings(database_url: str | None) -> Settings:
    settings = Settings.from_env(database_url=database_url)
    try:
        settings.validate()
    except ValueError as error:
        raise BootstrapError(f"Invalid configuration: {error}") from error
    setup_logging(settings.log_level)
    return settings


@contextmanager
def _bootstrapped_store(
    settings: Settings,
    *,
    local_bus: LocalNotificationBus | None = None,
) -> Iterator[TaskStore]:
    store = TaskStore(
        settings.database_url,
        channel=settings.dispatcher.channel,
        local_bus=local_bus,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        try:
            store.init_schema()
        except (SQLAlchemyError, CommandError) as error:
            raise BootstrapError(f"Failed to initialize task store: {error}") from error
        yield store
    finally:
        store.close()


def _channel(
    settings: Settings,
    *,
    store: TaskStore,
    local_bus: LocalNotificationBus,
) -> NotificationChannel:
    if store.has_native_notifications:
        return PostgresNotificationChannel(
            settings.connection.libpq_conninfo(),
            channel=settings.dispatcher.channel,
        )
    logger.warning(
        "dialect=%s has no cross-process notifications; relying on reconciliation passes",
        store.engine.dialect.name,
    )
    return local_bus.subscribe(settings.dispatcher.channel)


def _render_task_line(task: TaskView) -> str:
    return (
        f"task_id={task.task_id} status={task.status.value} name={task.name} "
        f"created_at={_format_datetime(task.created_at)} "
        f"executed_at={_format_datetime(task.executed_at)}"
    )


def _format_datetime(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"
