from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

import allure
import pytest

from task_dispatch.dispatch.dispatcher import Dispatcher
from task_dispatch.dispatch.errors import NotificationChannelError
from task_dispatch.dispatch.models import Notification, TaskStatus
from task_dispatch.dispatch.notifications import LocalNotificationBus
from task_dispatch.dispatch.repository import TaskStore

from .fakes import FlakyChannel, RecordingHandler, UnreachableChannel, wait_until

pytestmark = [
    allure.epic("Dispatcher"),
    allure.feature("Notification + Reconciliation Loop"),
]


def _dispatcher(
    store: TaskStore,
    channel,
    handler: RecordingHandler,
    *,
    interval: float = 60.0,
    dispatcher_id: str = "test-dispatcher",
) -> Dispatcher:
    return Dispatcher(
        store=store,
        channel=channel,
        handler=handler,
        dispatcher_id=dispatcher_id,
        reconciliation_interval_seconds=interval,
        listener_min_reconnect_seconds=0.01,
        listener_max_reconnect_seconds=0.05,
    )


@contextmanager
def _running(dispatcher: Dispatcher) -> Iterator[threading.Thread]:
    thread = threading.Thread(target=dispatcher.run_forever, daemon=True)
    thread.start()
    assert wait_until(lambda: dispatcher.summary.reconciliation_passes >= 1)
    try:
        yield thread
    finally:
        dispatcher.request_stop()
        thread.join(timeout=10)
        assert not thread.is_alive()


def test_reconcile_drains_whole_backlog(
    store: TaskStore,
    local_bus: LocalNotificationBus,
) -> None:
    task_ids = [store.insert("task", f"payload-{index}") for index in range(3)]
    handler = RecordingHandler()
    dispatcher = _dispatcher(store, local_bus.subscribe(), handler)

    summary = dispatcher.reconcile()

    assert (summary.claimed, summary.executed, summary.failed) == (3, 3, 0)
    assert sorted(handler.calls) == task_ids
    assert all(store.fetch(task_id).executed_at is not None for task_id in task_ids)
    assert dispatcher.reconcile().claimed == 0
    assert dispatcher.summary.reconciliation_passes == 2


def test_reconcile_on_empty_store_terminates(
    store: TaskStore,
    local_bus: LocalNotificationBus,
) -> None:
    dispatcher = _dispatcher(store, local_bus.subscribe(), RecordingHandler())

    summary = dispatcher.reconcile()

    assert (summary.claimed, summary.executed, summary.failed) == (0, 0, 0)


def test_failing_task_does_not_block_rest_of_backlog(
    store: TaskStore,
    local_bus: LocalNotificationBus,
) -> None:
    failing = store.insert("task", "explodes")
    others = [store.insert("task", f"fine-{index}") for index in range(3)]
    handler = RecordingHandler(fail_ids={failing})
    dispatcher = _dispatcher(store, local_bus.subscribe(), handler)

    summary = dispatcher.reconcile()

    assert (summary.claimed, summary.executed, summary.failed) == (4, 3, 1)
    assert handler.calls[failing] == 1
    assert all(handler.calls[task_id] == 1 for task_id in others)
    assert [task.task_id for task in store.list_tasks(status=TaskStatus.PENDING)] == [failing]

    summary = dispatcher.reconcile()
    assert (summary.claimed, summary.failed) == (1, 1)
    assert handler.calls[failing] == 2

    handler.fail_ids.clear()
    summary = dispatcher.reconcile()
    assert summary.executed == 1
    assert store.count_pending() == 0


def test_failing_task_does_not_block_loop_without_notifications(
    silent_store: TaskStore,
) -> None:
    failing = silent_store.insert("task", "explodes")
    handler = RecordingHandler(fail_ids={failing})
    dispatcher = _dispatcher(
        silent_store,
        LocalNotificationBus().subscribe(),
        handler,
        interval=0.1,
    )

    with _running(dispatcher):
        others = [silent_store.insert("task", "payload") for _ in range(3)]
        assert wait_until(lambda: silent_store.count_pending() == 1)

    assert all(handler.calls[task_id] == 1 for task_id in others)
    assert silent_store.fetch(failing).is_pending


def test_malformed_notification_is_discarded(
    store: TaskStore,
    local_bus: LocalNotificationBus,
) -> None:
    task_id = store.insert("task", "payload")
    handler = RecordingHandler()
    dispatcher = _dispatcher(store, local_bus.subscribe(), handler)

    assert dispatcher.handle_notification(Notification("tasks_inserted", "not-an-id")) is False
    assert dispatcher.handle_notification(Notification("tasks_inserted", str(task_id))) is True

    assert dispatcher.summary.malformed_notifications == 1
    assert dispatcher.summary.notifications == 2
    assert handler.calls[task_id] == 1


def test_stale_notification_for_executed_task_is_noop(
    store: TaskStore,
    local_bus: LocalNotificationBus,
) -> None:
    task_id = store.insert("task", "payload")
    handler = RecordingHandler()
    dispatcher = _dispatcher(store, local_bus.subscribe(), handler)
    dispatcher.reconcile()

    assert dispatcher.execute_task(task_id) is False
    assert dispatcher.execute_task(task_id + 1000) is False

    assert handler.calls[task_id] == 1
    assert dispatcher.summary.skipped == 2


def test_end_to_end_notification_path(
    store: TaskStore,
    local_bus: LocalNotificationBus,
) -> None:
    handler = RecordingHandler()
    dispatcher = _dispatcher(store, local_bus.subscribe(), handler)

    with _running(dispatcher):
        task_id = store.insert("task", "payload")
        assert wait_until(lambda: store.fetch(task_id).executed_at is not None)

    task = store.fetch(task_id)
    assert (task.name, task.payload) == ("task", "payload")
    assert handler.calls[task_id] == 1
    assert dispatcher.summary.notifications == 1
    assert dispatcher.summary.reconciliation_passes == 1


def test_startup_pass_drains_backlog_before_events(
    store: TaskStore,
    local_bus: LocalNotificationBus,
) -> None:
    backlog = [store.insert("offline", None) for _ in range(2)]
    handler = RecordingHandler()
    dispatcher = _dispatcher(store, local_bus.subscribe(), handler)

    with _running(dispatcher):
        assert wait_until(lambda: all(handler.calls[task_id] == 1 for task_id in backlog))

    assert dispatcher.summary.notifications == 0


def test_reconciliation_executes_tasks_when_notifications_are_lost(
    silent_store: TaskStore,
) -> None:
    handler = RecordingHandler()
    deaf_channel = LocalNotificationBus().subscribe()
    dispatcher = _dispatcher(silent_store, deaf_channel, handler, interval=0.1)

    with _running(dispatcher):
        task_ids = [silent_store.insert("task", "payload") for _ in range(3)]
        assert wait_until(lambda: silent_store.count_pending() == 0)

    assert sorted(handler.calls) == task_ids
    assert dispatcher.summary.notifications == 0
    assert dispatcher.summary.reconciliation_passes >= 2


def test_malformed_event_does_not_stall_loop(
    store: TaskStore,
    local_bus: LocalNotificationBus,
) -> None:
    handler = RecordingHandler()
    dispatcher = _dispatcher(store, local_bus.subscribe(), handler)

    with _running(dispatcher):
        local_bus.publish("tasks_inserted", "garbage")
        task_id = store.insert("task", "payload")
        assert wait_until(lambda: handler.calls[task_id] == 1)

    assert dispatcher.summary.malformed_notifications == 1


def test_concurrent_dispatchers_execute_each_task_once(
    store: TaskStore,
    local_bus: LocalNotificationBus,
    database_url: str,
) -> None:
    handler = RecordingHandler()
    worker_stores = [TaskStore(database_url) for _ in range(2)]
    dispatchers = [
        _dispatcher(
            worker_store,
            local_bus.subscribe(),
            handler,
            interval=0.2,
            dispatcher_id=f"dispatcher-{index}",
        )
        for index, worker_store in enumerate(worker_stores)
    ]

    try:
        with _running(dispatchers[0]), _running(dispatchers[1]):
            task_ids = [store.insert("task", f"payload-{index}") for index in range(20)]
            assert wait_until(lambda: store.count_pending() == 0, timeout=15)
    finally:
        for worker_store in worker_stores:
            worker_store.close()

    assert sorted(handler.calls) == task_ids
    assert set(handler.calls.values()) == {1}
    assert sum(dispatcher.summary.executed for dispatcher in dispatchers) == 20


def test_lost_subscription_reconnects_and_reconciles(
    store: TaskStore,
    local_bus: LocalNotificationBus,
) -> None:
    handler = RecordingHandler()
    channel = FlakyChannel(local_bus.subscribe(), failures=1)
    dispatcher = _dispatcher(store, channel, handler)

    with _running(dispatcher):
        assert wait_until(lambda: dispatcher.summary.reconciliation_passes >= 2)
        assert dispatcher.summary.reconnects == 1
        task_id = store.insert("task", "after-reconnect")
        assert wait_until(lambda: handler.calls[task_id] == 1)

    assert channel.listen_calls == 2


def test_subscription_failure_at_startup_is_fatal(store: TaskStore) -> None:
    store.insert("task", None)
    dispatcher = _dispatcher(store, UnreachableChannel(), RecordingHandler())

    with pytest.raises(NotificationChannelError, match="connection refused"):
        dispatcher.run_forever()

    assert dispatcher.summary.reconciliation_passes == 0
    assert store.count_pending() == 1
