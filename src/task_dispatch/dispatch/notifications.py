"""Notification channels: best-effort wake-ups for dispatchers.

A channel only ever shortens latency. Events are dropped while a subscriber
is disconnected or not yet listening and are never redelivered; the
dispatcher's reconciliation pass covers every gap.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Protocol

import psycopg
from psycopg import sql

from task_dispatch.dispatch.errors import NotificationChannelError
from task_dispatch.dispatch.models import Notification
from task_dispatch.storage.notify_trigger import DEFAULT_CHANNEL, validate_channel_name

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """Subscription side of the notification bus."""

    channel: str

    def listen(self) -> None:
        """(Re)connect and subscribe. Raises NotificationChannelError on failure."""

    def wait(self, timeout: float) -> list[Notification]:
        """Block up to ``timeout`` seconds; return whatever arrived (maybe nothing)."""

    def close(self) -> None:
        """Unsubscribe and release the connection."""


def parse_task_id(payload: str) -> int:
    """Decode the task id carried by a notification payload."""

    value = payload.strip()
    if not (value.isascii() and value.isdigit()):
        raise ValueError(f"Notification payload is not a task id: {payload!r}")
    task_id = int(value)
    if task_id <= 0:
        raise ValueError(f"Notification payload is not a task id: {payload!r}")
    return task_id


class PostgresNotificationChannel:
    """``LISTEN`` on a dedicated autocommit psycopg connection.

    The listening connection is separate from the query pool so it can drop
    and reconnect without touching in-flight claims.
    """

    def __init__(
        self,
        conninfo: str,
        *,
        channel: str = DEFAULT_CHANNEL,
        connect_timeout_seconds: int = 10,
    ) -> None:
        self.conninfo = conninfo
        self.channel = validate_channel_name(channel)
        self.connect_timeout_seconds = connect_timeout_seconds
        self._connection: psycopg.Connection | None = None

    @property
    def is_listening(self) -> bool:
        return self._connection is not None and not self._connection.closed

    def listen(self) -> None:
        self.close()
        try:
            connection = psycopg.connect(
                self.conninfo,
                autocommit=True,
                connect_timeout=self.connect_timeout_seconds,
            )
        except psycopg.Error as error:
            raise NotificationChannelError(
                f"Failed to connect listener for channel {self.channel!r}: {error}",
            ) from error
        try:
            connection.execute(sql.SQL("LISTEN {}").format(sql.Identifier(self.channel)))
        except psycopg.Error as error:
            connection.close()
            raise NotificationChannelError(
                f"Failed to listen on channel {self.channel!r}: {error}",
            ) from error
        self._connection = connection
        logger.info("listening for notifications channel=%s", self.channel)

    def wait(self, timeout: float) -> list[Notification]:
        if self._connection is None or self._connection.closed:
            raise NotificationChannelError(f"Not listening on channel {self.channel!r}")
        try:
            # psycopg yields the whole batch read from the socket before honoring stop_after.
            return [
                Notification(channel=item.channel, payload=item.payload, backend_pid=item.pid)
                for item in self._connection.notifies(timeout=max(0.0, timeout), stop_after=1)
            ]
        except psycopg.Error as error:
            self._discard_connection()
            raise NotificationChannelError(
                f"Lost listener connection for channel {self.channel!r}: {error}",
            ) from error

    def close(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        if connection.closed:
            return
        try:
            connection.execute("UNLISTEN *")
        except psycopg.Error as error:
            logger.warning("UNLISTEN failed channel=%s error=%s", self.channel, error)
        finally:
            connection.close()

    def _discard_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None and not connection.closed:
            connection.close()


class LocalNotificationBus:
    """In-process notification bus for backends without LISTEN/NOTIFY (SQLite).

    Mirrors the database bus semantics: publishing reaches only channels that
    are listening at that moment.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[LocalNotificationChannel] = []

    def subscribe(self, channel: str = DEFAULT_CHANNEL) -> LocalNotificationChannel:
        subscriber = LocalNotificationChannel(self, channel=channel)
        self.register(subscriber)
        return subscriber

    def register(self, subscriber: LocalNotificationChannel) -> None:
        with self._lock:
            if subscriber not in self._subscribers:
                self._subscribers.append(subscriber)

    def publish(self, channel: str, payload: str) -> int:
        """Deliver to current listeners; returns how many received it."""

        with self._lock:
            listeners = [
                subscriber
                for subscriber in self._subscribers
                if subscriber.channel == channel and subscriber.is_listening
            ]
        for subscriber in listeners:
            subscriber.deliver(Notification(channel=channel, payload=payload))
        return len(listeners)

    def unsubscribe(self, subscriber: LocalNotificationChannel) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)


class LocalNotificationChannel:
    """Queue-backed subscription on a :class:`LocalNotificationBus`."""

    def __init__(self, bus: LocalNotificationBus, *, channel: str = DEFAULT_CHANNEL) -> None:
        self.bus = bus
        self.channel = validate_channel_name(channel)
        self._queue: queue.Queue[Notification] = queue.Queue()
        self._listening = False

    @property
    def is_listening(self) -> bool:
        return self._listening

    def listen(self) -> None:
        self.bus.register(self)
        self._listening = True
        logger.info("listening for notifications channel=%s backend=local", self.channel)

    def deliver(self, notification: Notification) -> None:
        if self._listening:
            self._queue.put(notification)

    def wait(self, timeout: float) -> list[Notification]:
        if not self._listening:
            raise NotificationChannelError(f"Not listening on channel {self.channel!r}")
        try:
            first = self._queue.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return []
        received = [first]
        while True:
            try:
                received.append(self._queue.get_nowait())
            except queue.Empty:
                return received

    def close(self) -> None:
        self._listening = False
        self.bus.unsubscribe(self)
