"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from task_dispatch.dispatch.notifications import LocalNotificationBus
from task_dispatch.dispatch.repository import TaskStore


@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'tasks.db'}"


@pytest.fixture()
def local_bus() -> LocalNotificationBus:
    return LocalNotificationBus()


@pytest.fixture()
def store(database_url: str, local_bus: LocalNotificationBus) -> Iterator[TaskStore]:
    """Initialized SQLite-backed store publishing to ``local_bus``."""
    task_store = TaskStore(database_url, local_bus=local_bus)
    task_store.init_schema()
    try:
        yield task_store
    finally:
        task_store.close()


@pytest.fixture()
def silent_store(database_url: str) -> Iterator[TaskStore]:
    """Store whose inserts never notify anyone."""
    task_store = TaskStore(database_url)
    task_store.init_schema()
    try:
        yield task_store
    finally:
        task_store.close()
