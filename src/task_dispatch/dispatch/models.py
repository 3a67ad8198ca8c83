"""Domain models for the task queue and its dispatch loop."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Task state as derived from ``executed_at``; not persisted."""

    PENDING = "pending"
    EXECUTED = "executed"


@dataclass(slots=True, frozen=True)
class TaskView:
    """Readable task view for CLI and dispatcher logic."""

    task_id: int
    name: str
    payload: str | None
    created_at: datetime | None
    executed_at: datetime | None

    @property
    def is_pending(self) -> bool:
        return self.executed_at is None

    @property
    def status(self) -> TaskStatus:
        return TaskStatus.PENDING if self.executed_at is None else TaskStatus.EXECUTED


@dataclass(slots=True, frozen=True)
class Notification:
    """One best-effort insert event received from the notification channel."""

    channel: str
    payload: str
    backend_pid: int | None = None


@dataclass(slots=True)
class ReconciliationSummary:
    """Counters for one reconciliation pass."""

    claimed: int = 0
    executed: int = 0
    failed: int = 0


@dataclass(slots=True)
class DispatcherRunSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    notifications: int = 0
    malformed_notifications: int = 0
    executed: int = 0
    skipped: int = 0
    failed: int = 0
    reconciliation_passes: int = 0
    reconnects: int = 0

    def add_pass(self, summary: ReconciliationSummary) -> None:
        self.reconciliation_passes += 1
        self.executed += summary.executed
        self.failed += summary.failed


@dataclass(slots=True)
class ProducerRunSummary:
    """Aggregate producer counters for CLI reporting."""

    published: int = 0
    failed: int = 0
