"""Persistent task store: insert, claim, fetch and mark executed."""

from __future__ import annotations

import logging
from collections.abc import Collection
from types import TracebackType

from sqlalchemy import func
from sqlalchemy import insert as sa_insert
from sqlalchemy import update as sa_update
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, select
from sqlmodel.sql.expression import SelectOfScalar

from task_dispatch.dispatch.errors import TaskNotFoundError
from task_dispatch.dispatch.models import TaskStatus, TaskView
from task_dispatch.dispatch.notifications import LocalNotificationBus
from task_dispatch.storage.alembic_runner import upgrade_head
from task_dispatch.storage.common import build_engine, to_utc_aware_datetime
from task_dispatch.storage.notify_trigger import (
    DEFAULT_CHANNEL,
    install_notify_trigger,
    validate_channel_name,
)
from task_dispatch.storage.sqlmodel_models import Task

logger = logging.getLogger(__name__)


class TaskClaim:
    """Exclusive hold on one pending task row.

    The row lock lives in the claim's own transaction. ``mark_executed``
    commits it; ``release`` rolls it back and leaves the task pending.
    """

    def __init__(self, *, session: Session, task: TaskView) -> None:
        self._session: Session | None = session
        self.task = task

    @property
    def active(self) -> bool:
        return self._session is not None

    def mark_executed(self) -> bool:
        """Set ``executed_at`` inside the claim transaction and commit."""

        if self._session is None:
            raise RuntimeError(f"Claim on task {self.task.task_id} is already closed.")
        session = self._session
        try:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == self.task.task_id,
                    col(Task.executed_at).is_(None),
                )
                .values(executed_at=func.now()),
            )
            marked = result.rowcount == 1
            session.commit()
        except BaseException:
            self.release()
            raise
        self._session = None
        session.close()
        return marked

    def release(self) -> None:
        """Drop the claim without marking; the task stays pending."""

        if self._session is None:
            return
        session, self._session = self._session, None
        try:
            session.rollback()
        finally:
            session.close()

    def __enter__(self) -> TaskClaim:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()


class TaskStore:
    """Queue persistence facade backed by SQLModel."""

    def __init__(
        self,
        database_url: str,
        *,
        channel: str = DEFAULT_CHANNEL,
        local_bus: LocalNotificationBus | None = None,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.database_url = database_url
        self.channel = validate_channel_name(channel)
        self.local_bus = local_bus
        self.engine = build_engine(database_url, busy_timeout_ms=sqlite_busy_timeout_ms)

    @property
    def has_native_notifications(self) -> bool:
        """Whether inserts notify through a database trigger."""

        return self.engine.dialect.name == "postgresql"

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and install the insert notification hook.

        Both steps are idempotent; run once before any loop starts.
        """

        logger.info("creating tasks table if needed")
        upgrade_head(self.database_url)
        install_notify_trigger(self.engine, channel=self.channel)

    def insert(self, name: str, payload: str | None) -> int:
        """Append a pending task and return its id."""

        with Session(self.engine) as session:
            task_id = session.exec(
                sa_insert(Task).values(name=name, payload=payload).returning(col(Task.id)),
            ).scalar_one()
            session.commit()

        # Only reached after commit, so a failed insert never notifies.
        if not self.has_native_notifications and self.local_bus is not None:
            self.local_bus.publish(self.channel, str(task_id))
        return int(task_id)

    def claim_one_pending(self, *, exclude: Collection[int] = ()) -> TaskClaim | None:
        """Lock one pending task, skipping rows other claimants hold.

        Ids in ``exclude`` are never returned, even when pending and unlocked.
        """

        criteria = [col(Task.executed_at).is_(None)]
        if exclude:
            criteria.append(col(Task.id).not_in(sorted(exclude)))
        return self._claim(*criteria)

    def claim_task(self, task_id: int) -> TaskClaim | None:
        """Lock a specific task if it is still pending and unclaimed.

        Returns None when the row is missing, already executed, or locked by
        another dispatcher.
        """

        return self._claim(col(Task.id) == task_id, col(Task.executed_at).is_(None))

    def fetch(self, task_id: int) -> TaskView:
        """Return one task; raise TaskNotFoundError if it does not exist."""

        with Session(self.engine) as session:
            row = session.exec(select(Task).where(Task.id == task_id)).one_or_none()
            if row is None:
                raise TaskNotFoundError(task_id)
            return _to_task_view(row)

    def mark_executed(self, task_id: int) -> bool:
        """Set ``executed_at`` once; later calls keep the first value."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.executed_at).is_(None),
                )
                .values(executed_at=func.now()),
            )
            marked = result.rowcount == 1
            session.commit()
        return marked

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by derived status."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.id).desc()).limit(limit)
            if status is TaskStatus.PENDING:
                statement = statement.where(col(Task.executed_at).is_(None))
            elif status is TaskStatus.EXECUTED:
                statement = statement.where(col(Task.executed_at).is_not(None))
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def count_pending(self) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count()).select_from(Task).where(col(Task.executed_at).is_(None)),
            ).one()

    def _claim(self, *criteria: ColumnElement[bool]) -> TaskClaim | None:
        session = Session(self.engine)
        try:
            row = session.exec(claim_statement(*criteria)).first()
            if row is None:
                session.rollback()
                session.close()
                return None
            task = _to_task_view(row)
        except BaseException:
            session.close()
            raise
        return TaskClaim(session=session, task=task)


def claim_statement(*criteria: ColumnElement[bool]) -> SelectOfScalar[Task]:
    """One matching row, locked, skipping rows other transactions hold."""

    return (
        select(Task)
        .where(*criteria)
        .order_by(col(Task.id).asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )


def _to_task_view(row: Task) -> TaskView:
    if row.id is None:
        raise RuntimeError("Task row has no id; was it flushed?")
    return TaskView(
        task_id=row.id,
        name=row.name,
        payload=row.payload,
        created_at=to_utc_aware_datetime(row.created_at) if row.created_at is not None else None,
        executed_at=(
            to_utc_aware_datetime(row.executed_at) if row.executed_at is not None else None
        ),
    )
