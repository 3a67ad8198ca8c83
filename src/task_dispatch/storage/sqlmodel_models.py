"""SQLModel ORM tables for the task queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, Text, text
from sqlmodel import Field, SQLModel

TASKS_TABLE = "tasks"


class Task(SQLModel, table=True):
    __tablename__ = TASKS_TABLE  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_executed_at", "executed_at"),)

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    name: str = Field(sa_column=Column(Text, nullable=False))
    payload: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True, server_default=text("CURRENT_TIMESTAMP")),
    )
    # NULL while pending; the only state indicator.
    executed_at: datetime | None = Field(default=None, sa_column=Column(DateTime, nullable=True))
