"""Common helpers for storage engines."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

from sqlalchemy import event
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def to_utc_aware_datetime(value: datetime) -> datetime:
    """Interpret naive DB timestamps as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_sqlite_url(database_url: str) -> bool:
    return make_url(database_url).get_backend_name() == "sqlite"


def build_engine(database_url: str, *, busy_timeout_ms: int = 5_000) -> Engine:
    """Build SQLAlchemy engine with the queue's connection policy.

    PostgreSQL uses the regular pool. SQLite has no row locks, so every
    transaction is opened with ``BEGIN IMMEDIATE``: claimants serialize on the
    database write lock instead of skipping locked rows.
    """

    if not is_sqlite_url(database_url):
        # Naive TIMESTAMP columns are read back as UTC.
        return create_engine(
            database_url,
            pool_pre_ping=True,
            connect_args={"options": "-c timezone=UTC"},
        )

    engine = create_engine(
        database_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    event.listen(engine, "begin", _begin_immediate)
    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    # Let SQLAlchemy emit BEGIN itself.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()


def _begin_immediate(connection: Connection) -> None:
    connection.exec_driver_sql("BEGIN IMMEDIATE")
