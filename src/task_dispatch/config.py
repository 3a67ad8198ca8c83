"""Runtime configuration for the dispatcher and producer processes."""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field

from sqlalchemy.engine import URL, make_url

from task_dispatch.storage.notify_trigger import DEFAULT_CHANNEL, validate_channel_name

SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})


@dataclass(slots=True)
class ConnectionSettings:
    """Connection descriptor for the relational store."""

    host: str = "127.0.0.1"
    port: int = 9932
    user: str = "postgres"
    password: str = "postgres"
    database: str = "postgres"
    sslmode: str = "disable"
    url: str | None = None

    def sqlalchemy_url(self) -> str:
        """SQLAlchemy URL; an explicit ``url`` wins over the discrete fields."""

        if self.url:
            parsed = make_url(self.url)
            if parsed.drivername == "postgresql":
                parsed = parsed.set(drivername="postgresql+psycopg")
            return parsed.render_as_string(hide_password=False)
        return URL.create(
            "postgresql+psycopg",
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
            query={"sslmode": self.sslmode},
        ).render_as_string(hide_password=False)

    def libpq_conninfo(self) -> str:
        """Connection URI for the psycopg listener connection."""

        parsed = make_url(self.sqlalchemy_url())
        if parsed.get_backend_name() != "postgresql":
            raise ValueError(
                f"LISTEN/NOTIFY requires PostgreSQL, got backend {parsed.get_backend_name()!r}.",
            )
        return parsed.set(drivername="postgresql").render_as_string(hide_password=False)

    @property
    def is_postgres(self) -> bool:
        return make_url(self.sqlalchemy_url()).get_backend_name() == "postgresql"


@dataclass(slots=True)
class DispatcherSettings:
    """Consumer loop settings."""

    channel: str = DEFAULT_CHANNEL
    reconciliation_interval_seconds: float = 10.0
    listener_min_reconnect_seconds: float = 1.0
    listener_max_reconnect_seconds: float = 60.0
    dispatcher_id: str = field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")


@dataclass(slots=True)
class ProducerSettings:
    """Publisher loop settings."""

    interval_seconds: float = 1.0
    task_name: str = "task"
    task_payload: str = "payload"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    producer: ProducerSettings = field(default_factory=ProducerSettings)
    log_level: str = "INFO"
    sqlite_busy_timeout_ms: int = 5_000

    @classmethod
    def from_env(cls, database_url: str | None = None) -> Settings:
        """Load settings from environment with local-development defaults."""

        dispatcher_defaults = DispatcherSettings()
        return cls(
            connection=ConnectionSettings(
                host=os.getenv("TASK_DISPATCH_DB_HOST", "127.0.0.1"),
                port=int(os.getenv("TASK_DISPATCH_DB_PORT", "9932")),
                user=os.getenv("TASK_DISPATCH_DB_USER", "postgres"),
                password=os.getenv("TASK_DISPATCH_DB_PASSWORD", "postgres"),
                database=os.getenv("TASK_DISPATCH_DB_NAME", "postgres"),
                sslmode=os.getenv("TASK_DISPATCH_DB_SSLMODE", "disable"),
                url=database_url or os.getenv("TASK_DISPATCH_DATABASE_URL") or None,
            ),
            dispatcher=DispatcherSettings(
                channel=os.getenv("TASK_DISPATCH_CHANNEL", DEFAULT_CHANNEL),
                reconciliation_interval_seconds=float(
                    os.getenv("TASK_DISPATCH_RECONCILIATION_INTERVAL_SECONDS", "10"),
                ),
                listener_min_reconnect_seconds=float(
                    os.getenv("TASK_DISPATCH_LISTENER_MIN_RECONNECT_SECONDS", "1"),
                ),
                listener_max_reconnect_seconds=float(
                    os.getenv("TASK_DISPATCH_LISTENER_MAX_RECONNECT_SECONDS", "60"),
                ),
                dispatcher_id=os.getenv(
                    "TASK_DISPATCH_DISPATCHER_ID",
                    dispatcher_defaults.dispatcher_id,
                ),
            ),
            producer=ProducerSettings(
                interval_seconds=float(os.getenv("TASK_DISPATCH_PUBLISH_INTERVAL_SECONDS", "1")),
                task_name=os.getenv("TASK_DISPATCH_TASK_NAME", "task"),
                task_payload=os.getenv("TASK_DISPATCH_TASK_PAYLOAD", "payload"),
            ),
            log_level=os.getenv("TASK_DISPATCH_LOG_LEVEL", "INFO").upper(),
            sqlite_busy_timeout_ms=int(os.getenv("TASK_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )

    @property
    def database_url(self) -> str:
        return self.connection.sqlalchemy_url()

    def validate(self) -> None:
        """Raise configuration error for values the loops cannot run with."""

        if self.connection.sslmode not in SSL_MODES:
            raise ValueError(
                f"TASK_DISPATCH_DB_SSLMODE must be one of {sorted(SSL_MODES)}, "
                f"got {self.connection.sslmode!r}.",
            )
        validate_channel_name(self.dispatcher.channel)
        if self.dispatcher.reconciliation_interval_seconds <= 0:
            raise ValueError("TASK_DISPATCH_RECONCILIATION_INTERVAL_SECONDS must be > 0.")
        if self.dispatcher.listener_min_reconnect_seconds <= 0:
            raise ValueError("TASK_DISPATCH_LISTENER_MIN_RECONNECT_SECONDS must be > 0.")
        if (
            self.dispatcher.listener_max_reconnect_seconds
            < self.dispatcher.listener_min_reconnect_seconds
        ):
            raise ValueError(
                "TASK_DISPATCH_LISTENER_MAX_RECONNECT_SECONDS must be >= "
                "TASK_DISPATCH_LISTENER_MIN_RECONNECT_SECONDS.",
            )
        if self.producer.interval_seconds <= 0:
            raise ValueError("TASK_DISPATCH_PUBLISH_INTERVAL_SECONDS must be > 0.")
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"Unknown TASK_DISPATCH_LOG_LEVEL: {self.log_level!r}")
