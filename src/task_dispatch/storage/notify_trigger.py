"""Insert-time notification hook for PostgreSQL.

Every committed insert into ``tasks`` publishes the new row id (as text) on a
notification channel. ``pg_notify`` is transactional: the event is delivered
on commit and dropped on rollback.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy.engine import Engine

from task_dispatch.dispatch.errors import InvalidChannelNameError
from task_dispatch.storage.sqlmodel_models import TASKS_TABLE

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "tasks_inserted"
TRIGGER_NAME = "tasks_after_insert_trigger"

_CHANNEL_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


def validate_channel_name(channel: str) -> str:
    """Return the channel name if it is a plain lowercase SQL identifier."""

    if not _CHANNEL_NAME_RE.match(channel):
        raise InvalidChannelNameError(
            f"Invalid notification channel name: {channel!r}. "
            "Expected a lowercase identifier of letters, digits and underscores.",
        )
    return channel


def notify_trigger_statements(channel: str = DEFAULT_CHANNEL) -> tuple[str, str]:
    """SQL for the trigger function and the trigger itself.

    The function is replaced in place; trigger creation swallows
    ``duplicate_object`` so re-running setup is harmless.
    """

    validate_channel_name(channel)
    function_sql = f"""
CREATE OR REPLACE FUNCTION {TRIGGER_NAME}()
RETURNS TRIGGER AS $$
BEGIN
  PERFORM pg_notify('{channel}', NEW.id::text);
  RETURN NULL;
END;
$$
LANGUAGE plpgsql
"""
    trigger_sql = f"""
DO
$$BEGIN
  CREATE TRIGGER {TRIGGER_NAME}
  AFTER INSERT ON {TASKS_TABLE}
  FOR EACH ROW EXECUTE PROCEDURE {TRIGGER_NAME}();
EXCEPTION
  WHEN duplicate_object THEN
    NULL;
END;$$
"""
    return function_sql, trigger_sql


def install_notify_trigger(engine: Engine, *, channel: str = DEFAULT_CHANNEL) -> bool:
    """Install the insert trigger; returns False on backends without a notification bus."""

    if engine.dialect.name != "postgresql":
        logger.info(
            "skipping notify trigger dialect=%s (no native notification bus)",
            engine.dialect.name,
        )
        return False

    logger.info("creating notify trigger if needed channel=%s", channel)
    with engine.begin() as connection:
        for statement in notify_trigger_statements(channel):
            connection.exec_driver_sql(statement)
    return True
