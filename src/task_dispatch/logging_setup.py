"""Process-wide logging configuration."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_CONFIGURED_ATTR = "_task_dispatch_handler"


def setup_logging(level: str | int = logging.INFO) -> None:
    """Install a Rich console handler on the root logger.

    Call this once, early in the CLI entrypoint; repeated calls only adjust
    the level.
    """

    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(handler, _CONFIGURED_ATTR, False) for handler in root.handlers):
        return

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        log_time_format="[%X]",
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    setattr(handler, _CONFIGURED_ATTR, True)
    root.addHandler(handler)

    # Engine/driver chatter only when it matters.
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.WARNING)
