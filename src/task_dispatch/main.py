"""CLI entrypoint for task-dispatch."""

from collections.abc import Callable

import rich_click as click

from task_dispatch import __version__
from task_dispatch.dispatch.controllers import (
    DispatchCliController,
    EnqueueCommand,
    InspectTaskCommand,
    ListTasksCommand,
    RunCommand,
    RunMode,
    SetupCommand,
)
from task_dispatch.dispatch.errors import TaskDispatchError

click.rich_click.USE_MARKDOWN = True
DISPATCH_CONTROLLER = DispatchCliController()

_DATABASE_URL_HELP = (
    "SQLAlchemy database URL. Overrides TASK_DISPATCH_DATABASE_URL and the "
    "TASK_DISPATCH_DB_* connection fields."
)


@click.group()
@click.version_option(version=__version__, prog_name="task-dispatch")
def task_dispatch() -> None:
    """Durable task queue with LISTEN/NOTIFY wake-ups and reconciliation scans."""


@task_dispatch.command("run")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in RunMode], case_sensitive=True),
    default=RunMode.CONSUMER.value,
    show_default=True,
    help="Process role: `consumer` runs the dispatcher, `publisher` inserts a task per interval.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Publisher only: stop after this many inserts (default: run forever).",
)
def run(database_url: str | None, mode: str, max_tasks: int | None) -> None:
    """Bootstrap the store, then run the consumer or publisher loop until interrupted."""

    _emit_controller_lines(
        lambda: DISPATCH_CONTROLLER.run(
            RunCommand(
                database_url=database_url,
                mode=mode,
                max_tasks=max_tasks,
            ),
        ),
    )


@task_dispatch.command("setup")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
def setup(database_url: str | None) -> None:
    """Create the tasks table and the insert notification trigger (idempotent)."""

    _emit_controller_lines(
        lambda: DISPATCH_CONTROLLER.setup(SetupCommand(database_url=database_url)),
    )


@task_dispatch.command("enqueue")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option("--name", default="task", show_default=True, help="Task name.")
@click.option("--payload", default="payload", show_default=True, help="Opaque task payload.")
def enqueue(database_url: str | None, name: str, payload: str) -> None:
    """Insert one task."""

    _emit_controller_lines(
        lambda: DISPATCH_CONTROLLER.enqueue(
            EnqueueCommand(
                database_url=database_url,
                name=name,
                payload=payload,
            ),
        ),
    )


@task_dispatch.command("tasks")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option(
    "--status",
    type=click.Choice(["pending", "executed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks(database_url: str | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _emit_controller_lines(
        lambda: DISPATCH_CONTROLLER.list_tasks(
            ListTasksCommand(
                database_url=database_url,
                status=status.lower() if status is not None else None,
                limit=limit,
            ),
        ),
    )


@task_dispatch.command("inspect")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option("--task-id", type=click.IntRange(min=1), required=True, help="Task id.")
def inspect(database_url: str | None, task_id: int) -> None:
    """Show one task."""

    _emit_controller_lines(
        lambda: DISPATCH_CONTROLLER.inspect_task(
            InspectTaskCommand(
                database_url=database_url,
                task_id=task_id,
            ),
        ),
    )


def _emit_controller_lines(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except TaskDispatchError as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_dispatch()
