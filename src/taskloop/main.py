"""CLI entrypoint for taskloop."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from taskloop import __version__
from taskloop.errors import RemoteStoreError, TaskloopError, format_error
from taskloop.logging_setup import setup_logging
from taskloop.tasks.controllers import (
    TaskDependencyCommand,
    TaskNewCommand,
    TaskNextCommand,
    TaskPriorityCommand,
    TaskResetCommand,
    TasksBackendCommand,
    TasksCliController,
    TaskShowCommand,
    TasksListCommand,
    TaskWorkCommand,
)
from taskloop.tasks.models import Priority, TaskStatus

click.rich_click.USE_MARKDOWN = True
TASKS_CONTROLLER = TasksCliController()
T = TypeVar("T")

_PRIORITIES = click.Choice([priority.value for priority in Priority])
_STATUSES = click.Choice([status.value for status in TaskStatus])
_tasks_file_option = click.option(
    "--tasks-file",
    type=click.Path(path_type=Path),
    default=None,
    help="JSON tasks file (defaults to TASKLOOP_TASKS_FILE).",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskloop")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def taskloop(verbose: bool) -> None:
    """Task backlog and resilience tooling."""

    setup_logging(verbose=verbose)


@taskloop.group()
def tasks() -> None:
    """Task backlog commands."""


@tasks.command("list")
@_tasks_file_option
@click.option("--status", type=_STATUSES, default=None, help="Only tasks in this status.")
@click.option("--pending", "pending_only", is_flag=True, help="Only eligible tasks, in pick order.")
@click.option("--feature", default=None, help="Only tasks of this feature.")
@click.option("--include-blocked", is_flag=True, help="With --pending, keep blocked tasks.")
def tasks_list(
    tasks_file: Path | None,
    status: str | None,
    pending_only: bool,
    feature: str | None,
    include_blocked: bool,
) -> None:
    """List tasks."""

    _emit(
        lambda: TASKS_CONTROLLER.list_tasks(
            TasksListCommand(
                tasks_file=tasks_file,
                status=status,
                pending_only=pending_only,
                feature=feature,
                include_blocked=include_blocked,
            ),
        ),
    )


@tasks.command("show")
@_tasks_file_option
@click.argument("task_id")
def tasks_show(tasks_file: Path | None, task_id: str) -> None:
    """Show one task with its events."""

    _emit(
        lambda: TASKS_CONTROLLER.show_task(TaskShowCommand(tasks_file=tasks_file, task_id=task_id)),
    )


@tasks.command("next")
@_tasks_file_option
@click.option("--feature", default=None, help="Only tasks of this feature.")
@click.option("--priority", type=_PRIORITIES, default=None, help="Only tasks of this priority.")
@click.option(
    "--retry-cooldown-ms",
    type=click.IntRange(min=0),
    default=None,
    help="Make failed tasks eligible again after this many milliseconds.",
)
@click.option("--start-from", default=None, help="Skip eligible tasks ordered before this id.")
@click.option("--claim", is_flag=True, help="Mark the task in-progress.")
def tasks_next(  # noqa: PLR0913
    tasks_file: Path | None,
    feature: str | None,
    priority: str | None,
    retry_cooldown_ms: int | None,
    start_from: str | None,
    claim: bool,
) -> None:
    """Show (or claim) the next eligible task."""

    _emit(
        lambda: TASKS_CONTROLLER.next_task(
            TaskNextCommand(
                tasks_file=tasks_file,
                feature=feature,
                priority=priority,
                retry_cooldown_ms=retry_cooldown_ms,
                start_from=start_from,
                claim=claim,
            ),
        ),
    )


@tasks.command("new")
@_tasks_file_option
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Markdown description.")
@click.option(
    "--priority",
    type=_PRIORITIES,
    default=Priority.MEDIUM.value,
    show_default=True,
    help="Task priority.",
)
@click.option("--feature", default=None, help="Feature tag; also the id prefix.")
@click.option("--parent", "parent_id", default=None, help="Create as a sub-task of this id.")
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Task id this task waits for. Can be repeated.",
)
def tasks_new(  # noqa: PLR0913
    tasks_file: Path | None,
    title: str,
    description: str,
    priority: str,
    feature: str | None,
    parent_id: str | None,
    depends_on: tuple[str, ...],
) -> None:
    """Create a task."""

    _emit(
        lambda: TASKS_CONTROLLER.new_task(
            TaskNewCommand(
                tasks_file=tasks_file,
                title=title,
                description=description,
                priority=priority,
                feature=feature,
                parent_id=parent_id,
                depends_on=depends_on,
            ),
        ),
    )


@tasks.command("reset")
@_tasks_file_option
@click.argument("task_id", required=False)
@click.option("--all-in-progress", is_flag=True, help="Reset every in-progress task.")
def tasks_reset(tasks_file: Path | None, task_id: str | None, all_in_progress: bool) -> None:
    """Return a task to pending."""

    _emit(
        lambda: TASKS_CONTROLLER.reset_task(
            TaskResetCommand(
                tasks_file=tasks_file,
                task_id=task_id,
                all_in_progress=all_in_progress,
            ),
        ),
    )


@tasks.command("priority")
@_tasks_file_option
@click.argument("task_id")
@click.argument("priority", type=_PRIORITIES)
def tasks_priority(tasks_file: Path | None, task_id: str, priority: str) -> None:
    """Change a task's priority."""

    _emit(
        lambda: TASKS_CONTROLLER.set_priority(
            TaskPriorityCommand(tasks_file=tasks_file, task_id=task_id, priority=priority),
        ),
    )


@tasks.command("depend")
@_tasks_file_option
@click.argument("task_id")
@click.argument("depends_on_id")
def tasks_depend(tasks_file: Path | None, task_id: str, depends_on_id: str) -> None:
    """Make TASK_ID wait for DEPENDS_ON_ID."""

    _emit(
        lambda: TASKS_CONTROLLER.add_dependency(
            TaskDependencyCommand(
                tasks_file=tasks_file,
                task_id=task_id,
                depends_on_id=depends_on_id,
            ),
        ),
    )


@tasks.command("undepend")
@_tasks_file_option
@click.argument("task_id")
@click.argument("depends_on_id")
def tasks_undepend(tasks_file: Path | None, task_id: str, depends_on_id: str) -> None:
    """Remove a dependency edge."""

    _emit(
        lambda: TASKS_CONTROLLER.remove_dependency(
            TaskDependencyCommand(
                tasks_file=tasks_file,
                task_id=task_id,
                depends_on_id=depends_on_id,
            ),
        ),
    )


@tasks.command("work")
@_tasks_file_option
@click.option(
    "--command",
    "worker_command",
    required=True,
    help="Command run per task; `{task_id}` and `{title}` are substituted.",
)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option("--feature", default=None, help="Only claim tasks of this feature.")
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Kill the command after this many seconds.",
)
def tasks_work(  # noqa: PLR0913
    tasks_file: Path | None,
    worker_command: str,
    once: bool,
    max_tasks: int | None,
    feature: str | None,
    timeout_seconds: float | None,
) -> None:
    """Claim tasks and run a command for each, recording the outcome."""

    _emit(
        lambda: TASKS_CONTROLLER.run_worker(
            TaskWorkCommand(
                tasks_file=tasks_file,
                command=worker_command,
                once=once,
                max_tasks=max_tasks,
                feature=feature,
                timeout_seconds=timeout_seconds,
            ),
        ),
    )


@tasks.command("dead-letter")
@_tasks_file_option
def tasks_dead_letter(tasks_file: Path | None) -> None:
    """List quarantined tasks."""

    _emit(lambda: TASKS_CONTROLLER.dead_letter(TasksBackendCommand(tasks_file=tasks_file)))


@tasks.command("ping")
@_tasks_file_option
def tasks_ping(tasks_file: Path | None) -> None:
    """Check that the configured backend is reachable."""

    ok, lines = _guard(lambda: TASKS_CONTROLLER.ping(TasksBackendCommand(tasks_file=tasks_file)))
    _emit_lines(lines)
    if not ok:
        raise click.ClickException("Backend ping failed.")


def _emit(produce: Callable[[], list[str]]) -> None:
    _emit_lines(_guard(produce))


def _guard(produce: Callable[[], T]) -> T:
    try:
        return produce()
    except (TaskloopError, RemoteStoreError) as error:
        raise click.ClickException("\n".join(format_error(error))) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskloop()
