"""CLI entrypoint for annotation-queue."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from annotation_queue import __version__
from annotation_queue.intake.controllers import IntakeCliController, RowStageCommand
from annotation_queue.queue.controllers import (
    TaskActionCommand,
    TaskAssignCommand,
    TaskAssignmentLogCommand,
    TaskCreateCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskQueueCliController,
    TaskStatsCommand,
    TaskUserCommand,
)
from annotation_queue.queue.errors import TaskQueueError
from annotation_queue.queue.models import AssignmentMethod, TaskStatus

click.rich_click.USE_MARKDOWN = True
INTAKE_CONTROLLER = IntakeCliController()
TASK_CONTROLLER = TaskQueueCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
token_option = click.option(
    "--token",
    default=None,
    help="Concurrency token from the last read; rejected if the task changed since.",
)


@click.group()
@click.version_option(version=__version__, prog_name="annotation-queue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for queue diagnostics written to stderr.",
)
def annotation_queue(log_level: str) -> None:
    """Annotation task queue CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@annotation_queue.group()
def rows() -> None:
    """Import row staging commands."""


@rows.command("stage")
@db_path_option
@click.option("--job-id", required=True, help="Import job id the rows belong to.")
@click.option(
    "--file",
    "rows_file",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="JSON list of rows with `status`, `resource_status` and `row_data`.",
)
def rows_stage(db_path: Path | None, job_id: str, rows_file: Path) -> None:
    """Stage validated import rows for a job."""

    _emit_lines(
        _run(
            INTAKE_CONTROLLER.stage_rows,
            RowStageCommand(db_path=db_path, job_id=job_id, rows_file=rows_file),
        ),
    )


@annotation_queue.group()
def tasks() -> None:
    """Task creation, assignment and lifecycle commands."""


@tasks.command("create")
@db_path_option
@click.option("--job-id", required=True, help="Import job whose valid rows become tasks.")
def tasks_create(db_path: Path | None, job_id: str) -> None:
    """Create pending tasks from a job's validated rows (idempotent)."""

    _emit_lines(
        _run(TASK_CONTROLLER.create_tasks, TaskCreateCommand(db_path=db_path, job_id=job_id)),
    )


@tasks.command("assign")
@db_path_option
@click.option(
    "--user-id",
    "user_ids",
    multiple=True,
    required=True,
    help="Annotator id. Repeat for each annotator in the batch.",
)
@click.option(
    "--quota",
    type=click.IntRange(min=1),
    default=None,
    help="Max tasks per annotator. Defaults to an even share of the backlog.",
)
def tasks_assign(db_path: Path | None, user_ids: tuple[str, ...], quota: int | None) -> None:
    """Split the unassigned backlog evenly across annotators."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.assign_equal_split,
            TaskAssignCommand(db_path=db_path, user_ids=user_ids, quota_per_user=quota),
        ),
    )


@tasks.command("next")
@db_path_option
@click.option("--user-id", required=True, help="Annotator id.")
def tasks_next(db_path: Path | None, user_id: str) -> None:
    """Claim the highest-priority pending task."""

    _emit_lines(
        _run(TASK_CONTROLLER.claim_next, TaskUserCommand(db_path=db_path, user_id=user_id)),
    )


@tasks.command("start")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--user-id", required=True, help="Annotator holding the task.")
@token_option
def tasks_start(db_path: Path | None, task_id: str, user_id: str, token: str | None) -> None:
    """Begin work on an assigned task."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.start_task,
            TaskActionCommand(db_path=db_path, task_id=task_id, user_id=user_id, token=token),
        ),
    )


@tasks.command("draft")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--user-id", required=True, help="Annotator holding the task.")
@click.option("--payload", "payload_json", required=True, help="Draft JSON object.")
@token_option
def tasks_draft(
    db_path: Path | None,
    task_id: str,
    user_id: str,
    payload_json: str,
    token: str | None,
) -> None:
    """Save a partial annotation without changing status."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.save_draft,
            TaskActionCommand(
                db_path=db_path,
                task_id=task_id,
                user_id=user_id,
                token=token,
                payload_json=payload_json,
            ),
        ),
    )


@tasks.command("submit")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--user-id", required=True, help="Annotator holding the task.")
@click.option("--payload", "payload_json", required=True, help="Annotation JSON object.")
@click.option(
    "--idempotency-key",
    default=None,
    help="Client key; a repeated submit with the same key returns the stored result.",
)
@token_option
def tasks_submit(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    user_id: str,
    payload_json: str,
    idempotency_key: str | None,
    token: str | None,
) -> None:
    """Submit the final annotation and complete the task."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.submit_task,
            TaskActionCommand(
                db_path=db_path,
                task_id=task_id,
                user_id=user_id,
                token=token,
                payload_json=payload_json,
                idempotency_key=idempotency_key,
            ),
        ),
    )


@tasks.command("skip")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--user-id", required=True, help="Annotator holding the task.")
@click.option("--reason", "reason_code", default=None, help="Optional skip reason code.")
@token_option
def tasks_skip(
    db_path: Path | None,
    task_id: str,
    user_id: str,
    reason_code: str | None,
    token: str | None,
) -> None:
    """Return an in-progress task to the shared queue."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.skip_task,
            TaskActionCommand(
                db_path=db_path,
                task_id=task_id,
                user_id=user_id,
                token=token,
                reason_code=reason_code,
            ),
        ),
    )


@tasks.command("abandon")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--actor", required=True, help="Operator performing the action.")
@click.option("--reason", "reason_code", default=None, help="Optional reason code.")
def tasks_abandon(db_path: Path | None, task_id: str, actor: str, reason_code: str | None) -> None:
    """Administratively close a task as skipped."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.abandon_task,
            TaskActionCommand(
                db_path=db_path,
                task_id=task_id,
                user_id=actor,
                reason_code=reason_code,
            ),
        ),
    )


@tasks.command("fail")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--actor", required=True, help="Operator performing the action.")
@click.option("--reason", "reason_code", default=None, help="Optional reason code.")
def tasks_fail(db_path: Path | None, task_id: str, actor: str, reason_code: str | None) -> None:
    """Administratively mark a task as failed."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.fail_task,
            TaskActionCommand(
                db_path=db_path,
                task_id=task_id,
                user_id=actor,
                reason_code=reason_code,
            ),
        ),
    )


@tasks.command("show")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with its event history."""

    _emit_lines(
        _run(TASK_CONTROLLER.show_task, TaskInspectCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option("--assigned-to", default=None, help="Optional assignee filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=None,
    help="Max rows to print. Defaults to ANNOTATION_QUEUE_LIST_LIMIT.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    assigned_to: str | None,
    limit: int | None,
) -> None:
    """List recent tasks."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.list_tasks,
            TaskListCommand(
                db_path=db_path,
                status=status,
                assigned_to=assigned_to,
                limit=limit,
            ),
        ),
    )


@tasks.command("stats")
@db_path_option
def tasks_stats(db_path: Path | None) -> None:
    """Show queue counters by status, assignee and assignment method."""

    _emit_lines(_run(TASK_CONTROLLER.stats, TaskStatsCommand(db_path=db_path)))


@tasks.command("history")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_history(db_path: Path | None, task_id: str) -> None:
    """Show the audit trail of one task, newest first."""

    _emit_lines(
        _run(TASK_CONTROLLER.history, TaskInspectCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("activity")
@db_path_option
@click.option("--user-id", required=True, help="Actor id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=None,
    help="Max events to print. Defaults to ANNOTATION_QUEUE_ACTIVITY_LIMIT.",
)
def tasks_activity(db_path: Path | None, user_id: str, limit: int | None) -> None:
    """Show recent events triggered by one user."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.activity,
            TaskUserCommand(db_path=db_path, user_id=user_id, limit=limit),
        ),
    )


@tasks.command("assignments")
@db_path_option
@click.option("--user-id", default=None, help="Optional assignee filter.")
@click.option(
    "--method",
    type=click.Choice([method.value for method in AssignmentMethod]),
    default=None,
    help="Optional assignment method filter.",
)
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max records.")
def tasks_assignments(
    db_path: Path | None,
    user_id: str | None,
    method: str | None,
    limit: int | None,
) -> None:
    """Show the append-only assignment log."""

    _emit_lines(
        _run(
            TASK_CONTROLLER.assignments,
            TaskAssignmentLogCommand(
                db_path=db_path,
                user_id=user_id,
                method=method,
                limit=limit,
            ),
        ),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except TaskQueueError as error:
        raise click.ClickException(f"[{error.error_code}] {error.message}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    annotation_queue()
