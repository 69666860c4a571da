"""Controllers for task queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from annotation_queue.config import Settings
from annotation_queue.intake.repository import ImportRowRepository
from annotation_queue.queue.errors import TaskValidationError
from annotation_queue.queue.models import (
    AssignmentMethod,
    TaskEventView,
    TaskStatus,
    TaskView,
    TransitionContext,
)
from annotation_queue.queue.repository import TaskRepository
from annotation_queue.queue.services import TaskQueueService


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for creating tasks from a job's validated rows."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class TaskAssignCommand:
    """CLI input for an equal-split batch."""

    db_path: Path | None
    user_ids: tuple[str, ...]
    quota_per_user: int | None


@dataclass(slots=True)
class TaskUserCommand:
    """CLI input for per-user commands (pull claim, activity)."""

    db_path: Path | None
    user_id: str
    limit: int | None = None


@dataclass(slots=True)
class TaskActionCommand:
    """CLI input for annotator actions on one task."""

    db_path: Path | None
    task_id: str
    user_id: str
    token: str | None = None
    payload_json: str | None = None
    idempotency_key: str | None = None
    reason_code: str | None = None


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for single-task reads."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    assigned_to: str | None
    limit: int | None


@dataclass(slots=True)
class TaskAssignmentLogCommand:
    db_path: Path | None
    user_id: str | None
    method: str | None
    limit: int | None


@dataclass(slots=True)
class TaskStatsCommand:
    db_path: Path | None


class TaskQueueCliController:
    """Coordinates creation, assignment, lifecycle and audit CLI operations."""

    def create_tasks(self, command: TaskCreateCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            result = service.create_tasks_from_job(command.job_id)

        lines = [
            f"Job: {command.job_id}",
            f"Rows: {result.total_rows}",
            f"Created: {result.created}",
            f"Skipped: {result.skipped}",
        ]
        for reason, count in sorted(result.skip_reasons.items()):
            lines.append(f"  {reason}: {count}")
        return lines

    def assign_equal_split(self, command: TaskAssignCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            result = service.assign_equal_split(command.user_ids, command.quota_per_user)

        lines = [f"Unassigned pending tasks: {result.total_tasks}"]
        for entry in result.assignments:
            lines.append(f"  {entry.user_id}: {entry.count}")
        return lines

    def claim_next(self, command: TaskUserCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            task = service.claim_next(command.user_id)
        if task is None:
            return ["No pending tasks available."]
        return [f"Claimed: {_task_line(task)}"]

    def start_task(self, command: TaskActionCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            task = service.start_task(command.task_id, command.user_id, token=command.token)
        return [f"Started: {_task_line(task)}"]

    def save_draft(self, command: TaskActionCommand) -> list[str]:
        payload = _parse_payload(command.payload_json)
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            task = service.save_draft(
                command.task_id,
                payload,
                command.user_id,
                token=command.token,
            )
        return [f"Draft saved: {_task_line(task)}"]

    def submit_task(self, command: TaskActionCommand) -> list[str]:
        payload = _parse_payload(command.payload_json)
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            task = service.submit_task(
                command.task_id,
                payload,
                command.user_id,
                command.idempotency_key,
                token=command.token,
                context=TransitionContext(metadata={"source": "cli"}),
            )
        duration = f"{task.duration_ms}ms" if task.duration_ms is not None else "-"
        return [f"Submitted: {_task_line(task)} duration={duration}"]

    def skip_task(self, command: TaskActionCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            task = service.skip_task(
                command.task_id,
                command.user_id,
                command.reason_code,
                token=command.token,
            )
        return [f"Returned to queue: {_task_line(task)} skip_count={task.skip_count}"]

    def abandon_task(self, command: TaskActionCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            task = service.abandon_task(command.task_id, command.user_id, command.reason_code)
        return [f"Abandoned: {_task_line(task)}"]

    def fail_task(self, command: TaskActionCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            task = service.fail_task(command.task_id, command.user_id, command.reason_code)
        return [f"Failed: {_task_line(task)}"]

    def show_task(self, command: TaskInspectCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            task = service.get_task(command.task_id)
            events = service.get_audit_trail(command.task_id)

        return [
            f"Task: {task.task_id}",
            f"Request: {task.request_id}",
            f"Job: {task.job_id or '-'}",
            f"Type: {task.scan_type}",
            f"Status: {task.status.value}",
            f"Assigned to: {task.assigned_to or '-'}",
            f"Confidence: {_format_confidence(task.confidence)}",
            f"Skips: {task.skip_count}",
            f"Token: {task.concurrency_token}",
            f"Payload URL: {task.payload_url}",
            f"Draft: {_dump(task.draft)}",
            f"Annotation: {_dump(task.annotation)}",
            f"Events: {len(events)}",
            *[f"  {_event_line(event)}" for event in events],
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        status = _parse_status(command.status)
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            tasks = service.list_tasks(
                status=status,
                assigned_to=command.assigned_to,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def stats(self, command: TaskStatsCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            stats = service.get_task_stats()

        lines = [f"Total: {stats.total}", f"Unassigned: {stats.unassigned}", "By status:"]
        lines.extend(f"  {status}: {count}" for status, count in stats.by_status.items())
        lines.append("By assignee:")
        lines.extend(
            f"  {user}: {count}" for user, count in sorted(stats.by_assignee.items())
        )
        lines.append("By method:")
        lines.extend(f"  {method}: {count}" for method, count in sorted(stats.by_method.items()))
        return lines

    def history(self, command: TaskInspectCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            events = service.get_audit_trail(command.task_id)

        lines = [f"Events: {len(events)}"]
        lines.extend(f"  {_event_line(event)}" for event in events)
        return lines

    def activity(self, command: TaskUserCommand) -> list[str]:
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            entries = service.get_user_activity(command.user_id, command.limit)

        lines = [f"Activity for {command.user_id}: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {_event_line(entry.event)} request={entry.request_id} type={entry.scan_type}",
            )
        return lines

    def assignments(self, command: TaskAssignmentLogCommand) -> list[str]:
        method = AssignmentMethod(command.method) if command.method else None
        with _service(Settings.from_env(db_path=command.db_path)) as service:
            records = service.get_assignment_log(
                user_id=command.user_id,
                method=method,
                limit=command.limit,
            )

        lines = [f"Assignments: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record.assigned_at.isoformat()} {record.task_id} "
                f"request={record.request_id} user={record.assigned_to} "
                f"method={record.method.value} "
                f"priority={_format_confidence(record.priority_score)}",
            )
        return lines


@contextmanager
def _service(settings: Settings) -> Iterator[TaskQueueService]:
    settings.validate()
    repository = TaskRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    rows = ImportRowRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield TaskQueueService(repository=repository, source=rows, settings=settings)
    finally:
        rows.close()
        repository.close()


def _parse_payload(raw: str | None) -> dict[str, Any]:
    if raw is None:
        raise TaskValidationError(["--payload is required"])
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise TaskValidationError([f"payload is not valid JSON: {error.msg}"]) from error
    if not isinstance(payload, dict):
        raise TaskValidationError(["payload must be a JSON object"])
    return payload


def _parse_status(raw: str | None) -> TaskStatus | None:
    if raw is None:
        return None
    return TaskStatus(raw)


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} request={task.request_id} type={task.scan_type} "
        f"status={task.status.value} assigned_to={task.assigned_to or '-'} "
        f"token={task.concurrency_token}"
    )


def _event_line(event: TaskEventView) -> str:
    return (
        f"{event.created_at.isoformat()} {event.event_type.value} "
        f"{event.status_from.value if event.status_from else '-'} -> "
        f"{event.status_to.value if event.status_to else '-'} "
        f"actor={event.actor or '-'}"
    )


def _format_confidence(value: float | None) -> str:
    return "-" if value is None else f"{value:.3f}"


def _dump(value: dict[str, Any] | None) -> str:
    return "-" if value is None else json.dumps(value, ensure_ascii=False, sort_keys=True)
