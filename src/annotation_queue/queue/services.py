"""Use-case services exposed to the HTTP and CLI layers."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from sqlalchemy.exc import IntegrityError

from annotation_queue.config import Settings
from annotation_queue.intake.sources import ValidatedRowSource
from annotation_queue.queue.annotation import validate_annotation, validate_draft
from annotation_queue.queue.assignment import AssignmentEngine
from annotation_queue.queue.creation import TaskCreationPipeline
from annotation_queue.queue.errors import (
    ConcurrencyConflictError,
    StateTransitionError,
    TaskNotFoundError,
    TaskValidationError,
)
from annotation_queue.queue.models import (
    AssignmentMethod,
    EqualSplitResult,
    TaskAssignmentView,
    TaskCreationResult,
    TaskEventView,
    TaskFieldUpdates,
    TaskStats,
    TaskStatus,
    TaskView,
    TransitionContext,
    UserActivityView,
)
from annotation_queue.queue.repository import TaskRepository
from annotation_queue.queue.state_machine import is_task_immutable

logger = logging.getLogger(__name__)


class TaskQueueService:
    """Coordinates creation, assignment and annotator actions on the task store."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        source: ValidatedRowSource,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.creation = TaskCreationPipeline(
            repository=repository,
            source=source,
            settings=settings.creation,
        )
        self.assignment = AssignmentEngine(repository=repository, settings=settings.assignment)

    def create_tasks_from_job(self, job_id: str) -> TaskCreationResult:
        if not job_id.strip():
            raise TaskValidationError(["job_id must not be empty"])
        return self.creation.create_tasks_from_validated_rows(job_id)

    def assign_equal_split(
        self,
        user_ids: Sequence[str],
        quota_per_user: int | None = None,
    ) -> EqualSplitResult:
        return self.assignment.assign_equal_split(user_ids, quota_per_user)

    def claim_next(self, user_id: str) -> TaskView | None:
        return self.assignment.claim_next(user_id)

    def get_task(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        assigned_to: str | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        return self.repository.list_tasks(
            status=status,
            assigned_to=assigned_to,
            limit=limit or self.settings.assignment.list_limit,
        )

    def start_task(
        self,
        task_id: str,
        user_id: str,
        *,
        token: str | None = None,
        context: TransitionContext | None = None,
    ) -> TaskView:
        return self.repository.execute_state_transition(
            task_id=task_id,
            from_status=TaskStatus.PENDING,
            to_status=TaskStatus.IN_PROGRESS,
            context=_with_actor(context, actor=user_id, token=token),
            updates=TaskFieldUpdates(mark_started=True),
        )

    def save_draft(
        self,
        task_id: str,
        payload: dict[str, Any],
        user_id: str,
        *,
        token: str | None = None,
        context: TransitionContext | None = None,
    ) -> TaskView:
        errors = validate_draft(payload)
        if errors:
            raise TaskValidationError(errors)
        return self.repository.execute_state_transition(
            task_id=task_id,
            from_status=TaskStatus.IN_PROGRESS,
            to_status=TaskStatus.IN_PROGRESS,
            context=_with_actor(
                context,
                actor=user_id,
                token=token,
                payload=payload,
                is_draft=True,
            ),
            updates=TaskFieldUpdates(draft=payload),
        )

    def submit_task(  # noqa: PLR0913
        self,
        task_id: str,
        payload: dict[str, Any],
        user_id: str,
        idempotency_key: str | None = None,
        *,
        token: str | None = None,
        context: TransitionContext | None = None,
    ) -> TaskView:
        """Complete a task with its final annotation.

        A submit repeating an ``idempotency_key`` already stored on this task returns the
        stored task, including when the first submit commits while this one is in flight.
        """

        if idempotency_key:
            previous = self._find_submitted(task_id, idempotency_key)
            if previous is not None:
                return previous

        errors = validate_annotation(
            payload,
            scan_types=self.settings.creation.scan_types,
            settings=self.settings.annotation,
        )
        if errors:
            raise TaskValidationError(errors)

        transition_context = _with_actor(context, actor=user_id, token=token, payload=payload)
        if idempotency_key:
            transition_context.metadata.setdefault("idempotency_key", idempotency_key)
        try:
            return self.repository.execute_state_transition(
                task_id=task_id,
                from_status=TaskStatus.IN_PROGRESS,
                to_status=TaskStatus.COMPLETED,
                context=transition_context,
                updates=TaskFieldUpdates(
                    annotation=payload,
                    clear_draft=True,
                    submit_idempotency_key=idempotency_key or None,
                    mark_completed=True,
                ),
            )
        except (StateTransitionError, ConcurrencyConflictError, IntegrityError):
            if not idempotency_key:
                raise
            previous = self._find_submitted(task_id, idempotency_key)
            if previous is None:
                raise
            return previous

    def skip_task(
        self,
        task_id: str,
        user_id: str,
        reason_code: str | None = None,
        *,
        token: str | None = None,
        context: TransitionContext | None = None,
    ) -> TaskView:
        """Return an in-progress task to the queue, releasing the assignment."""

        transition_context = _with_actor(context, actor=user_id, token=token)
        transition_context.metadata.setdefault("reason_code", reason_code)
        return self.repository.execute_state_transition(
            task_id=task_id,
            from_status=TaskStatus.IN_PROGRESS,
            to_status=TaskStatus.PENDING,
            context=transition_context,
            updates=TaskFieldUpdates(return_to_queue=True, clear_draft=True),
        )

    def abandon_task(
        self,
        task_id: str,
        actor: str,
        reason_code: str | None = None,
    ) -> TaskView:
        """Administratively park a task in the terminal ``skipped`` bucket."""

        return self._administrative_close(task_id, actor, TaskStatus.SKIPPED, reason_code)

    def fail_task(
        self,
        task_id: str,
        actor: str,
        reason_code: str | None = None,
    ) -> TaskView:
        return self._administrative_close(task_id, actor, TaskStatus.FAILED, reason_code)

    def get_task_stats(self) -> TaskStats:
        return self.repository.get_task_stats()

    def get_audit_trail(self, task_id: str) -> list[TaskEventView]:
        return self.repository.get_audit_trail(task_id)

    def get_user_activity(self, user_id: str, limit: int | None = None) -> list[UserActivityView]:
        return self.repository.get_user_activity(
            user_id=user_id,
            limit=limit or self.settings.assignment.activity_limit,
        )

    def get_assignment_log(
        self,
        *,
        user_id: str | None = None,
        method: AssignmentMethod | None = None,
        limit: int | None = None,
    ) -> list[TaskAssignmentView]:
        return self.repository.get_assignment_log(user_id=user_id, method=method, limit=limit)

    def _administrative_close(
        self,
        task_id: str,
        actor: str,
        to_status: TaskStatus,
        reason_code: str | None,
    ) -> TaskView:
        task = self.get_task(task_id)
        if is_task_immutable(task.status):
            raise StateTransitionError(
                task.status,
                to_status,
                (),
                message=f"Task '{task_id}' is '{task.status.value}' and can no longer change",
            )
        logger.warning(
            "Administrative close of task %s: %s -> %s by %s (reason=%s)",
            task_id,
            task.status.value,
            to_status.value,
            actor,
            reason_code,
        )
        return self.repository.execute_state_transition(
            task_id=task_id,
            from_status=task.status,
            to_status=to_status,
            context=TransitionContext(
                actor=actor,
                expected_token=task.concurrency_token,
                metadata={"reason_code": reason_code, "administrative": True},
            ),
            administrative=True,
        )

    def _find_submitted(self, task_id: str, idempotency_key: str) -> TaskView | None:
        previous = self.repository.find_task_by_idempotency_key(idempotency_key)
        if previous is None:
            return None
        if previous.task_id != task_id:
            raise TaskValidationError(
                [f"Idempotency key {idempotency_key!r} was used for another task"],
            )
        logger.info("Replayed submit for task %s (key=%s)", task_id, idempotency_key)
        return previous


def _with_actor(
    context: TransitionContext | None,
    *,
    actor: str,
    token: str | None,
    **changes: Any,
) -> TransitionContext:
    """Copy of ``context`` acting as ``actor``, who must hold the task."""

    base = context or TransitionContext()
    resolved = replace(
        base,
        actor=actor,
        expected_assignee=actor,
        metadata=dict(base.metadata),
        **changes,
    )
    if token is not None:
        resolved.expected_token = token
    return resolved
