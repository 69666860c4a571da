"""Task lifecycle graph, event derivation and optimistic-concurrency tokens.

All functions here are pure. The mutating half of the state machine,
``TaskRepository.execute_state_transition``, calls into them before it touches the store.
"""

from __future__ import annotations

from collections.abc import Mapping

from annotation_queue.queue.errors import ConcurrencyConflictError, StateTransitionError
from annotation_queue.queue.models import TaskEventType, TaskStatus

ALLOWED_TRANSITIONS: Mapping[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS}),
    # Self-loop is a draft save, back to pending is a skip.
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.PENDING},
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
}

# Only reachable through abandon/fail operations, never through annotator actions.
ADMINISTRATIVE_TRANSITIONS: Mapping[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.SKIPPED, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.SKIPPED, TaskStatus.FAILED}),
}

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED})

_STATUS_ORDER = tuple(TaskStatus)


def get_allowed_transitions(
    status: TaskStatus,
    *,
    administrative: bool = False,
) -> tuple[TaskStatus, ...]:
    """Allowed next states in declaration order, for stable error details."""

    table = ADMINISTRATIVE_TRANSITIONS if administrative else ALLOWED_TRANSITIONS
    allowed = table.get(status, frozenset())
    return tuple(candidate for candidate in _STATUS_ORDER if candidate in allowed)


def validate_state_transition(
    from_status: TaskStatus,
    to_status: TaskStatus,
    *,
    administrative: bool = False,
) -> bool:
    table = ADMINISTRATIVE_TRANSITIONS if administrative else ALLOWED_TRANSITIONS
    return to_status in table.get(from_status, frozenset())


def ensure_valid_transition(
    from_status: TaskStatus,
    to_status: TaskStatus,
    *,
    administrative: bool = False,
) -> None:
    """Raise ``StateTransitionError`` unless the edge is in the lifecycle graph."""

    if not validate_state_transition(from_status, to_status, administrative=administrative):
        raise StateTransitionError(
            from_status,
            to_status,
            get_allowed_transitions(from_status, administrative=administrative),
        )


def is_task_immutable(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def event_type_for_transition(
    from_status: TaskStatus,
    to_status: TaskStatus,
    *,
    is_draft: bool = False,
) -> TaskEventType:
    """Derive the audit event type for one transition."""

    if from_status == TaskStatus.PENDING and to_status == TaskStatus.IN_PROGRESS:
        return TaskEventType.STARTED
    if from_status == TaskStatus.IN_PROGRESS and to_status == TaskStatus.IN_PROGRESS and is_draft:
        return TaskEventType.DRAFT_SAVED
    if from_status == TaskStatus.IN_PROGRESS and to_status == TaskStatus.COMPLETED:
        return TaskEventType.COMPLETED
    if from_status == TaskStatus.IN_PROGRESS and to_status == TaskStatus.PENDING:
        return TaskEventType.SKIPPED_TO_QUEUE
    if to_status == TaskStatus.FAILED:
        return TaskEventType.FAILED
    return TaskEventType.UPDATED


def generate_concurrency_token(version: int) -> str:
    """Render the ETag-style token clients echo back on mutation."""

    return f'"v{version}"'


def validate_concurrency_token(token: str | None, current_version: int) -> None:
    """Raise ``ConcurrencyConflictError`` when a supplied token is stale.

    A missing token skips the check; optimistic locking is opt-in for clients.
    """

    if not token:
        return
    current = generate_concurrency_token(current_version)
    if _strip_token(token) != _strip_token(current):
        raise ConcurrencyConflictError(expected=_strip_token(token), actual=_strip_token(current))


def _strip_token(token: str) -> str:
    value = token.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.replace('"', "")
