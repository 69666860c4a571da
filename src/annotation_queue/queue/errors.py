"""Typed errors raised by the task queue core."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from annotation_queue.queue.models import TaskStatus


class TaskQueueError(Exception):
    """Base error; carries a stable code and structured details for API responses."""

    error_code = "TASK_QUEUE_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        return {}

    def to_payload(self) -> dict[str, Any]:
        """Render the error body returned to HTTP or CLI callers."""

        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details(),
        }


class StateTransitionError(TaskQueueError):
    """Raised when an edge is not part of the task lifecycle graph."""

    error_code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        from_status: TaskStatus,
        to_status: TaskStatus,
        allowed: Sequence[TaskStatus],
        message: str | None = None,
    ) -> None:
        allowed_text = ", ".join(status.value for status in allowed) or "none"
        super().__init__(
            message
            or (
                f"Invalid state transition from '{from_status.value}' to "
                f"'{to_status.value}'. Allowed transitions: {allowed_text}"
            ),
        )
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = tuple(allowed)

    def details(self) -> dict[str, Any]:
        return {
            "current_status": self.from_status.value,
            "attempted_status": self.to_status.value,
            "allowed_transitions": [status.value for status in self.allowed],
        }


class ConcurrencyConflictError(TaskQueueError):
    """Raised when a caller's concurrency token no longer matches the task."""

    error_code = "TASK_MODIFIED"

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__("Task has been modified by another user")
        self.expected = expected
        self.actual = actual

    def details(self) -> dict[str, Any]:
        return {"expected_version": self.expected, "current_version": self.actual}


class TaskValidationError(TaskQueueError):
    """Raised when a payload or request argument is malformed."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, errors: Sequence[str]) -> None:
        super().__init__("; ".join(errors) or "Invalid input")
        self.errors = tuple(errors)

    def details(self) -> dict[str, Any]:
        return {"errors": list(self.errors)}


class TaskNotFoundError(TaskQueueError):
    """Raised when a task identifier does not exist."""

    error_code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with id '{task_id}' was not found.")
        self.task_id = task_id

    def details(self) -> dict[str, Any]:
        return {"task_id": self.task_id}


class TaskForbiddenError(TaskQueueError):
    """Raised when a user attempts to mutate a task they do not hold."""

    error_code = "FORBIDDEN"

    def __init__(self, task_id: str, user_id: str) -> None:
        super().__init__(f"User '{user_id}' has no access to task '{task_id}'.")
        self.task_id = task_id
        self.user_id = user_id

    def details(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "user_id": self.user_id}
