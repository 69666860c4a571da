"""Domain models for the annotation task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TaskEventType(str, Enum):
    """Audit event kinds derived from lifecycle transitions."""

    CREATED = "created"
    STARTED = "started"
    DRAFT_SAVED = "draft_saved"
    COMPLETED = "completed"
    SKIPPED_TO_QUEUE = "skipped_to_queue"
    FAILED = "failed"
    UPDATED = "updated"


class AssignmentMethod(str, Enum):
    """How a task ended up with its assignee."""

    EQUAL_SPLIT = "equal_split"
    PULL_QUEUE = "pull_queue"


class SkipReason(str, Enum):
    """Reason codes for rows the creation pipeline did not turn into tasks."""

    ASSET_UNAVAILABLE = "asset_unavailable"
    ALREADY_EXISTS = "already_exists"
    INVALID_VALUE = "invalid_value"
    INVALID_PAYLOAD = "invalid_payload"
    CREATION_ERROR = "creation_error"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for inserting one pending task."""

    request_id: str
    scan_type: str
    payload_url: str
    vendor_output: dict[str, Any]
    confidence: float | None = None
    job_id: str | None = None
    import_row_id: str | None = None
    assignee_hint: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view returned to callers."""

    task_id: str
    request_id: str
    job_id: str | None
    import_row_id: str | None
    scan_type: str
    payload_url: str
    vendor_output: dict[str, Any]
    confidence: float | None
    assignee_hint: str | None
    status: TaskStatus
    assigned_to: str | None
    assigned_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    duration_ms: int | None
    skip_count: int
    draft: dict[str, Any] | None
    annotation: dict[str, Any] | None
    submit_idempotency_key: str | None
    version: int
    concurrency_token: str
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TransitionContext:
    """Who is moving a task and with what, for the audit trail."""

    actor: str | None = None
    payload: dict[str, Any] | None = None
    is_draft: bool = False
    expected_token: str | None = None
    expected_assignee: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(slots=True)
class TaskFieldUpdates:
    """Operation-specific column changes applied together with a transition."""

    draft: dict[str, Any] | None = None
    clear_draft: bool = False
    annotation: dict[str, Any] | None = None
    submit_idempotency_key: str | None = None
    mark_started: bool = False
    mark_completed: bool = False
    return_to_queue: bool = False


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: TaskEventType
    actor: str | None
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    payload: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(slots=True)
class UserActivityView:
    """Task event joined with the business key of its task."""

    event: TaskEventView
    request_id: str
    scan_type: str


@dataclass(slots=True)
class TaskAssignmentView:
    """One append-only claim record."""

    assignment_id: int
    task_id: str
    request_id: str
    assigned_to: str
    method: AssignmentMethod
    priority_score: float | None
    assigned_at: datetime


@dataclass(slots=True)
class TaskCreationResult:
    """Outcome of one creation pass over a job's validated rows."""

    total_rows: int = 0
    created: int = 0
    skipped: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)

    def record_skip(self, reason: SkipReason) -> None:
        self.skipped += 1
        self.skip_reasons[reason.value] = self.skip_reasons.get(reason.value, 0) + 1


@dataclass(slots=True)
class UserAssignmentCount:
    user_id: str
    count: int


@dataclass(slots=True)
class EqualSplitResult:
    """Per-user counts from one equal-split batch."""

    total_tasks: int = 0
    assignments: list[UserAssignmentCount] = field(default_factory=list)


@dataclass(slots=True)
class TaskStats:
    """Queue snapshot counters."""

    total: int
    unassigned: int
    by_status: dict[str, int]
    by_assignee: dict[str, int]
    by_method: dict[str, int]
