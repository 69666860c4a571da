from __future__ import annotations

from collections.abc import Callable
from typing import Any

import allure
import pytest

from annotation_queue.queue.errors import (
    ConcurrencyConflictError,
    StateTransitionError,
    TaskForbiddenError,
    TaskNotFoundError,
    TaskValidationError,
)
from annotation_queue.queue.models import (
    TaskEventType,
    TaskStatus,
    TaskView,
    TransitionContext,
)
from annotation_queue.queue.services import TaskQueueService

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Annotator Workflow"),
]

VALID_ANNOTATION = {
    "scan_type": "meal",
    "result_return": "wrong_result",
    "feedback_correction": ["wrong_food", "wrong_portion_size"],
    "note": "Portion is closer to 200g.",
}


@pytest.fixture()
def claimed_task(service: TaskQueueService, stage_rows) -> TaskView:
    stage_rows("job-svc", "svc-1")
    service.create_tasks_from_job("job-svc")
    task = service.claim_next("annotator")
    assert task is not None
    return task


@pytest.fixture()
def started_task(service: TaskQueueService, claimed_task: TaskView) -> TaskView:
    return service.start_task(claimed_task.task_id, "annotator")


def test_start_moves_assigned_task_to_in_progress(
    service: TaskQueueService,
    claimed_task: TaskView,
) -> None:
    started = service.start_task(
        claimed_task.task_id,
        "annotator",
        token=claimed_task.concurrency_token,
    )

    assert started.status == TaskStatus.IN_PROGRESS
    assert started.started_at is not None
    assert started.concurrency_token != claimed_task.concurrency_token


def test_only_the_assignee_may_act_on_a_task(
    service: TaskQueueService,
    claimed_task: TaskView,
) -> None:
    with pytest.raises(TaskForbiddenError) as raised:
        service.start_task(claimed_task.task_id, "someone-else")

    assert raised.value.to_payload()["error_code"] == "FORBIDDEN"
    assert service.get_task(claimed_task.task_id).status == TaskStatus.PENDING


def test_start_twice_is_an_invalid_transition(
    service: TaskQueueService,
    started_task: TaskView,
) -> None:
    with pytest.raises(StateTransitionError) as raised:
        service.start_task(started_task.task_id, "annotator")

    assert raised.value.details()["current_status"] == "in_progress"


def test_draft_saves_keep_status_and_record_events(
    service: TaskQueueService,
    started_task: TaskView,
) -> None:
    first = service.save_draft(
        started_task.task_id,
        {"result_return": "correct_result"},
        "annotator",
        token=started_task.concurrency_token,
    )
    second = service.save_draft(
        started_task.task_id,
        {"result_return": "wrong_result"},
        "annotator",
        token=first.concurrency_token,
    )

    assert second.status == TaskStatus.IN_PROGRESS
    assert second.draft == {"result_return": "wrong_result"}
    tokens = {started_task.concurrency_token, first.concurrency_token, second.concurrency_token}
    assert len(tokens) == 3

    trail = service.get_audit_trail(started_task.task_id)
    assert [event.event_type for event in trail[:2]] == [
        TaskEventType.DRAFT_SAVED,
        TaskEventType.DRAFT_SAVED,
    ]
    assert trail[0].payload == {"result_return": "wrong_result"}


def test_stale_draft_token_is_rejected(
    service: TaskQueueService,
    started_task: TaskView,
) -> None:
    service.save_draft(started_task.task_id, {"note": "v1"}, "annotator")

    with pytest.raises(ConcurrencyConflictError):
        service.save_draft(
            started_task.task_id,
            {"note": "v2"},
            "annotator",
            token=started_task.concurrency_token,
        )

    assert service.get_task(started_task.task_id).draft == {"note": "v1"}


def test_draft_on_pending_task_is_rejected(
    service: TaskQueueService,
    claimed_task: TaskView,
) -> None:
    with pytest.raises(StateTransitionError):
        service.save_draft(claimed_task.task_id, {"note": "early"}, "annotator")


def test_submit_completes_task_and_records_payload(
    service: TaskQueueService,
    started_task: TaskView,
) -> None:
    service.save_draft(started_task.task_id, {"note": "wip"}, "annotator")

    completed = service.submit_task(
        started_task.task_id,
        VALID_ANNOTATION,
        "annotator",
        context=TransitionContext(ip_address="192.0.2.10", user_agent="review-ui/2.1"),
    )

    assert completed.status == TaskStatus.COMPLETED
    assert completed.annotation == VALID_ANNOTATION
    assert completed.draft is None
    assert completed.completed_at is not None
    assert completed.duration_ms is not None
    assert completed.duration_ms >= 0

    latest = service.get_audit_trail(started_task.task_id)[0]
    assert latest.event_type == TaskEventType.COMPLETED
    assert latest.actor == "annotator"
    assert latest.payload == VALID_ANNOTATION
    assert latest.ip_address == "192.0.2.10"
    assert latest.user_agent == "review-ui/2.1"


def test_completed_task_is_immutable(
    service: TaskQueueService,
    started_task: TaskView,
) -> None:
    service.submit_task(started_task.task_id, VALID_ANNOTATION, "annotator")

    with pytest.raises(StateTransitionError):
        service.save_draft(started_task.task_id, {"note": "late"}, "annotator")
    with pytest.raises(StateTransitionError):
        service.submit_task(started_task.task_id, VALID_ANNOTATION, "annotator")
    events_before = len(service.get_audit_trail(started_task.task_id))
    with pytest.raises(StateTransitionError, match="can no longer change"):
        service.abandon_task(started_task.task_id, "ops")
    assert len(service.get_audit_trail(started_task.task_id)) == events_before


@pytest.mark.parametrize(
    ("payload", "fragment"),
    [
        ({**VALID_ANNOTATION, "scan_type": "selfie"}, "scan_type"),
        ({**VALID_ANNOTATION, "result_return": "maybe"}, "result_return"),
        ({**VALID_ANNOTATION, "feedback_correction": ["wrong_food", "typo"]}, "feedback"),
        ({**VALID_ANNOTATION, "note": "x" * 2001}, "note"),
    ],
)
def test_invalid_annotation_is_rejected_without_side_effects(
    service: TaskQueueService,
    started_task: TaskView,
    payload: dict,
    fragment: str,
) -> None:
    with pytest.raises(TaskValidationError, match=fragment):
        service.submit_task(started_task.task_id, payload, "annotator")

    assert service.get_task(started_task.task_id).status == TaskStatus.IN_PROGRESS


def test_submit_with_same_idempotency_key_is_replayed(
    service: TaskQueueService,
    started_task: TaskView,
) -> None:
    first = service.submit_task(
        started_task.task_id,
        VALID_ANNOTATION,
        "annotator",
        idempotency_key="submit-123",
    )
    replay = service.submit_task(
        started_task.task_id,
        VALID_ANNOTATION,
        "annotator",
        idempotency_key="submit-123",
    )

    assert replay.concurrency_token == first.concurrency_token
    completed_events = [
        event
        for event in service.get_audit_trail(started_task.task_id)
        if event.event_type == TaskEventType.COMPLETED
    ]
    assert len(completed_events) == 1
    assert completed_events[0].metadata == {"idempotency_key": "submit-123"}


def test_idempotency_key_cannot_be_reused_for_another_task(
    service: TaskQueueService,
    stage_rows,
    started_task: TaskView,
) -> None:
    service.submit_task(
        started_task.task_id,
        VALID_ANNOTATION,
        "annotator",
        idempotency_key="shared-key",
    )
    stage_rows("job-other", "svc-2")
    service.create_tasks_from_job("job-other")
    other = service.claim_next("annotator")
    assert other is not None
    service.start_task(other.task_id, "annotator")

    with pytest.raises(TaskValidationError, match="another task"):
        service.submit_task(other.task_id, VALID_ANNOTATION, "annotator", "shared-key")


def test_skip_returns_task_to_queue(
    service: TaskQueueService,
    started_task: TaskView,
) -> None:
    service.save_draft(started_task.task_id, {"note": "partial"}, "annotator")

    skipped = service.skip_task(started_task.task_id, "annotator", "image_unclear")

    assert skipped.status == TaskStatus.PENDING
    assert skipped.assigned_to is None
    assert skipped.draft is None
    assert skipped.skip_count == 1

    latest = service.get_audit_trail(started_task.task_id)[0]
    assert latest.event_type == TaskEventType.SKIPPED_TO_QUEUE
    assert latest.metadata == {"reason_code": "image_unclear"}

    with pytest.raises(TaskForbiddenError):
        service.start_task(started_task.task_id, "annotator")


@pytest.mark.parametrize(
    ("action", "status", "event_type"),
    [
        ("abandon_task", TaskStatus.SKIPPED, TaskEventType.UPDATED),
        ("fail_task", TaskStatus.FAILED, TaskEventType.FAILED),
    ],
)
def test_administrative_close_from_pending_and_in_progress(
    service: TaskQueueService,
    stage_rows,
    action: str,
    status: TaskStatus,
    event_type: TaskEventType,
) -> None:
    stage_rows("job-admin", "admin-pending", "admin-running")
    service.create_tasks_from_job("job-admin")
    running = service.claim_next("annotator")
    assert running is not None
    service.start_task(running.task_id, "annotator")
    pending = next(
        task for task in service.list_tasks() if task.task_id != running.task_id
    )

    for task_id in (pending.task_id, running.task_id):
        closed = getattr(service, action)(task_id, "ops-lead", "duplicate_scan")
        assert closed.status == status
        latest = service.get_audit_trail(task_id)[0]
        assert latest.event_type == event_type
        assert latest.actor == "ops-lead"
        assert latest.metadata == {"reason_code": "duplicate_scan", "administrative": True}

    with pytest.raises(StateTransitionError):
        service.fail_task(running.task_id, "ops-lead")


def test_unknown_task_operations_raise_not_found(service: TaskQueueService) -> None:
    with pytest.raises(TaskNotFoundError):
        service.get_task("nope")
    with pytest.raises(TaskNotFoundError):
        service.start_task("nope", "annotator")
    with pytest.raises(TaskNotFoundError):
        service.fail_task("nope", "ops")


def test_stats_reflect_queue_state(
    service: TaskQueueService,
    stage_rows,
) -> None:
    stage_rows("job-stats", "s1", "s2", "s3", "s4")
    service.create_tasks_from_job("job-stats")
    service.assign_equal_split(["a"], 1)
    pulled = service.claim_next("b")
    assert pulled is not None
    service.start_task(pulled.task_id, "b")
    service.submit_task(pulled.task_id, VALID_ANNOTATION, "b")

    stats = service.get_task_stats()

    assert stats.total == 4
    assert stats.unassigned == 2
    assert stats.by_status == {
        "pending": 3,
        "in_progress": 0,
        "completed": 1,
        "failed": 0,
        "skipped": 0,
    }
    assert stats.by_assignee == {"a": 1, "b": 1}
    assert stats.by_method == {"equal_split": 1, "pull_queue": 1}


def _interleave(
    monkeypatch: pytest.MonkeyPatch,
    service: TaskQueueService,
    action: Callable[[], object],
) -> None:
    """Run ``action`` once, after the next call's checks and before its transition commits."""

    original = service.repository.execute_state_transition
    fired: list[bool] = []

    def _transition(**kwargs: Any) -> TaskView:
        if not fired:
            fired.append(True)
            action()
        return original(**kwargs)

    monkeypatch.setattr(service.repository, "execute_state_transition", _transition)


def test_stale_annotator_cannot_complete_a_reassigned_task(
    service: TaskQueueService,
    started_task: TaskView,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    task_id = started_task.task_id

    def _reassign_to_bob() -> None:
        service.skip_task(task_id, "annotator", "image_unclear")
        assert service.claim_next("bob") is not None
        service.start_task(task_id, "bob")

    _interleave(monkeypatch, service, _reassign_to_bob)

    with pytest.raises(TaskForbiddenError):
        service.submit_task(task_id, VALID_ANNOTATION, "annotator")

    task = service.get_task(task_id)
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.assigned_to == "bob"
    assert task.annotation is None
    assert service.get_audit_trail(task_id)[0].actor == "bob"


def test_submit_retry_overlapping_the_first_submit_is_replayed(
    service: TaskQueueService,
    started_task: TaskView,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    task_id = started_task.task_id
    _interleave(
        monkeypatch,
        service,
        lambda: service.submit_task(task_id, VALID_ANNOTATION, "annotator", "retry-key"),
    )

    outcome = service.submit_task(
        task_id,
        VALID_ANNOTATION,
        "annotator",
        "retry-key",
        token=started_task.concurrency_token,
    )

    assert outcome.status == TaskStatus.COMPLETED
    assert outcome.submit_idempotency_key == "retry-key"
    completed_events = [
        event
        for event in service.get_audit_trail(task_id)
        if event.event_type == TaskEventType.COMPLETED
    ]
    assert len(completed_events) == 1


def test_concurrent_key_reuse_on_another_task_is_a_validation_error(
    service: TaskQueueService,
    stage_rows,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    stage_rows("job-pair", "pair-1", "pair-2")
    service.create_tasks_from_job("job-pair")
    service.assign_equal_split(["annotator"])
    first, second = service.list_tasks(assigned_to="annotator")
    service.start_task(first.task_id, "annotator")
    service.start_task(second.task_id, "annotator")
    _interleave(
        monkeypatch,
        service,
        lambda: service.submit_task(first.task_id, VALID_ANNOTATION, "annotator", "dup-key"),
    )

    with pytest.raises(TaskValidationError, match="another task"):
        service.submit_task(second.task_id, VALID_ANNOTATION, "annotator", "dup-key")

    assert service.get_task(first.task_id).status == TaskStatus.COMPLETED
    assert service.get_task(second.task_id).status == TaskStatus.IN_PROGRESS


def test_reused_request_context_is_not_mutated(
    service: TaskQueueService,
    started_task: TaskView,
) -> None:
    context = TransitionContext(ip_address="192.0.2.10")

    service.save_draft(started_task.task_id, {"note": "wip"}, "annotator", context=context)
    service.submit_task(
        started_task.task_id,
        VALID_ANNOTATION,
        "annotator",
        "ctx-key",
        context=context,
    )

    assert context == TransitionContext(ip_address="192.0.2.10")
    draft_event, completed_event = service.get_audit_trail(started_task.task_id)[1::-1]
    assert draft_event.metadata == {}
    assert completed_event.metadata == {"idempotency_key": "ctx-key"}
    assert completed_event.ip_address == "192.0.2.10"
