"""Persistent task store: atomic transitions, claims and audit reads."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from annotation_queue.queue.errors import (
    ConcurrencyConflictError,
    StateTransitionError,
    TaskForbiddenError,
    TaskNotFoundError,
)
from annotation_queue.queue.models import (
    AssignmentMethod,
    TaskAssignmentView,
    TaskCreate,
    TaskEventType,
    TaskEventView,
    TaskFieldUpdates,
    TaskStats,
    TaskStatus,
    TaskView,
    TransitionContext,
    UserActivityView,
)
from annotation_queue.queue.state_machine import (
    ensure_valid_transition,
    event_type_for_transition,
    generate_concurrency_token,
    get_allowed_transitions,
    validate_concurrency_token,
)
from annotation_queue.storage.alembic_runner import upgrade_head
from annotation_queue.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from annotation_queue.storage.sqlmodel_models import Task, TaskAssignment, TaskEvent

logger = logging.getLogger(__name__)


class TaskRepository:
    """Task store facade backed by SQLModel + SQLite.

    Every mutating method runs in a single ``BEGIN IMMEDIATE`` transaction and pairs
    the task row change with its audit record, so both commit or neither does.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
            immediate_transactions=True,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def insert_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task; raises ``IntegrityError`` on a duplicate business key."""

        now = utc_now()
        task_id = str(uuid4())
        with Session(self.engine) as session:
            row = Task(
                task_id=task_id,
                request_id=payload.request_id,
                job_id=payload.job_id,
                import_row_id=payload.import_row_id,
                scan_type=payload.scan_type,
                payload_url=payload.payload_url,
                vendor_output_json=_dump_json(payload.vendor_output),
                confidence=payload.confidence,
                assignee_hint=payload.assignee_hint,
                status=TaskStatus.PENDING.value,
                version=1,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=TaskEventType.CREATED,
                status_from=None,
                status_to=TaskStatus.PENDING,
                context=TransitionContext(
                    metadata={"job_id": payload.job_id, "import_row_id": payload.import_row_id},
                ),
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def find_task_id_by_request_id(self, request_id: str) -> str | None:
        with Session(self.engine) as session:
            return session.exec(
                select(Task.task_id).where(Task.request_id == request_id),
            ).one_or_none()

    def find_task_by_idempotency_key(self, idempotency_key: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Task).where(Task.submit_idempotency_key == idempotency_key),
            ).one_or_none()
        return _to_task_view(row) if row is not None else None

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
        return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        assigned_to: str | None = None,
        limit: int = 100,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and assignee."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            if assigned_to is not None:
                statement = statement.where(Task.assigned_to == assigned_to)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_unassigned_pending(self) -> list[TaskView]:
        """Unassigned pending tasks, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(
                    Task.status == TaskStatus.PENDING.value,
                    col(Task.assigned_to).is_(None),
                )
                .order_by(col(Task.created_at).asc(), col(Task.request_id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def claim(
        self,
        *,
        task_id: str,
        user_id: str,
        method: AssignmentMethod,
        priority_score: float | None,
    ) -> TaskView | None:
        """Assign one specific task if it is still pending and unassigned.

        Returns None when a concurrent claim got there first.
        """

        with Session(self.engine) as session:
            claimed = self._claim_in_session(
                session=session,
                task_id=task_id,
                user_id=user_id,
                method=method,
                priority_score=priority_score,
            )
            if claimed is None:
                session.rollback()
                return None
            session.commit()
            return _to_task_view(claimed)

    def claim_next_pending(self, *, user_id: str, max_attempts: int = 5) -> TaskView | None:
        """Atomically select and claim the best pending task for ``user_id``."""

        for _ in range(max_attempts):
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Task)
                    .where(
                        Task.status == TaskStatus.PENDING.value,
                        col(Task.assigned_to).is_(None),
                    )
                    .order_by(
                        func.coalesce(col(Task.confidence), 0).desc(),
                        col(Task.created_at).asc(),
                    )
                    .limit(1)
                    .with_for_update(skip_locked=True),
                ).one_or_none()
                if candidate is None:
                    return None

                claimed = self._claim_in_session(
                    session=session,
                    task_id=candidate.task_id,
                    user_id=user_id,
                    method=AssignmentMethod.PULL_QUEUE,
                    priority_score=candidate.confidence,
                )
                if claimed is None:
                    session.rollback()
                    continue
                session.commit()
                return _to_task_view(claimed)

        logger.info(
            "Pull claim for %s lost %d races in a row; reporting empty",
            user_id,
            max_attempts,
        )
        return None

    def execute_state_transition(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        context: TransitionContext,
        updates: TaskFieldUpdates | None = None,
        administrative: bool = False,
    ) -> TaskView:
        """Move a task along one lifecycle edge and append its audit event atomically."""

        ensure_valid_transition(from_status, to_status, administrative=administrative)
        updates = updates or TaskFieldUpdates()
        now = utc_now()

        with Session(self.engine) as session:
            row = self._get_task_row_for_update(session=session, task_id=task_id)
            expected_assignee = context.expected_assignee
            if expected_assignee is not None and row.assigned_to != expected_assignee:
                raise TaskForbiddenError(task_id, expected_assignee)
            validate_concurrency_token(context.expected_token, row.version)

            current = TaskStatus(row.status)
            if current != from_status:
                logger.warning(
                    "Rejected transition of task %s to %s: task is %s",
                    task_id,
                    to_status.value,
                    current.value,
                )
                raise StateTransitionError(
                    current,
                    to_status,
                    get_allowed_transitions(current, administrative=administrative),
                    message=(
                        f"Task is '{current.value}', expected '{from_status.value}' "
                        f"for transition to '{to_status.value}'"
                    ),
                )

            values = self._transition_values(row=row, updates=updates, now=now)
            statement = sa_update(Task).where(
                col(Task.task_id) == task_id,
                col(Task.status) == from_status.value,
                col(Task.version) == row.version,
            )
            if expected_assignee is not None:
                statement = statement.where(col(Task.assigned_to) == expected_assignee)
            result = session.exec(
                statement.values(
                    status=to_status.value,
                    version=row.version + 1,
                    updated_at=to_db_datetime(now),
                    **values,
                ).execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                latest = self.get_task(task_id)
                raise ConcurrencyConflictError(
                    expected=generate_concurrency_token(row.version),
                    actual=latest.concurrency_token if latest is not None else "deleted",
                )

            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type_for_transition(
                    from_status,
                    to_status,
                    is_draft=context.is_draft,
                ),
                status_from=from_status,
                status_to=to_status,
                context=context,
            )
            session.commit()

            updated = session.get(Task, task_id, populate_existing=True)
            if updated is None:
                raise TaskNotFoundError(task_id)
            return _to_task_view(updated)

    def get_audit_trail(self, task_id: str) -> list[TaskEventView]:
        """Full event history for a task, newest first."""

        with Session(self.engine) as session:
            if session.get(Task, task_id) is None:
                raise TaskNotFoundError(task_id)
            rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).desc(), col(TaskEvent.id).desc()),
            ).all()
        return [_to_event_view(row) for row in rows]

    def get_user_activity(self, *, user_id: str, limit: int = 50) -> list[UserActivityView]:
        """Recent events triggered by one actor, joined with their task."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEvent, Task.request_id, Task.scan_type)
                .join(Task, col(Task.task_id) == col(TaskEvent.task_id))
                .where(TaskEvent.actor == user_id)
                .order_by(col(TaskEvent.created_at).desc(), col(TaskEvent.id).desc())
                .limit(limit),
            ).all()
        return [
            UserActivityView(event=_to_event_view(event), request_id=request_id, scan_type=scan)
            for event, request_id, scan in rows
        ]

    def get_assignment_log(
        self,
        *,
        user_id: str | None = None,
        method: AssignmentMethod | None = None,
        limit: int | None = None,
    ) -> list[TaskAssignmentView]:
        with Session(self.engine) as session:
            statement = (
                select(TaskAssignment, Task.request_id)
                .join(Task, col(Task.task_id) == col(TaskAssignment.task_id))
                .order_by(col(TaskAssignment.assigned_at).desc(), col(TaskAssignment.id).desc())
            )
            if user_id is not None:
                statement = statement.where(TaskAssignment.assigned_to == user_id)
            if method is not None:
                statement = statement.where(TaskAssignment.method == method.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [
            TaskAssignmentView(
                assignment_id=record.id or 0,
                task_id=record.task_id,
                request_id=request_id,
                assigned_to=record.assigned_to,
                method=AssignmentMethod(record.method),
                priority_score=record.priority_score,
                assigned_at=to_utc_aware_datetime(record.assigned_at),
            )
            for record, request_id in rows
        ]

    def get_task_stats(self) -> TaskStats:
        with Session(self.engine) as session:
            status_rows = session.exec(
                select(Task.status, func.count()).group_by(Task.status),
            ).all()
            assignee_rows = session.exec(
                select(Task.assigned_to, func.count())
                .where(col(Task.assigned_to).is_not(None))
                .group_by(Task.assigned_to),
            ).all()
            method_rows = session.exec(
                select(TaskAssignment.method, func.count()).group_by(TaskAssignment.method),
            ).all()
            unassigned = session.exec(
                select(func.count())
                .select_from(Task)
                .where(
                    Task.status == TaskStatus.PENDING.value,
                    col(Task.assigned_to).is_(None),
                ),
            ).one()

        by_status = {status.value: 0 for status in TaskStatus}
        for status, count in status_rows:
            by_status[status] = int(count)
        return TaskStats(
            total=sum(by_status.values()),
            unassigned=int(unassigned),
            by_status=by_status,
            by_assignee={str(user): int(count) for user, count in assignee_rows},
            by_method={str(method): int(count) for method, count in method_rows},
        )

    def _claim_in_session(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        user_id: str,
        method: AssignmentMethod,
        priority_score: float | None,
    ) -> Task | None:
        now = utc_now()
        result = session.exec(
            sa_update(Task)
            .where(
                col(Task.task_id) == task_id,
                col(Task.status) == TaskStatus.PENDING.value,
                col(Task.assigned_to).is_(None),
            )
            .values(
                assigned_to=user_id,
                assigned_at=to_db_datetime(now),
                version=col(Task.version) + 1,
                updated_at=to_db_datetime(now),
            )
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            logger.debug("Claim of task %s for %s lost the race", task_id, user_id)
            return None

        session.add(
            TaskAssignment(
                task_id=task_id,
                assigned_to=user_id,
                method=method.value,
                priority_score=priority_score,
                assigned_at=now,
            ),
        )
        session.flush()
        claimed = session.get(Task, task_id, populate_existing=True)
        logger.info("Task %s claimed by %s via %s", task_id, user_id, method.value)
        return claimed

    def _get_task_row_for_update(self, *, session: Session, task_id: str) -> Task:
        row = session.exec(
            select(Task).where(Task.task_id == task_id).with_for_update(),
        ).one_or_none()
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    @staticmethod
    def _transition_values(
        *,
        row: Task,
        updates: TaskFieldUpdates,
        now: datetime,
    ) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if updates.mark_started:
            values["started_at"] = to_db_datetime(now)
        if updates.draft is not None:
            values["draft_json"] = _dump_json(updates.draft)
        if updates.clear_draft:
            values["draft_json"] = None
        if updates.annotation is not None:
            values["annotation_json"] = _dump_json(updates.annotation)
        if updates.submit_idempotency_key is not None:
            values["submit_idempotency_key"] = updates.submit_idempotency_key
        if updates.mark_completed:
            values["completed_at"] = to_db_datetime(now)
            if row.started_at is not None:
                elapsed = now - to_utc_aware_datetime(row.started_at)
                values["duration_ms"] = max(0, int(elapsed.total_seconds() * 1000))
        if updates.return_to_queue:
            values.update(
                assigned_to=None,
                assigned_at=None,
                started_at=None,
                skip_count=row.skip_count + 1,
            )
        return values

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: TaskEventType,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        context: TransitionContext,
    ) -> None:
        metadata = {key: value for key, value in context.metadata.items() if value is not None}
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type.value,
                actor=context.actor,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                payload_json=_dump_json(context.payload) if context.payload is not None else None,
                metadata_json=_dump_json(metadata) if metadata else None,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                created_at=utc_now(),
            ),
        )


def _dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json_object(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else None


def _to_event_view(row: TaskEvent) -> TaskEventView:
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=TaskEventType(row.event_type),
        actor=row.actor,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        payload=_load_json_object(row.payload_json),
        metadata=_load_json_object(row.metadata_json) or {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        request_id=row.request_id,
        job_id=row.job_id,
        import_row_id=row.import_row_id,
        scan_type=row.scan_type,
        payload_url=row.payload_url,
        vendor_output=_load_json_object(row.vendor_output_json) or {},
        confidence=row.confidence,
        assignee_hint=row.assignee_hint,
        status=TaskStatus(row.status),
        assigned_to=row.assigned_to,
        assigned_at=optional_utc(row.assigned_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        duration_ms=row.duration_ms,
        skip_count=row.skip_count,
        draft=_load_json_object(row.draft_json),
        annotation=_load_json_object(row.annotation_json),
        submit_idempotency_key=row.submit_idempotency_key,
        version=row.version,
        concurrency_token=generate_concurrency_token(row.version),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
