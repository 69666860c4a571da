"""SQLModel ORM tables for the annotation task queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class ImportRow(SQLModel, table=True):
    __tablename__ = "import_rows"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "line_number", name="uq_import_rows_job_line"),
        Index("idx_import_rows_job_status", "job_id", "status"),
    )

    row_id: str = Field(primary_key=True)
    job_id: str
    line_number: int
    status: str
    resource_status: str | None = None
    row_data_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("request_id", name="uq_tasks_request_id"),
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'failed', 'skipped')",
            name="ck_tasks_status",
        ),
        Index("idx_tasks_queue", "status", "assigned_to", "confidence", "created_at"),
        Index("idx_tasks_assigned_to", "assigned_to"),
        Index("idx_tasks_job", "job_id"),
        Index(
            "uq_tasks_submit_idempotency_key",
            "submit_idempotency_key",
            unique=True,
            sqlite_where=text("submit_idempotency_key IS NOT NULL"),
        ),
    )

    task_id: str = Field(primary_key=True)
    request_id: str
    job_id: str | None = None
    import_row_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("import_rows.row_id", ondelete="SET NULL"), nullable=True),
    )
    scan_type: str
    payload_url: str
    vendor_output_json: str = Field(sa_column=Column(Text, nullable=False))
    confidence: float | None = None
    assignee_hint: str | None = None
    status: str = Field(default="pending")
    assigned_to: str | None = None
    assigned_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None
    skip_count: int = Field(default=0)
    draft_json: str | None = Field(default=None, sa_column=Column(Text))
    annotation_json: str | None = Field(default=None, sa_column=Column(Text))
    submit_idempotency_key: str | None = None
    version: int = Field(default=1)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskAssignment(SQLModel, table=True):
    __tablename__ = "task_assignments"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "method IN ('equal_split', 'pull_queue')",
            name="ck_task_assignments_method",
        ),
        Index("idx_task_assignments_task", "task_id"),
        Index("idx_task_assignments_user_time", "assigned_to", "assigned_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    assigned_to: str
    method: str
    priority_score: float | None = None
    assigned_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_events_task_time", "task_id", "created_at"),
        Index("idx_task_events_actor_time", "actor", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    actor: str | None = None
    status_from: str | None = None
    status_to: str | None = None
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    ip_address: str | None = None
    user_agent: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
