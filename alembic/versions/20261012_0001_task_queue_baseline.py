"""Task queue baseline: import rows, tasks, assignment log and task events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "import_rows",
        sa.Column("row_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("resource_status", sa.String(), nullable=True),
        sa.Column("row_data_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("row_id"),
        sa.UniqueConstraint("job_id", "line_number", name="uq_import_rows_job_line"),
    )
    op.create_index("idx_import_rows_job_status", "import_rows", ["job_id", "status"])

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("import_row_id", sa.String(), nullable=True),
        sa.Column("scan_type", sa.String(), nullable=False),
        sa.Column("payload_url", sa.String(), nullable=False),
        sa.Column("vendor_output_json", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("assignee_hint", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("assigned_to", sa.String(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("skip_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("draft_json", sa.Text(), nullable=True),
        sa.Column("annotation_json", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["import_row_id"], ["import_rows.row_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint("request_id", name="uq_tasks_request_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'failed', 'skipped')",
            name="ck_tasks_status",
        ),
    )
    op.create_index(
        "idx_tasks_queue",
        "tasks",
        ["status", "assigned_to", "confidence", "created_at"],
    )
    op.create_index("idx_tasks_assigned_to", "tasks", ["assigned_to"])
    op.create_index("idx_tasks_job", "tasks", ["job_id"])

    op.create_table(
        "task_assignments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("assigned_to", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("priority_score", sa.Float(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "method IN ('equal_split', 'pull_queue')",
            name="ck_task_assignments_method",
        ),
    )
    op.create_index("idx_task_assignments_task", "task_assignments", ["task_id"])
    op.create_index(
        "idx_task_assignments_user_time",
        "task_assignments",
        ["assigned_to", "assigned_at"],
    )

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("actor", sa.String(), nullable=True),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_task_events_task_time", "task_events", ["task_id", "created_at"])
    op.create_index("idx_task_events_actor_time", "task_events", ["actor", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_task_events_actor_time", table_name="task_events")
    op.drop_index("idx_task_events_task_time", table_name="task_events")
    op.drop_table("task_events")
    op.drop_index("idx_task_assignments_user_time", table_name="task_assignments")
    op.drop_index("idx_task_assignments_task", table_name="task_assignments")
    op.drop_table("task_assignments")
    op.drop_index("idx_tasks_job", table_name="tasks")
    op.drop_index("idx_tasks_assigned_to", table_name="tasks")
    op.drop_index("idx_tasks_queue", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("idx_import_rows_job_status", table_name="import_rows")
    op.drop_table("import_rows")
