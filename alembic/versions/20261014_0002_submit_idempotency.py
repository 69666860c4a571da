"""Add submit idempotency key to tasks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261014_0002"
down_revision = "20261012_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "tasks",
        sa.Column("submit_idempotency_key", sa.String(), nullable=True),
    )
    op.create_index(
        "uq_tasks_submit_idempotency_key",
        "tasks",
        ["submit_idempotency_key"],
        unique=True,
        sqlite_where=sa.text("submit_idempotency_key IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_tasks_submit_idempotency_key", table_name="tasks")
    op.drop_column("tasks", "submit_idempotency_key")
