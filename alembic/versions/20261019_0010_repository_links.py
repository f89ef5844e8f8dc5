"""Link jobs and tasks to their repository."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0010"
down_revision = "20261019_0009"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("jobs", sa.Column("repository_id", sa.Integer(), nullable=True))
    op.add_column("tasks", sa.Column("repository_id", sa.Integer(), nullable=True))
    op.create_index("idx_tasks_repository", "tasks", ["repository_id"])


def downgrade() -> None:
    op.drop_index("idx_tasks_repository", table_name="tasks")
    with op.batch_alter_table("tasks") as batch:
        batch.drop_column("repository_id")
    with op.batch_alter_table("jobs") as batch:
        batch.drop_column("repository_id")
