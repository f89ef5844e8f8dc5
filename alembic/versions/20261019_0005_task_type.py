"""Distinguish build tasks from review-address tasks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0005"
down_revision = "20261019_0004"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "tasks",
        sa.Column("type", sa.String(), server_default="build", nullable=False),
    )


def downgrade() -> None:
    with op.batch_alter_table("tasks") as batch:
        batch.drop_column("type")
