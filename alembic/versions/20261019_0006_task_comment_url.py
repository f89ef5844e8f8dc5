"""Link address tasks to the review comment they answer."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0006"
down_revision = "20261019_0005"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("tasks", sa.Column("comment_url", sa.String(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("tasks") as batch:
        batch.drop_column("comment_url")
