"""Keep the backend's own heartbeat timestamp apart from the observation time."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "tasks",
        sa.Column(
            "heartbeat_seen",
            sa.DateTime(timezone=True),
            nullable=True,
        ),
    )
    op.execute(
        sa.text(
            """
            UPDATE tasks
            SET heartbeat_seen = last_heartbeat
            WHERE heartbeat_seen IS NULL
            """,
        ),
    )


def downgrade() -> None:
    op.drop_column("tasks", "heartbeat_seen")
