"""Add runtime event heartbeat for stale-run recovery."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "runtime_events",
        sa.Column(
            "heartbeat_at",
            sa.DateTime(timezone=True),
            nullable=True,
        ),
    )
    op.execute(
        sa.text(
            """
            UPDATE runtime_events
            SET heartbeat_at = COALESCE(heartbeat_at, finished_at, started_at)
            """,
        ),
    )


def downgrade() -> None:
    op.drop_column("runtime_events", "heartbeat_at")
