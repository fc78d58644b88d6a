"""Create lease and work item tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261019_create_cron_locks_and_work_items"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_PREDICATE = "status IN ('pending','running')"


def upgrade() -> None:
    op.create_table(
        "cron_locks",
        sa.Column("job_name", sa.Text(), primary_key=True),
        sa.Column("holder_token", sa.Text(), nullable=False),
        sa.Column(
            "acquired_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_cron_locks_expires", "cron_locks", ["expires_at"])

    op.create_table(
        "work_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("job_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "status IN ('pending','running','done','error')",
            name="work_item_status_chk",
        ),
    )
    op.create_index(
        "uq_work_items_active_key",
        "work_items",
        ["job_type", "entity_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_PREDICATE),
        sqlite_where=sa.text(ACTIVE_PREDICATE),
    )
    op.create_index(
        "idx_work_items_status_created",
        "work_items",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_work_items_status_created", table_name="work_items")
    op.drop_index("uq_work_items_active_key", table_name="work_items")
    op.drop_table("work_items")
    op.drop_index("idx_cron_locks_expires", table_name="cron_locks")
    op.drop_table("cron_locks")
