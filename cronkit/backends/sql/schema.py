"""SQLAlchemy Core schema for leases and work items."""

from __future__ import annotations

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    text,
)

metadata = MetaData()

CronLocks = Table(
    "cron_locks",
    metadata,
    Column("job_name", Text, primary_key=True),
    Column("holder_token", Text, nullable=False),
    Column("acquired_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Column("expires_at", DateTime(timezone=True), nullable=False),
)

WorkItems = Table(
    "work_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("job_type", Text, nullable=False),
    Column("entity_id", Text, nullable=False),
    Column("status", Text, nullable=False, server_default="pending"),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("error_message", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Column("started_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    CheckConstraint(
        "status IN ('pending','running','done','error')",
        name="work_item_status_chk",
    ),
)

ACTIVE_PREDICATE = "status IN ('pending','running')"

# One active row per (job_type, entity_id); terminal rows are kept as history.
Index(
    "uq_work_items_active_key",
    WorkItems.c.job_type,
    WorkItems.c.entity_id,
    unique=True,
    postgresql_where=text(ACTIVE_PREDICATE),
    sqlite_where=text(ACTIVE_PREDICATE),
)

Index(
    "idx_work_items_status_created",
    WorkItems.c.status,
    WorkItems.c.created_at,
)

Index("idx_cron_locks_expires", CronLocks.c.expires_at)

__all__ = ["CronLocks", "WorkItems", "metadata"]
