"""SQL backend implemented with SQLAlchemy async sessions."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Iterable, List
from uuid import UUID, uuid4

from sqlalchemy import delete, func, insert, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .schema import CronLocks, WorkItems
from ...contracts import (
    ACTIVE_STATUSES,
    LockBackend,
    Outcome,
    QueueBackend,
    WorkStatus,
    truncate_error,
)
from ... import metrics

UTC = timezone.utc
logger = logging.getLogger(__name__)


class SQLBackend(LockBackend, QueueBackend):
    def __init__(
        self,
        engine: AsyncEngine,
        *,
        prefer_pg_skip_locked: bool = True,
    ) -> None:
        self.engine = engine
        self.prefer_pg_skip_locked = prefer_pg_skip_locked
        self.sessionmaker = async_sessionmaker(engine, expire_on_commit=False)
        self._warned_about_skip_locked = False

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return (
            "SQLBackend("
            f"engine={self.engine.url!s}, "
            f"prefer_pg_skip_locked={self.prefer_pg_skip_locked}"
            ")"
        )

    # -- leases ---------------------------------------------------------

    async def try_acquire(self, job_name: str, holder_token: str, *, ttl: timedelta) -> bool:
        now = datetime.now(UTC)
        async with self.sessionmaker() as session:
            try:
                await session.execute(delete(CronLocks).where(CronLocks.c.expires_at <= now))
                await session.execute(
                    insert(CronLocks).values(
                        job_name=job_name,
                        holder_token=holder_token,
                        acquired_at=now,
                        expires_at=now + ttl,
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            except Exception:
                await session.rollback()
                raise
        return True

    async def release(self, job_name: str, *, holder_token: str | None = None) -> bool:
        async def _op() -> bool:
            async with self.sessionmaker() as session:
                try:
                    stmt = delete(CronLocks).where(CronLocks.c.job_name == job_name)
                    if holder_token is not None:
                        stmt = stmt.where(CronLocks.c.holder_token == holder_token)
                    res = await session.execute(stmt)
                    await session.commit()
                    return bool(res.rowcount)
                except Exception:
                    await session.rollback()
                    raise

        return await self._retry_with_backoff(_op)

    async def get_lease(self, job_name: str) -> dict | None:
        async with self.sessionmaker() as session:
            row = (
                await session.execute(select(CronLocks).where(CronLocks.c.job_name == job_name))
            ).mappings().first()
            return dict(row) if row else None

    # -- work items -----------------------------------------------------

    async def enqueue(self, job_type: str, entity_id: str) -> tuple[UUID, bool]:
        async with self.sessionmaker() as session:
            existing = await self._find_active(session, job_type, entity_id)
            if existing is not None:
                return existing, False
            item_id = uuid4()
            try:
                await session.execute(
                    insert(WorkItems).values(
                        id=str(item_id),
                        job_type=job_type,
                        entity_id=entity_id,
                        status=WorkStatus.PENDING.value,
                        attempts=0,
                        created_at=datetime.now(UTC),
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_active(session, job_type, entity_id)
                if existing is None:
                    raise
                logger.info(
                    "enqueue lost insert race: job_type=%s entity_id=%s existing=%s",
                    job_type,
                    entity_id,
                    existing,
                )
                return existing, False
        return item_id, True

    async def get(self, item_id: UUID) -> dict:
        async with self.sessionmaker() as session:
            row = (
                await session.execute(select(WorkItems).where(WorkItems.c.id == str(item_id)))
            ).mappings().first()
            if not row:
                raise KeyError(item_id)
            return self._row_to_dict(row)

    async def claim_batch(self, max_count: int) -> List[QueueBackend.WorkItem]:
        if self.engine.dialect.name == "postgresql" and self.prefer_pg_skip_locked:
            rows = await self._claim_pg(max_count)
        else:
            if not getattr(self, "_warned_about_skip_locked", False):
                logger.warning(
                    "Running without SKIP LOCKED; concurrent claimers resolve conflicts per row"
                )
                self._warned_about_skip_locked = True
            rows = await self._claim_generic(max_count)
        items = [self._row_to_dict(row) for row in rows]
        items.sort(key=lambda item: item["created_at"])
        return items

    async def _claim_pg(self, max_count: int) -> Iterable[dict]:
        sql = text(
            """
            WITH picked AS (
                SELECT id FROM work_items
                WHERE status='pending'
                ORDER BY created_at ASC
                LIMIT :limit
                FOR UPDATE SKIP LOCKED
            )
            UPDATE work_items wi
               SET status='running',
                   started_at=NOW(),
                   attempts=wi.attempts+1
             FROM picked
            WHERE wi.id = picked.id
            RETURNING wi.*;
            """
        )
        async with self.sessionmaker() as session:
            rows = (await session.execute(sql, {"limit": max_count})).mappings().all()
            await session.commit()
            return rows

    async def _claim_generic(self, max_count: int) -> Iterable[dict]:
        picked: list[dict] = []
        async with self.sessionmaker() as session:
            for _ in range(max_count):
                query = (
                    select(WorkItems)
                    .where(WorkItems.c.status == WorkStatus.PENDING.value)
                    .order_by(WorkItems.c.created_at.asc())
                    .limit(1)
                )
                row = (await session.execute(query)).mappings().first()
                if not row:
                    break
                started_at = datetime.now(UTC)
                stmt = (
                    update(WorkItems)
                    .where(WorkItems.c.id == row["id"])
                    .where(WorkItems.c.status == WorkStatus.PENDING.value)
                    .values(
                        status=WorkStatus.RUNNING.value,
                        started_at=started_at,
                        attempts=WorkItems.c.attempts + 1,
                    )
                )
                res = await session.execute(stmt)
                if res.rowcount:
                    await session.commit()
                    picked.append(
                        {
                            **dict(row),
                            "status": WorkStatus.RUNNING.value,
                            "started_at": started_at,
                            "attempts": row["attempts"] + 1,
                        }
                    )
                else:
                    await session.rollback()
                    metrics.claim_conflicts.inc()
            return picked

    async def complete(
        self, item_id: UUID, outcome: Outcome, *, error_message: str | None = None
    ) -> bool:
        status = Outcome(outcome).value

        async def _op() -> bool:
            async with self.sessionmaker() as session:
                try:
                    res = await session.execute(
                        update(WorkItems)
                        .where(WorkItems.c.id == str(item_id))
                        .where(WorkItems.c.status == WorkStatus.RUNNING.value)
                        .values(
                            status=status,
                            completed_at=datetime.now(UTC),
                            error_message=truncate_error(error_message),
                        )
                    )
                    await session.commit()
                    return bool(res.rowcount)
                except Exception:
                    await session.rollback()
                    raise

        if await self._retry_with_backoff(_op):
            return True
        await self.get(item_id)
        return False

    async def retry(self, item_id: UUID) -> bool:
        async with self.sessionmaker() as session:
            try:
                res = await session.execute(
                    update(WorkItems)
                    .where(WorkItems.c.id == str(item_id))
                    .where(WorkItems.c.status == WorkStatus.ERROR.value)
                    .values(
                        status=WorkStatus.PENDING.value,
                        started_at=None,
                        completed_at=None,
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            except Exception:
                await session.rollback()
                raise
        if res.rowcount:
            return True
        await self.get(item_id)
        return False

    async def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in WorkStatus}
        async with self.sessionmaker() as session:
            rows = (
                await session.execute(
                    select(WorkItems.c.status, func.count()).group_by(WorkItems.c.status)
                )
            ).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts

    async def check_connection(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def _find_active(self, session: Any, job_type: str, entity_id: str) -> UUID | None:
        row = (
            await session.execute(
                select(WorkItems.c.id)
                .where(WorkItems.c.job_type == job_type)
                .where(WorkItems.c.entity_id == entity_id)
                .where(WorkItems.c.status.in_(ACTIVE_STATUSES))
                .limit(1)
            )
        ).first()
        if row is None:
            return None
        return UUID(row.id) if isinstance(row.id, str) else row.id

    async def _retry_with_backoff(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
    ) -> Any:
        delay = base_delay
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await func()
            except (DBAPIError, ConnectionError) as exc:
                last_exc = exc
                if attempt == attempts:
                    raise
                logger.warning(
                    "Transient backend error on attempt %s/%s; retrying in %.2fs",
                    attempt,
                    attempts,
                    delay,
                    exc_info=exc,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)
        if last_exc:
            raise last_exc

    @staticmethod
    def _row_to_dict(row: Any) -> dict:
        data = dict(row)
        data["id"] = UUID(data["id"]) if isinstance(data["id"], str) else data["id"]
        return data
