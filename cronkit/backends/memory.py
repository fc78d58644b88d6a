"""In-memory backend implementation."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List
from uuid import UUID, uuid4

from ..contracts import (
    ACTIVE_STATUSES,
    LockBackend,
    Outcome,
    QueueBackend,
    WorkStatus,
    truncate_error,
)


UTC = timezone.utc


@dataclass
class _Lease:
    job_name: str
    holder_token: str
    acquired_at: datetime
    expires_at: datetime


@dataclass
class _Item:
    id: UUID
    job_type: str
    entity_id: str
    created_at: datetime
    status: str = WorkStatus.PENDING.value
    attempts: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class MemoryBackend(LockBackend, QueueBackend):
    """Single-process backend; one ``asyncio.Lock`` serialises every operation."""

    def __init__(self) -> None:
        self._leases: Dict[str, _Lease] = {}
        self._items: Dict[UUID, _Item] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, job_name: str, holder_token: str, *, ttl: timedelta) -> bool:
        async with self._lock:
            now = datetime.now(UTC)
            for name in [n for n, lease in self._leases.items() if lease.expires_at <= now]:
                del self._leases[name]
            if job_name in self._leases:
                return False
            self._leases[job_name] = _Lease(
                job_name=job_name,
                holder_token=holder_token,
                acquired_at=now,
                expires_at=now + ttl,
            )
            return True

    async def release(self, job_name: str, *, holder_token: str | None = None) -> bool:
        async with self._lock:
            lease = self._leases.get(job_name)
            if lease is None:
                return False
            if holder_token is not None and lease.holder_token != holder_token:
                return False
            del self._leases[job_name]
            return True

    async def get_lease(self, job_name: str) -> dict | None:
        async with self._lock:
            lease = self._leases.get(job_name)
            return asdict(lease) if lease else None

    async def enqueue(self, job_type: str, entity_id: str) -> tuple[UUID, bool]:
        async with self._lock:
            existing = self._find_active(job_type, entity_id)
            if existing is not None:
                return existing.id, False
            item = _Item(
                id=uuid4(),
                job_type=job_type,
                entity_id=entity_id,
                created_at=datetime.now(UTC),
            )
            self._items[item.id] = item
            return item.id, True

    async def get(self, item_id: UUID) -> dict:
        async with self._lock:
            item = self._items.get(item_id)
            if not item:
                raise KeyError(item_id)
            return asdict(item)

    async def claim_batch(self, max_count: int) -> List[QueueBackend.WorkItem]:
        async with self._lock:
            now = datetime.now(UTC)
            candidates = sorted(
                (i for i in self._items.values() if i.status == WorkStatus.PENDING.value),
                key=lambda i: i.created_at,
            )
            claimed: List[QueueBackend.WorkItem] = []
            for item in candidates[:max_count]:
                item.status = WorkStatus.RUNNING.value
                item.started_at = now
                item.attempts += 1
                claimed.append(asdict(item))
            return claimed

    async def complete(
        self, item_id: UUID, outcome: Outcome, *, error_message: str | None = None
    ) -> bool:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise KeyError(item_id)
            if item.status != WorkStatus.RUNNING.value:
                return False
            item.status = Outcome(outcome).value
            item.completed_at = datetime.now(UTC)
            item.error_message = truncate_error(error_message)
            return True

    async def retry(self, item_id: UUID) -> bool:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise KeyError(item_id)
            if item.status != WorkStatus.ERROR.value:
                return False
            if self._find_active(item.job_type, item.entity_id) is not None:
                return False
            item.status = WorkStatus.PENDING.value
            item.started_at = None
            item.completed_at = None
            return True

    async def stats(self) -> dict[str, int]:
        async with self._lock:
            counts = {status.value: 0 for status in WorkStatus}
            for item in self._items.values():
                counts[item.status] += 1
            return counts

    async def check_connection(self) -> None:
        return None

    def _find_active(self, job_type: str, entity_id: str) -> _Item | None:
        for item in self._items.values():
            if (
                item.job_type == job_type
                and item.entity_id == entity_id
                and item.status in ACTIVE_STATUSES
            ):
                return item
        return None
