"""Core contracts used by Cronkit components.

Storage is expressed through explicit abstract base classes rather than
``typing.Protocol`` interfaces so backends must provide the full API at
definition time. Value types shared by the lock, queue and worker live here as
well.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Generic, TypedDict, TypeVar
from uuid import UUID

T = TypeVar("T")


class JobType(str, Enum):
    PATCH_SUMMARY = "PATCH_SUMMARY"
    NEWS_SUMMARY = "NEWS_SUMMARY"
    DISCOVER_SEASONAL = "DISCOVER_SEASONAL"
    RETURN_MATCH = "RETURN_MATCH"
    DISCOVER_RELEASES = "DISCOVER_RELEASES"


class WorkStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class Outcome(str, Enum):
    DONE = "done"
    ERROR = "error"


ACTIVE_STATUSES = (WorkStatus.PENDING.value, WorkStatus.RUNNING.value)
ERROR_MESSAGE_MAX_LEN = 900


class CronkitError(RuntimeError):
    """Base class for errors raised by Cronkit."""


class InvalidTransitionError(CronkitError):
    """Raised when a work item is not in the state an operation requires."""


@dataclass(slots=True)
class LockResult(Generic[T]):
    """Outcome of :meth:`cronkit.lock.CronLock.with_lock`."""

    success: bool
    result: T | None = None
    skipped: bool = False


@dataclass(slots=True)
class EnqueueResult:
    """Outcome of :meth:`cronkit.queue.WorkQueue.enqueue`.

    Callers must check :attr:`error` (or :attr:`ok`) before trusting :attr:`id`.
    """

    id: UUID | None = None
    error: str | None = None
    created: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.id is not None


class LockBackend(ABC):
    """Storage for named, time-bounded leases."""

    @abstractmethod
    async def try_acquire(self, job_name: str, holder_token: str, *, ttl: timedelta) -> bool:
        """Delete expired leases, then insert a lease for ``job_name``.

        Returns ``False`` when a live lease for ``job_name`` already exists.
        Any other store failure is raised to the caller.
        """

    @abstractmethod
    async def release(self, job_name: str, *, holder_token: str | None = None) -> bool:
        """Delete the lease for ``job_name``.

        When ``holder_token`` is given only a lease issued with that token is
        removed. Returns ``True`` if a row was deleted.
        """

    @abstractmethod
    async def get_lease(self, job_name: str) -> dict | None:
        """Return the stored lease for ``job_name`` or ``None``."""

    @abstractmethod
    async def check_connection(self) -> None:
        """Raise if the backend cannot be reached."""


class QueueBackend(ABC):
    """Storage for work items."""

    class WorkItem(TypedDict):
        """Row returned by :meth:`claim_batch` and :meth:`get`."""

        id: UUID
        job_type: str
        entity_id: str
        status: str
        attempts: int
        error_message: str | None
        created_at: datetime
        started_at: datetime | None
        completed_at: datetime | None

    @abstractmethod
    async def enqueue(self, job_type: str, entity_id: str) -> tuple[UUID, bool]:
        """Return the active item for the key, inserting a pending one if needed.

        The boolean is ``True`` when a new row was created.
        """

    @abstractmethod
    async def get(self, item_id: UUID) -> dict:
        """Return the stored representation of ``item_id`` or raise ``KeyError``."""

    @abstractmethod
    async def claim_batch(self, max_count: int) -> list[WorkItem]:
        """Move up to ``max_count`` of the oldest pending items to running."""

    @abstractmethod
    async def complete(
        self, item_id: UUID, outcome: Outcome, *, error_message: str | None = None
    ) -> bool:
        """Move a running item to ``outcome``; ``False`` if it was not running."""

    @abstractmethod
    async def retry(self, item_id: UUID) -> bool:
        """Move an errored item back to pending.

        Returns ``False`` when another active item for the same key exists.
        """

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        """Return item counts keyed by status."""

    @abstractmethod
    async def check_connection(self) -> None:
        """Raise if the backend cannot be reached."""


def coerce_job_type(value: JobType | str) -> JobType:
    try:
        return JobType(value)
    except ValueError as exc:
        raise ValueError(f"unknown job type: {value!r}") from exc


def truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:ERROR_MESSAGE_MAX_LEN]


def describe(value: Any) -> str:
    """Render an exception or object as a short, single-line message."""

    text = str(value) or value.__class__.__name__
    return " ".join(text.split())
