"""Lease-based single-flight lock for recurring scheduled tasks.

A scheduler firing may overlap a slow previous run or a second firing of the
same job. :class:`CronLock` lets exactly one of them proceed; the others skip
their cycle. Acquisition is a single attempt that never waits, and every store
failure counts as "not acquired".
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
import logging
import secrets
import time
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from .contracts import LockBackend, LockResult
from . import metrics

DEFAULT_LEASE_DURATION = timedelta(minutes=10)
logger = logging.getLogger(__name__)

T = TypeVar("T")


class CronLock:
    """Front-end for acquiring and releasing named leases.

    Parameters:
        backend: Lease storage; must detect unique-key conflicts on insert.
        default_ttl: Lease duration used when callers do not pass one.

    Holder tokens issued by :meth:`acquire` are remembered per job name on the
    instance, so :meth:`release` only removes a lease this instance still owns.
    """

    def __init__(
        self,
        backend: LockBackend,
        *,
        default_ttl: timedelta = DEFAULT_LEASE_DURATION,
    ) -> None:
        _validate_ttl(default_ttl)
        self.backend = backend
        self.default_ttl = default_ttl
        self._held: dict[str, str] = {}
        self._acquired_at: dict[str, float] = {}

    def __repr__(self) -> str:
        return f"CronLock(default_ttl={self.default_ttl}, held={sorted(self._held)})"

    async def acquire(self, job_name: str, ttl: timedelta | None = None) -> bool:
        """Try once to take the lease for ``job_name``.

        Returns ``True`` only when this caller now exclusively holds the lease.
        Contention and store errors both return ``False``.
        """

        return await self._acquire(job_name, ttl) is not None

    async def release(self, job_name: str) -> None:
        """Release the lease most recently acquired through this instance.

        Failures are logged and swallowed; the lease expires on its own.
        """

        held = self._held.get(job_name)
        if held is None:
            logger.warning("release requested for a lock this holder does not own: job_name=%s", job_name)
            return
        await self._release(job_name, held)

    async def force_release(self, job_name: str) -> bool:
        """Delete the lease for ``job_name`` regardless of who holds it."""

        token = self._held.pop(job_name, None)
        if token is not None:
            self._acquired_at.pop(token, None)
        deleted = await self.backend.release(job_name)
        logger.warning("lock force-released: job_name=%s deleted=%s", job_name, deleted)
        return deleted

    async def with_lock(
        self,
        job_name: str,
        fn: Callable[[], Awaitable[T]],
        ttl: timedelta | None = None,
    ) -> LockResult[T]:
        """Run ``fn`` while holding the lease for ``job_name``.

        Returns ``LockResult(success=False, skipped=True)`` without calling
        ``fn`` when the lease is unavailable. Exceptions from ``fn`` propagate
        after the lease has been released.
        """

        token = await self._acquire(job_name, ttl)
        if token is None:
            return LockResult(success=False, skipped=True)
        try:
            result = await fn()
            return LockResult(success=True, result=result)
        finally:
            await self._release(job_name, token)

    @asynccontextmanager
    async def hold(self, job_name: str, ttl: timedelta | None = None) -> AsyncIterator[bool]:
        """Context manager form of :meth:`with_lock`; yields whether the lease was taken."""

        token = await self._acquire(job_name, ttl)
        try:
            yield token is not None
        finally:
            if token is not None:
                await self._release(job_name, token)

    async def _acquire(self, job_name: str, ttl: timedelta | None) -> str | None:
        if not job_name:
            raise ValueError("job_name must be a non-empty string")
        ttl = ttl if ttl is not None else self.default_ttl
        _validate_ttl(ttl)

        token = _make_token(job_name)
        try:
            acquired = await self.backend.try_acquire(job_name, token, ttl=ttl)
        except Exception:
            metrics.lock_acquisitions.labels(outcome="error").inc()
            logger.exception("lock acquisition failed: job_name=%s", job_name)
            return None

        if not acquired:
            metrics.lock_acquisitions.labels(outcome="contended").inc()
            logger.info("lock held elsewhere, skipping: job_name=%s", job_name)
            return None

        self._held[job_name] = token
        self._acquired_at[token] = time.monotonic()
        metrics.lock_acquisitions.labels(outcome="acquired").inc()
        logger.info("lock acquired: job_name=%s ttl_s=%s", job_name, ttl.total_seconds())
        return token

    async def _release(self, job_name: str, token: str) -> None:
        # A later acquisition on this instance may have replaced the entry.
        if self._held.get(job_name) == token:
            del self._held[job_name]
        acquired_at = self._acquired_at.pop(token, None)
        if acquired_at is not None:
            metrics.lock_hold_seconds.observe(time.monotonic() - acquired_at)
        try:
            deleted = await self.backend.release(job_name, holder_token=token)
        except Exception:
            metrics.lock_release_failures.inc()
            logger.warning("lock release failed: job_name=%s", job_name, exc_info=True)
            return
        if deleted:
            logger.info("lock released: job_name=%s", job_name)
        else:
            logger.warning("lock expired before release and was not removed: job_name=%s", job_name)


def _make_token(job_name: str) -> str:
    return f"{job_name}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _validate_ttl(ttl: timedelta) -> None:
    if ttl <= timedelta(0):
        raise ValueError("lease duration must be positive")
