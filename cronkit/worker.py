"""One-shot batch worker built on :mod:`asyncio` primitives.

Each scheduler invocation calls :meth:`BatchWorker.run_once` (or
:meth:`BatchWorker.run_locked`) to claim a batch of pending work items,
dispatch them to the handler registered for their job type and record the
outcome. Items run with a bounded degree of concurrency and are isolated from
one another: one failing item never affects its siblings.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from time import perf_counter
from typing import Any, Iterable

from .contracts import (
    InvalidTransitionError,
    JobType,
    LockResult,
    Outcome,
    QueueBackend,
    coerce_job_type,
    describe,
)
from .lock import CronLock
from .queue import WorkQueue
from . import metrics

DEFAULT_LOCK_NAME = "process-ai-jobs"
logger = logging.getLogger(__name__)


class Handler(ABC):
    """Processes work items of a single job type."""

    job_type: JobType

    @abstractmethod
    async def run(self, item: QueueBackend.WorkItem) -> None:
        """Process ``item``; raising marks it as ``error``."""


@dataclass(slots=True)
class BatchReport:
    claimed: int = 0
    processed: int = 0
    failed: int = 0


class BatchWorker:
    def __init__(
        self,
        queue: WorkQueue,
        handlers: Iterable[Handler],
        *,
        batch_size: int = 5,
        max_concurrency: int = 4,
        item_timeout_s: float | None = 300,
        lock: CronLock | None = None,
        lock_name: str = DEFAULT_LOCK_NAME,
    ) -> None:
        self.queue = queue
        self.handlers: dict[JobType, Handler] = {}
        for handler in handlers:
            self.register_handler(handler)
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.item_timeout_s = item_timeout_s
        self.lock = lock
        self.lock_name = lock_name
        self._validate_configuration()

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return (
            f"BatchWorker(batch_size={self.batch_size}, "
            f"concurrency={self.max_concurrency}, "
            f"handlers={sorted(t.value for t in self.handlers)})"
        )

    def register_handler(self, handler: Handler) -> None:
        """Register ``handler`` for its job type.

        Raises:
            ValueError: If the job type is unknown or already has a handler.
        """

        job_type = coerce_job_type(handler.job_type)
        if job_type in self.handlers:
            raise ValueError(f"duplicate handler registered: {job_type.value}")
        self.handlers[job_type] = handler

    def handler_for(self, job_type: JobType | str) -> Handler | None:
        try:
            return self.handlers.get(coerce_job_type(job_type))
        except ValueError:
            return None

    async def run_once(self) -> BatchReport:
        start = perf_counter()
        report = BatchReport()
        try:
            items = await self.queue.claim_batch(self.batch_size)
            report.claimed = len(items)
            if not items:
                return report
            sem = asyncio.Semaphore(self.max_concurrency)

            async def _guarded(item: QueueBackend.WorkItem) -> bool:
                async with sem:
                    return await self._process(item)

            results = await asyncio.gather(*(_guarded(item) for item in items))
            report.processed = sum(1 for ok in results if ok)
            report.failed = len(results) - report.processed
            logger.info(
                "batch finished: claimed=%s processed=%s failed=%s",
                report.claimed,
                report.processed,
                report.failed,
            )
            return report
        finally:
            metrics.batch_duration.observe(perf_counter() - start)

    async def run_locked(self) -> LockResult[BatchReport]:
        """Run one batch under the worker's lease, skipping if it is held elsewhere."""

        if self.lock is None:
            raise RuntimeError("run_locked requires a CronLock")
        return await self.lock.with_lock(self.lock_name, self.run_once)

    async def _process(self, item: QueueBackend.WorkItem) -> bool:
        item_id = item["id"]
        handler = self.handler_for(item["job_type"])
        if handler is None:
            await self._finish(item_id, Outcome.ERROR, f"no handler for job type {item['job_type']}")
            return False
        try:
            async with asyncio.timeout(self.item_timeout_s):
                await handler.run(item)
        except TimeoutError:
            await self._finish(item_id, Outcome.ERROR, f"timed out after {self.item_timeout_s}s")
            return False
        except Exception as exc:
            logger.warning("handler raised for item %s", item_id, exc_info=True)
            await self._finish(item_id, Outcome.ERROR, describe(exc))
            return False
        return await self._finish(item_id, Outcome.DONE, None)

    async def _finish(self, item_id: Any, outcome: Outcome, error_message: str | None) -> bool:
        try:
            await self.queue.complete(item_id, outcome, error_message)
        except InvalidTransitionError as exc:
            logger.info("item %s changed state during processing: %s", item_id, exc)
            return False
        except Exception:
            logger.exception("failed to record outcome %s for item %s", outcome.value, item_id)
            return False
        return outcome is Outcome.DONE

    def _validate_configuration(self) -> None:
        if self.batch_size <= 0:
            raise ValueError("batch_size must be greater than 0")
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be greater than 0")
        if self.item_timeout_s is not None and self.item_timeout_s <= 0:
            raise ValueError("item_timeout_s must be greater than 0 when provided")
        if not self.lock_name:
            raise ValueError("lock_name must be a non-empty string")
