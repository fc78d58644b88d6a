"""Idempotent work queue facade."""

from __future__ import annotations

import logging
from typing import Iterable
from uuid import UUID

from .contracts import (
    EnqueueResult,
    InvalidTransitionError,
    JobType,
    Outcome,
    QueueBackend,
    WorkStatus,
    coerce_job_type,
)
from . import metrics

ENQUEUE_FAILED = "Failed to queue job"
logger = logging.getLogger(__name__)


class WorkQueue:
    """Front-end for requesting, claiming and completing work items.

    Every call site (cron triggers, user actions, admin endpoints) may ask for
    the same ``(job_type, entity_id)`` repeatedly; while an item for that key
    is pending or running, :meth:`enqueue` hands back its id instead of
    creating another one.
    """

    def __init__(self, backend: QueueBackend) -> None:
        self.backend = backend

    def __repr__(self) -> str:
        return f"WorkQueue(backend={self.backend.__class__.__name__})"

    async def enqueue(self, job_type: JobType | str, entity_id: str) -> EnqueueResult:
        """Request processing of ``entity_id`` for ``job_type``.

        Store failures are logged and reported through ``EnqueueResult.error``
        rather than raised.

        Raises:
            ValueError: If ``job_type`` is unknown or ``entity_id`` is empty.
        """

        kind = coerce_job_type(job_type)
        if not entity_id:
            raise ValueError("entity_id must be a non-empty string")
        try:
            item_id, created = await self.backend.enqueue(kind.value, entity_id)
        except Exception:
            metrics.enqueue_total.labels(outcome="error").inc()
            logger.exception(
                "enqueue failed: job_type=%s entity_id=%s", kind.value, entity_id
            )
            return EnqueueResult(error=ENQUEUE_FAILED)

        metrics.enqueue_total.labels(outcome="created" if created else "deduplicated").inc()
        logger.info(
            "enqueue %s: item_id=%s job_type=%s entity_id=%s",
            "accepted" if created else "deduplicated",
            item_id,
            kind.value,
            entity_id,
        )
        return EnqueueResult(id=item_id, created=created)

    async def enqueue_many(
        self, job_type: JobType | str, entity_ids: Iterable[str]
    ) -> dict[str, EnqueueResult]:
        """Enqueue each of ``entity_ids``; duplicates in the input collapse."""

        results: dict[str, EnqueueResult] = {}
        for entity_id in entity_ids:
            if entity_id in results:
                continue
            results[entity_id] = await self.enqueue(job_type, entity_id)
        return results

    async def claim_batch(self, max_count: int) -> list[QueueBackend.WorkItem]:
        """Claim up to ``max_count`` of the oldest pending items."""

        if max_count <= 0:
            raise ValueError("max_count must be greater than 0")
        items = await self.backend.claim_batch(max_count)
        logger.debug("claimed %s item(s) (max_count=%s)", len(items), max_count)
        return items

    async def complete(
        self,
        item_id: UUID,
        outcome: Outcome | str,
        error_message: str | None = None,
    ) -> None:
        """Move a running item to ``done`` or ``error``.

        Raises:
            InvalidTransitionError: If the item is not currently running.
            KeyError: If the item does not exist.
        """

        outcome = Outcome(outcome)
        if not await self.backend.complete(item_id, outcome, error_message=error_message):
            raise InvalidTransitionError(f"work item {item_id} is not running")
        metrics.items_completed.labels(outcome=outcome.value).inc()
        if outcome is Outcome.ERROR:
            logger.warning("item failed: item_id=%s error=%s", item_id, error_message)
        else:
            logger.info("item done: item_id=%s", item_id)

    async def retry(self, item_id: UUID) -> bool:
        """Put an errored item back to pending.

        Returns ``False`` when a newer active item for the same key already
        exists; that item covers the request.

        Raises:
            InvalidTransitionError: If the item is not in ``error``.
        """

        item = await self.backend.get(item_id)
        if item["status"] != WorkStatus.ERROR.value:
            raise InvalidTransitionError(
                f"work item {item_id} is {item['status']}, only errored items can be retried"
            )
        requeued = await self.backend.retry(item_id)
        logger.info("retry requested: item_id=%s requeued=%s", item_id, requeued)
        return requeued

    async def get(self, item_id: UUID) -> dict:
        return await self.backend.get(item_id)

    async def stats(self) -> dict[str, int]:
        return await self.backend.stats()

    async def check_connection(self) -> None:
        await self.backend.check_connection()
