"""Tests for the idempotent work queue facade."""

from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

import pytest

from cronkit.backends.memory import MemoryBackend
from cronkit.contracts import EnqueueResult, InvalidTransitionError, JobType, Outcome
from cronkit.queue import ENQUEUE_FAILED, WorkQueue


class _InsertFailsBackend(MemoryBackend):
    async def enqueue(self, job_type, entity_id):  # type: ignore[override]
        raise ConnectionError("insert rejected")


def test_enqueue_is_idempotent_while_pending() -> None:
    async def _run() -> None:
        backend = MemoryBackend()
        queue = WorkQueue(backend)
        first = await queue.enqueue("PATCH_SUMMARY", "game-1")
        second = await queue.enqueue(JobType.PATCH_SUMMARY, "game-1")
        assert first.ok and second.ok
        assert first.id == second.id
        assert first.created is True and second.created is False
        assert (await queue.stats())["pending"] == 1

    asyncio.run(_run())


def test_enqueue_after_done_creates_new_item() -> None:
    async def _run() -> None:
        queue = WorkQueue(MemoryBackend())
        first = await queue.enqueue("PATCH_SUMMARY", "game-1")
        [item] = await queue.claim_batch(1)
        await queue.complete(item["id"], Outcome.DONE)

        again = await queue.enqueue("PATCH_SUMMARY", "game-1")
        assert again.created is True
        assert again.id != first.id
        assert (await queue.get(first.id))["status"] == "done"

    asyncio.run(_run())


def test_enqueue_store_failure_returns_error(caplog) -> None:
    async def _run() -> None:
        queue = WorkQueue(_InsertFailsBackend())
        with caplog.at_level(logging.ERROR, logger="cronkit.queue"):
            result = await queue.enqueue("NEWS_SUMMARY", "news-1")
        assert result == EnqueueResult(error=ENQUEUE_FAILED)
        assert result.ok is False
        assert "enqueue failed" in caplog.text

    asyncio.run(_run())


def test_enqueue_validates_arguments() -> None:
    async def _run() -> None:
        queue = WorkQueue(MemoryBackend())
        with pytest.raises(ValueError):
            await queue.enqueue("NOT_A_JOB", "game-1")
        with pytest.raises(ValueError):
            await queue.enqueue("PATCH_SUMMARY", "")
        with pytest.raises(ValueError):
            await queue.claim_batch(0)

    asyncio.run(_run())


def test_enqueue_many_collapses_duplicates() -> None:
    async def _run() -> None:
        queue = WorkQueue(MemoryBackend())
        results = await queue.enqueue_many("NEWS_SUMMARY", ["a", "b", "a"])
        assert list(results) == ["a", "b"]
        assert all(result.created for result in results.values())
        again = await queue.enqueue_many("NEWS_SUMMARY", ["b"])
        assert again["b"].id == results["b"].id and again["b"].created is False

    asyncio.run(_run())


def test_claim_batch_oldest_first_and_disjoint() -> None:
    async def _run() -> None:
        queue = WorkQueue(MemoryBackend())
        ids = [(await queue.enqueue("DISCOVER_RELEASES", f"week-{i}")).id for i in range(5)]
        first, second = await asyncio.gather(queue.claim_batch(3), queue.claim_batch(3))
        claimed = [item["id"] for item in first + second]
        assert sorted(map(str, claimed)) == sorted(map(str, ids))
        assert len(set(claimed)) == 5
        assert [item["id"] for item in first] == ids[:3]

    asyncio.run(_run())


def test_complete_requires_running_item() -> None:
    async def _run() -> None:
        queue = WorkQueue(MemoryBackend())
        pending = await queue.enqueue("PATCH_SUMMARY", "game-2")
        with pytest.raises(InvalidTransitionError):
            await queue.complete(pending.id, Outcome.DONE)
        [item] = await queue.claim_batch(1)
        await queue.complete(item["id"], "error", "model returned nothing")
        with pytest.raises(InvalidTransitionError):
            await queue.complete(item["id"], Outcome.DONE)
        with pytest.raises(KeyError):
            await queue.complete(uuid4(), Outcome.DONE)
        row = await queue.get(item["id"])
        assert row["status"] == "error"
        assert row["error_message"] == "model returned nothing"

    asyncio.run(_run())


def test_failed_item_stays_failed_until_explicit_retry() -> None:
    async def _run() -> None:
        queue = WorkQueue(MemoryBackend())
        result = await queue.enqueue("PATCH_SUMMARY", "game-3")
        [item] = await queue.claim_batch(1)
        await queue.complete(item["id"], Outcome.ERROR, "boom")
        assert await queue.claim_batch(5) == []

        assert await queue.retry(result.id) is True
        [again] = await queue.claim_batch(1)
        assert again["id"] == result.id
        assert again["attempts"] == 2
        with pytest.raises(InvalidTransitionError):
            await queue.retry(result.id)

    asyncio.run(_run())


def test_stats_counts_by_status() -> None:
    async def _run() -> None:
        queue = WorkQueue(MemoryBackend())
        for entity in ("a", "b", "c"):
            await queue.enqueue("NEWS_SUMMARY", entity)
        items = await queue.claim_batch(2)
        await queue.complete(items[0]["id"], Outcome.DONE)
        assert await queue.stats() == {"pending": 1, "running": 1, "done": 1, "error": 0}

    asyncio.run(_run())
