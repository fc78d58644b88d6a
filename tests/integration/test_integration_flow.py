"""Integration scenarios: overlapping scheduler firings sharing one store."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from cronkit.backends.memory import MemoryBackend
from cronkit.contracts import JobType, LockResult
from cronkit.lock import CronLock
from cronkit.queue import WorkQueue
from cronkit.worker import BatchWorker, Handler


class _SlowHandler(Handler):
    job_type = JobType.PATCH_SUMMARY

    def __init__(self) -> None:
        self.runs: list[str] = []

    async def run(self, item) -> None:
        self.runs.append(item["entity_id"])
        await asyncio.sleep(0.05)


@pytest.mark.integration
def test_simultaneous_firings_run_task_once() -> None:
    async def _run() -> None:
        backend = MemoryBackend()
        invocations: list[int] = []

        async def fetch_videos() -> int:
            invocations.append(1)
            await asyncio.sleep(0.05)
            return 12

        # Each firing is a separate stateless invocation with its own lock object.
        first, second = await asyncio.gather(
            CronLock(backend).with_lock("fetch-videos", fetch_videos, timedelta(minutes=5)),
            CronLock(backend).with_lock("fetch-videos", fetch_videos, timedelta(minutes=5)),
        )
        assert invocations == [1]
        assert sorted([first.success, second.success]) == [False, True]
        skipped = first if not first.success else second
        assert skipped == LockResult(success=False, skipped=True)
        assert await backend.get_lease("fetch-videos") is None

    asyncio.run(_run())


@pytest.mark.integration
def test_overlapping_batch_workers_share_queue_without_duplicates() -> None:
    async def _run() -> None:
        backend = MemoryBackend()
        queue = WorkQueue(backend)
        for i in range(4):
            await queue.enqueue("PATCH_SUMMARY", f"patch-{i}")
            await queue.enqueue("PATCH_SUMMARY", f"patch-{i}")

        handler = _SlowHandler()
        workers = [
            BatchWorker(queue, [handler], batch_size=4, lock=CronLock(backend))
            for _ in range(2)
        ]
        outcomes = await asyncio.gather(*(w.run_locked() for w in workers))
        assert sorted(o.skipped for o in outcomes) == [False, True]
        assert sorted(handler.runs) == [f"patch-{i}" for i in range(4)]
        assert await queue.stats() == {"pending": 0, "running": 0, "done": 4, "error": 0}

        # Unlocked workers still never receive the same item twice.
        for i in range(6):
            await queue.enqueue("PATCH_SUMMARY", f"patch-{i}")
        handler.runs.clear()
        reports = await asyncio.gather(
            BatchWorker(queue, [handler], batch_size=4).run_once(),
            BatchWorker(queue, [handler], batch_size=4).run_once(),
        )
        assert sum(r.claimed for r in reports) == 6
        assert sorted(handler.runs) == sorted(f"patch-{i}" for i in range(6))

    asyncio.run(_run())
