"""Cronkit: single-flight cron leases and an idempotent work queue."""

from .contracts import (
    EnqueueResult,
    JobType,
    LockBackend,
    LockResult,
    Outcome,
    QueueBackend,
    WorkStatus,
)
from .lock import CronLock
from .queue import WorkQueue
from .worker import BatchWorker, Handler

__version__ = "0.1.0"

__all__ = [
    "BatchWorker",
    "CronLock",
    "EnqueueResult",
    "Handler",
    "JobType",
    "LockBackend",
    "LockResult",
    "Outcome",
    "QueueBackend",
    "WorkQueue",
    "WorkStatus",
    "__version__",
]
