"""SQL backend helpers."""

from .backend import SQLBackend
from .schema import CronLocks, WorkItems, metadata

__all__ = ["SQLBackend", "CronLocks", "WorkItems", "metadata"]
