"""Backend implementations."""

from .memory import MemoryBackend
from .sql.backend import SQLBackend

__all__ = ["MemoryBackend", "SQLBackend"]
