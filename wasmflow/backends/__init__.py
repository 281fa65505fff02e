"""Graph snapshot storage backends."""

from wasmflow.backends.base import SnapshotBackend
from wasmflow.backends.memory import MemoryBackend
from wasmflow.backends.sqlite import SQLiteBackend

__all__ = [
    "SnapshotBackend",
    "MemoryBackend",
    "SQLiteBackend",
]
