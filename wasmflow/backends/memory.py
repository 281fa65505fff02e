"""In-memory snapshot backend for tests and ephemeral sessions."""

import copy
from typing import Any, Dict, List, Optional


class MemoryBackend:
    """Stores snapshots in a dictionary; contents are lost on exit."""

    def __init__(self):
        self._storage: Dict[str, Dict[str, Any]] = {}

    async def save(self, snapshot_id: str, data: Dict[str, Any]) -> None:
        self._storage[snapshot_id] = copy.deepcopy(data)

    async def load(self, snapshot_id: str) -> Optional[Dict[str, Any]]:
        if snapshot_id in self._storage:
            return copy.deepcopy(self._storage[snapshot_id])
        return None

    async def delete(self, snapshot_id: str) -> None:
        self._storage.pop(snapshot_id, None)

    async def exists(self, snapshot_id: str) -> bool:
        return snapshot_id in self._storage

    async def list_snapshots(self) -> List[str]:
        return list(self._storage.keys())

    def clear_all(self) -> None:
        self._storage.clear()

    def __repr__(self) -> str:
        return f"MemoryBackend(snapshots={len(self._storage)})"
