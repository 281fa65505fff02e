"""Protocol for graph snapshot storage backends."""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@runtime_checkable
class SnapshotBackend(Protocol):
    """Key/value store for serialized graph snapshots.

    Backends store the snapshot envelope as-is; integrity checks happen in
    ``wasmflow.snapshots`` when the data is loaded.
    """

    async def save(self, snapshot_id: str, data: Dict[str, Any]) -> None:
        """Store a snapshot, replacing any previous one with the same id."""
        ...

    async def load(self, snapshot_id: str) -> Optional[Dict[str, Any]]:
        """Return a stored snapshot, or None if not found."""
        ...

    async def delete(self, snapshot_id: str) -> None:
        ...

    async def exists(self, snapshot_id: str) -> bool:
        ...

    async def list_snapshots(self) -> List[str]:
        """Ids of every stored snapshot."""
        ...
