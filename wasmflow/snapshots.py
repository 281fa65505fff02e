"""Checksummed graph snapshots.

A snapshot is the serialized form of a ``NodeGraph`` wrapped in an envelope
that carries a magic tag, a format version and a SHA-256 checksum over the
canonical JSON of the graph. Loading verifies all three before the graph is
rebuilt.

Continuous runtime state is never part of a snapshot: every continuous node
comes back Idle, and every node comes back dirty so the next pass recomputes
its outputs.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from wasmflow.core.graph import NodeGraph
from wasmflow.core.state import ExecutionState
from wasmflow.utils.errors import SnapshotIntegrityError

MAGIC = "WASMFLOW"
FORMAT_VERSION = 1


def _checksum(graph: Dict[str, Any]) -> str:
    content = json.dumps({"magic": MAGIC, "version": FORMAT_VERSION, "graph": graph}, sort_keys=True)
    return hashlib.sha256(content.encode()).hexdigest()


@dataclass
class GraphSnapshot:
    """Serialized graph plus integrity envelope.

    Attributes:
        snapshot_id: Storage key of the snapshot
        graph_id: Id of the captured graph
        name: Name of the captured graph
        created_at: Capture time
        graph: JSON-compatible graph dump
        checksum: SHA-256 over the canonical graph JSON
        metadata: Free-form caller data, not covered by the checksum
    """

    snapshot_id: str
    graph_id: str
    name: str
    created_at: datetime
    graph: Dict[str, Any]
    checksum: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.checksum:
            self.checksum = _checksum(self.graph)

    @classmethod
    def capture(
        cls,
        graph: NodeGraph,
        snapshot_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "GraphSnapshot":
        return cls(
            snapshot_id=snapshot_id or uuid.uuid4().hex,
            graph_id=graph.id,
            name=graph.name,
            created_at=datetime.now(),
            graph=graph.model_dump(mode="json"),
            metadata=dict(metadata or {}),
        )

    def verify_integrity(self) -> bool:
        return _checksum(self.graph) == self.checksum

    def restore(self) -> NodeGraph:
        """Rebuild the graph with transient state reset.

        Raises:
            SnapshotIntegrityError: If the checksum does not match
        """
        if not self.verify_integrity():
            raise SnapshotIntegrityError(
                f"Snapshot '{self.snapshot_id}' failed its integrity check",
                hint="The stored graph was modified or truncated",
            )
        graph = NodeGraph.model_validate(self.graph)
        for node in graph.nodes.values():
            node.dirty = True
            node.execution_state = ExecutionState.IDLE
            node.input_fingerprint = None
            if node.continuous is not None:
                node.continuous.reset_runtime()
        return graph

    def to_dict(self) -> Dict[str, Any]:
        return {
            "magic": MAGIC,
            "version": FORMAT_VERSION,
            "snapshot_id": self.snapshot_id,
            "graph_id": self.graph_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "graph": self.graph,
            "checksum": self.checksum,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphSnapshot":
        """Deserialize and verify a snapshot envelope.

        Raises:
            SnapshotIntegrityError: On a wrong magic tag, an unsupported
                version, missing fields or a checksum mismatch
        """
        if data.get("magic") != MAGIC:
            raise SnapshotIntegrityError("Data is not a WasmFlow graph snapshot")
        if data.get("version") != FORMAT_VERSION:
            raise SnapshotIntegrityError(
                f"Unsupported snapshot version {data.get('version')!r}",
                hint=f"This release reads version {FORMAT_VERSION}",
            )
        try:
            snapshot = cls(
                snapshot_id=data["snapshot_id"],
                graph_id=data["graph_id"],
                name=data["name"],
                created_at=datetime.fromisoformat(data["created_at"]),
                graph=data["graph"],
                checksum=data["checksum"],
                metadata=data.get("metadata") or {},
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotIntegrityError(f"Malformed snapshot: {e}") from e
        if not snapshot.verify_integrity():
            raise SnapshotIntegrityError(
                f"Snapshot '{snapshot.snapshot_id}' checksum mismatch",
                hint="The stored graph was modified or truncated",
            )
        return snapshot


async def save_graph(
    backend,
    graph: NodeGraph,
    snapshot_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> GraphSnapshot:
    """Capture a graph and store it in a snapshot backend."""
    snapshot = GraphSnapshot.capture(graph, snapshot_id=snapshot_id or graph.id, metadata=metadata)
    await backend.save(snapshot.snapshot_id, snapshot.to_dict())
    return snapshot


async def load_graph(backend, snapshot_id: str) -> Optional[NodeGraph]:
    """Load, verify and rebuild a stored graph; None when absent."""
    data = await backend.load(snapshot_id)
    if data is None:
        return None
    return GraphSnapshot.from_dict(data).restore()


async def list_snapshots(backend) -> List[str]:
    return await backend.list_snapshots()
