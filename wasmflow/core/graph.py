"""Core graph data structures for WasmFlow.

A ``NodeGraph`` holds nodes (component instances with typed input and output
ports) and edges between ports. It is pure data plus structural queries: the
execution engine and the continuous controller mutate node state through it,
and graph edits are validated here before anything runs.

Invariants:
    - an edge always connects an existing output port to an existing input
      port of compatible type, and an input port has at most one incoming edge
    - the graph never holds a dangling edge: removing a node removes its edges
    - edges never close a cycle
"""

import copy
import hashlib
import heapq
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field, PrivateAttr, field_validator

from wasmflow.core.state import ContinuousNodeConfig, ExecutionState
from wasmflow.core.types import NodeValue, normalize_type, types_compatible
from wasmflow.utils.errors import (
    CycleDetectedError,
    DuplicateNodeError,
    GraphValidationError,
    IncompatibleTypesError,
    NodeNotFoundError,
    PortAlreadyConnectedError,
    PortNotFoundError,
    SelfConnectionError,
)


def _new_id() -> str:
    return uuid.uuid4().hex


class PortDirection(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


class Port(BaseModel):
    """A typed input or output slot on a node.

    Attributes:
        name: Port name, unique per node and direction
        data_type: Declared type, see ``wasmflow.core.types``
        direction: Input or output
        optional: Whether an input may be left without a value
        description: Free text shown to the user
        value: Last known value, or None
    """

    name: str
    data_type: str
    direction: PortDirection
    optional: bool = False
    description: str = ""
    value: Optional[NodeValue] = None

    @field_validator("data_type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return normalize_type(value)


class Edge(BaseModel):
    """A directed connection from an output port to an input port."""

    id: str = Field(default_factory=_new_id)
    source: str
    source_port: str
    target: str
    target_port: str

    def __hash__(self):
        return hash((self.source, self.source_port, self.target, self.target_port))


class Node(BaseModel):
    """A component instance placed in the graph.

    Attributes:
        id: Node identity, also the deterministic tie-break key
        component_id: Registry identity of the backing component
        display_name: Label shown to the user
        position: Canvas position, ignored by the core
        inputs: Input ports
        outputs: Output ports
        execution_state: Idle, Running, Completed or Failed
        dirty: Whether the node must run in the next pass
        last_error: Serialized error of the last failed run
        input_fingerprint: Digest of the inputs of the last successful run
        continuous: Continuous-mode configuration, for run-until-stopped components
        composition: Internal snapshot, for composite nodes
    """

    id: str = Field(default_factory=_new_id)
    component_id: str
    display_name: str
    position: Tuple[float, float] = (0.0, 0.0)
    inputs: List[Port] = Field(default_factory=list)
    outputs: List[Port] = Field(default_factory=list)
    execution_state: ExecutionState = ExecutionState.IDLE
    dirty: bool = True
    last_error: Optional[Dict[str, Any]] = None
    input_fingerprint: Optional[str] = None
    continuous: Optional[ContinuousNodeConfig] = None
    composition: Optional["CompositionData"] = None

    def get_input(self, name: str) -> Optional[Port]:
        return next((port for port in self.inputs if port.name == name), None)

    def get_output(self, name: str) -> Optional[Port]:
        return next((port for port in self.outputs if port.name == name), None)

    @property
    def is_composite(self) -> bool:
        return self.composition is not None


class PortMapping(BaseModel):
    """Maps an exposed composite port to a port of an internal node."""

    external_name: str
    internal_node_id: str
    internal_port: str
    data_type: str


class CompositionMetadata(BaseModel):
    created_at: datetime = Field(default_factory=datetime.now)
    component_count: int = 0
    component_names: List[str] = Field(default_factory=list)
    size_bytes: int = 0
    composition_hash: str = ""


class CompositionData(BaseModel):
    """Read-only snapshot of a composed subgraph.

    ``internal_nodes`` is kept sorted by node id so that hashing and
    checksummed serialization are reproducible.
    """

    name: str
    socket_path: str
    socket_node_id: str = ""
    plug_paths: List[str] = Field(default_factory=list)
    internal_nodes: Dict[str, Node] = Field(default_factory=dict)
    internal_edges: List[Edge] = Field(default_factory=list)
    exposed_inputs: Dict[str, PortMapping] = Field(default_factory=dict)
    exposed_outputs: Dict[str, PortMapping] = Field(default_factory=dict)
    metadata: CompositionMetadata = Field(default_factory=CompositionMetadata)

    @field_validator("internal_nodes")
    @classmethod
    def _sort_nodes(cls, nodes: Dict[str, Node]) -> Dict[str, Node]:
        return dict(sorted(nodes.items()))

    def compute_hash(self) -> str:
        """SHA-256 over the structural content of the composition."""
        content = json.dumps(
            {
                "name": self.name,
                "socket_path": self.socket_path,
                "socket_node_id": self.socket_node_id,
                "plug_paths": self.plug_paths,
                "nodes": {
                    node_id: [node.component_id, [p.name for p in node.inputs], [p.name for p in node.outputs]]
                    for node_id, node in self.internal_nodes.items()
                },
                "edges": sorted(
                    [e.source, e.source_port, e.target, e.target_port] for e in self.internal_edges
                ),
                "inputs": {k: v.model_dump() for k, v in self.exposed_inputs.items()},
                "outputs": {k: v.model_dump() for k, v in self.exposed_outputs.items()},
            },
            sort_keys=True,
        )
        return hashlib.sha256(content.encode()).hexdigest()

    def internal_graph(self) -> "NodeGraph":
        """Fresh graph built from the snapshot, for inspection or execution."""
        graph = NodeGraph(name=self.name)
        for node in self.internal_nodes.values():
            graph.nodes[node.id] = node.model_copy(deep=True)
        graph.edges = [edge.model_copy() for edge in self.internal_edges]
        return graph


Node.model_rebuild()


@dataclass
class ValidationReport:
    """Result of a structural graph check."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class NodeGraph(BaseModel):
    """Mutable node/edge graph with structural queries.

    Example:
        >>> graph = NodeGraph()
        >>> graph.add_node(constant)
        >>> graph.add_node(adder)
        >>> graph.add_edge(constant.id, "value", adder.id, "a")
        >>> graph.topological_order()
        [...]
    """

    id: str = Field(default_factory=_new_id)
    name: str = "Untitled Graph"
    nodes: Dict[str, Node] = Field(default_factory=dict)
    edges: List[Edge] = Field(default_factory=list)

    _order_cache: Optional[List[str]] = PrivateAttr(default=None)

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def add_node(self, node: Node) -> str:
        """Add a node and return its id.

        Raises:
            DuplicateNodeError: If a node with the same id exists
        """
        if node.id in self.nodes:
            raise DuplicateNodeError(f"Node '{node.id}' already exists", node_id=node.id)
        node.dirty = True
        self.nodes[node.id] = node
        self._invalidate()
        return node.id

    def remove_node(self, node_id: str) -> Node:
        """Remove a node together with every edge touching it.

        Inputs that were fed by the removed node lose their value and
        become dirty.
        """
        node = self.get_node(node_id)
        for edge in [e for e in self.edges if e.source == node_id or e.target == node_id]:
            self._detach(edge)
        del self.nodes[node_id]
        self._invalidate()
        return node

    def add_edge(self, source: str, source_port: str, target: str, target_port: str) -> Edge:
        """Connect an output port to an input port.

        Returns:
            The new edge

        Raises:
            NodeNotFoundError: If an endpoint node does not exist
            PortNotFoundError: If an endpoint port does not exist
            SelfConnectionError: If source and target are the same node
            IncompatibleTypesError: If the port types do not match
            PortAlreadyConnectedError: If the input already has an edge
            CycleDetectedError: If the edge would close a cycle
        """
        source_node = self.get_node(source)
        target_node = self.get_node(target)
        out_port = source_node.get_output(source_port)
        if out_port is None:
            raise PortNotFoundError(source, source_port, "output")
        in_port = target_node.get_input(target_port)
        if in_port is None:
            raise PortNotFoundError(target, target_port, "input")
        if source == target:
            raise SelfConnectionError("Cannot connect a node to itself", node_id=source)
        if not types_compatible(out_port.data_type, in_port.data_type):
            raise IncompatibleTypesError(
                out_port.data_type, in_port.data_type, node_id=target, port_name=target_port
            )
        if self.edge_into(target, target_port) is not None:
            raise PortAlreadyConnectedError(
                f"Input '{target_port}' of node '{target}' is already connected",
                node_id=target,
                port_name=target_port,
                hint="Remove the existing connection first",
            )
        path = self._path(target, source)
        if path is not None:
            raise CycleDetectedError(
                f"Connecting '{source}' to '{target}' would create a cycle",
                cycle=path + [target],
            )

        edge = Edge(source=source, source_port=source_port, target=target, target_port=target_port)
        self.edges.append(edge)
        self._invalidate()
        self.mark_dirty(target)
        return edge

    def remove_edge(self, edge_id: str) -> Edge:
        """Remove an edge by id; the target input loses its derived value."""
        for edge in self.edges:
            if edge.id == edge_id:
                self._detach(edge)
                self._invalidate()
                return edge
        raise GraphValidationError(f"Edge '{edge_id}' not found")

    def set_input_value(self, node_id: str, port_name: str, value: Optional[NodeValue]) -> None:
        """Set the user-supplied value of an unconnected input port.

        The node is marked dirty when the value changes.
        """
        node = self.get_node(node_id)
        port = node.get_input(port_name)
        if port is None:
            raise PortNotFoundError(node_id, port_name, "input")
        if self.edge_into(node_id, port_name) is not None:
            raise PortAlreadyConnectedError(
                f"Input '{port_name}' of node '{node_id}' is driven by a connection",
                node_id=node_id,
                port_name=port_name,
                hint="Disconnect the input before setting a value",
            )
        if value is not None and not value.matches(port.data_type):
            raise IncompatibleTypesError(value.data_type, port.data_type, node_id=node_id, port_name=port_name)
        if port.value == value:
            return
        port.value = value
        self.mark_dirty(node_id)

    def set_output_values(self, node_id: str, outputs: Dict[str, NodeValue]) -> None:
        """Write output values produced by a run; unknown names are ignored."""
        node = self.get_node(node_id)
        for port in node.outputs:
            if port.name in outputs:
                port.value = outputs[port.name]

    def mark_dirty(self, node_id: str) -> None:
        """Mark a node and every transitively dependent node dirty."""
        pending = [node_id]
        seen: Set[str] = set()
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            node = self.get_node(current)
            node.dirty = True
            if node.execution_state != ExecutionState.RUNNING:
                node.execution_state = ExecutionState.IDLE
            pending.extend(edge.target for edge in self.outgoing_edges(current))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise NodeNotFoundError(node_id) from None

    def incoming_edges(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def edge_into(self, node_id: str, port_name: str) -> Optional[Edge]:
        """The edge feeding an input port, if any."""
        for edge in self.edges:
            if edge.target == node_id and edge.target_port == port_name:
                return edge
        return None

    def descendants(self, node_id: str) -> Set[str]:
        return self._reach(node_id, forward=True)

    def ancestors(self, node_id: str) -> Set[str]:
        return self._reach(node_id, forward=False)

    def topological_order(self, subset: Optional[Iterable[str]] = None) -> List[str]:
        """Dependency order of the graph (Kahn's algorithm).

        Independent nodes are ordered by ascending node id, so identical
        graphs always produce identical orders.

        Args:
            subset: Restrict the result to these node ids, keeping global order

        Raises:
            CycleDetectedError: If the stored edges contain a cycle
        """
        if self._order_cache is None:
            in_degree = {node_id: 0 for node_id in self.nodes}
            children: Dict[str, List[str]] = {node_id: [] for node_id in self.nodes}
            for edge in self.edges:
                in_degree[edge.target] += 1
                children[edge.source].append(edge.target)

            ready = [node_id for node_id, degree in in_degree.items() if degree == 0]
            heapq.heapify(ready)
            order: List[str] = []
            while ready:
                current = heapq.heappop(ready)
                order.append(current)
                for child in children[current]:
                    in_degree[child] -= 1
                    if in_degree[child] == 0:
                        heapq.heappush(ready, child)

            if len(order) != len(self.nodes):
                remaining = sorted(set(self.nodes) - set(order))
                raise CycleDetectedError(
                    f"Graph contains a cycle through: {', '.join(remaining)}", cycle=remaining
                )
            self._order_cache = order

        if subset is None:
            return list(self._order_cache)
        wanted = set(subset)
        return [node_id for node_id in self._order_cache if node_id in wanted]

    def dirty_execution_order(self) -> List[str]:
        """Topological order of dirty nodes and everything downstream of them."""
        affected: Set[str] = set()
        for node_id, node in self.nodes.items():
            if node.dirty and node_id not in affected:
                affected.add(node_id)
                affected |= self.descendants(node_id)
        return self.topological_order(affected)

    def resolve_inputs(self, node_id: str) -> List[Tuple[str, NodeValue]]:
        """Current input values of a node, in port order.

        Connected inputs take the upstream output value (and the input port
        is updated to mirror it); unconnected inputs keep their own value.
        Ports without a value are omitted.
        """
        node = self.get_node(node_id)
        resolved: List[Tuple[str, NodeValue]] = []
        for port in node.inputs:
            edge = self.edge_into(node_id, port.name)
            if edge is not None:
                source_port = self.get_node(edge.source).get_output(edge.source_port)
                port.value = source_port.value if source_port is not None else None
            if port.value is not None:
                resolved.append((port.name, port.value))
        return resolved

    def is_connected_subgraph(self, node_ids: Iterable[str]) -> bool:
        """Check that the nodes form one connected component.

        Connectivity only follows edges between selected nodes, ignoring
        direction. Fewer than two nodes, or unknown ids, are never connected.
        """
        selected = set(node_ids)
        if len(selected) < 2 or not selected <= set(self.nodes):
            return False

        neighbours: Dict[str, Set[str]] = {node_id: set() for node_id in selected}
        for edge in self.edges:
            if edge.source in selected and edge.target in selected:
                neighbours[edge.source].add(edge.target)
                neighbours[edge.target].add(edge.source)

        start = min(selected)
        visited = {start}
        stack = [start]
        while stack:
            for neighbour in neighbours[stack.pop()]:
                if neighbour not in visited:
                    visited.add(neighbour)
                    stack.append(neighbour)
        return visited == selected

    def snapshot(self, node_ids: Iterable[str]) -> Tuple[Dict[str, Node], List[Edge]]:
        """Deep copies of the given nodes and of the edges between them."""
        selected = set(node_ids)
        nodes = {
            node_id: self.get_node(node_id).model_copy(deep=True) for node_id in sorted(selected)
        }
        edges = [
            edge.model_copy()
            for edge in self.edges
            if edge.source in selected and edge.target in selected
        ]
        return nodes, edges

    def validate(self) -> ValidationReport:
        """Check the stored structure without modifying it."""
        report = ValidationReport()
        for edge in self.edges:
            source = self.nodes.get(edge.source)
            target = self.nodes.get(edge.target)
            if source is None or target is None:
                report.errors.append(f"Edge {edge.id} references a missing node")
                continue
            out_port = source.get_output(edge.source_port)
            in_port = target.get_input(edge.target_port)
            if out_port is None or in_port is None:
                report.errors.append(f"Edge {edge.id} references a missing port")
                continue
            if not types_compatible(out_port.data_type, in_port.data_type):
                report.errors.append(
                    f"Edge {edge.id}: {out_port.data_type} is incompatible with {in_port.data_type}"
                )

        if report.errors:
            return report

        try:
            self._invalidate()
            self.topological_order()
        except CycleDetectedError as e:
            report.errors.append(str(e))

        for node in self.nodes.values():
            for port in node.inputs:
                if port.optional or port.value is not None:
                    continue
                if self.edge_into(node.id, port.name) is None:
                    report.warnings.append(
                        f"Required input '{port.name}' of '{node.display_name}' has no value"
                    )
        return report

    def copy_graph(self) -> "NodeGraph":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _invalidate(self) -> None:
        self._order_cache = None

    def _detach(self, edge: Edge) -> None:
        self.edges.remove(edge)
        target = self.nodes.get(edge.target)
        if target is None:
            return
        port = target.get_input(edge.target_port)
        if port is not None:
            port.value = None
        self.mark_dirty(edge.target)

    def _reach(self, node_id: str, forward: bool) -> Set[str]:
        self.get_node(node_id)
        found: Set[str] = set()
        stack = [node_id]
        while stack:
            current = stack.pop()
            for edge in self.edges:
                if forward and edge.source == current:
                    nxt = edge.target
                elif not forward and edge.target == current:
                    nxt = edge.source
                else:
                    continue
                if nxt not in found:
                    found.add(nxt)
                    stack.append(nxt)
        return found

    def _path(self, start: str, goal: str) -> Optional[List[str]]:
        """Directed path from start to goal over existing edges, if any."""
        if start == goal:
            return [start]
        parents: Dict[str, str] = {}
        stack = [start]
        seen = {start}
        while stack:
            current = stack.pop()
            for edge in self.outgoing_edges(current):
                if edge.target in seen:
                    continue
                parents[edge.target] = current
                if edge.target == goal:
                    path = [goal]
                    while path[-1] != start:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                seen.add(edge.target)
                stack.append(edge.target)
        return None
