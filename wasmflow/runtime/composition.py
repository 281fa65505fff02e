"""Composition service: merge a connected selection of nodes into one component.

Given a selection of nodes that form a connected subgraph, the service:

1. validates the selection (at least two nodes, connected through
   selected-to-selected edges, every node backed by a WebAssembly component)
2. designates a socket (the requested node, else the last selected node in
   topological order) and treats the others as plugs
3. wires plug function exports to the socket's unresolved imports with the
   same name and signature; imports left unresolved stay imports of the
   produced unit, and the socket's exports stay its visible exports
4. packages socket, plugs and wiring into a deterministic bundle, trial
   linking it when nothing is left unresolved
5. snapshots the internal nodes and edges, and computes the exposed ports:
   inputs not fed from another selected node, outputs not consumed by one
   (or also consumed outside the selection)

Bundles are cached by a hash of their inputs, so recomposing an identical
selection reuses the artifact. Bundle building is CPU-bound and runs in a
worker thread under a time bound.

Example:
    >>> service = CompositionService(host)
    >>> result = await service.compose(graph, [a.id, b.id], name="pipeline")
    >>> composite = service.apply(graph, result)
"""

import asyncio
import hashlib
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from wasmtime import FuncType, Module

from wasmflow.core.component import ComposedSpec, ComponentInfo, PortSpec, WasmComponentSpec
from wasmflow.core.events import EventEmitter, EventType, ExecutionEvent
from wasmflow.core.graph import (
    CompositionData,
    CompositionMetadata,
    Node,
    NodeGraph,
    PortMapping,
)
from wasmflow.core.state import ExecutionState
from wasmflow.runtime.bundle import BUNDLE_FORMAT, BUNDLE_VERSION, write_bundle
from wasmflow.runtime.host import ComponentHost
from wasmflow.runtime.host_api import HostContext
from wasmflow.runtime.wasm import HOST_MODULE, signature
from wasmflow.utils.errors import (
    CompositionError,
    CompositionTimeoutError,
    DisconnectedSelectionError,
    InsufficientSelectionError,
    NoCompatiblePairingError,
    NotComposableError,
)

logger = logging.getLogger(__name__)


@dataclass
class Member:
    """A selected node together with its component and compiled module."""

    node: Node
    spec: WasmComponentSpec
    wasm: bytes
    module: Optional[Module] = None


@dataclass
class CompositionResult:
    """Outcome of a successful composition.

    Attributes:
        spec: Registered composed component
        node: New composite node, not yet inserted into the graph
        composition: Internal snapshot and exposed interface
        artifact: Bundle bytes
        manifest: Decoded bundle manifest
        cache_hit: Whether the bundle came from the cache
    """

    spec: ComposedSpec
    node: Node
    composition: CompositionData
    artifact: bytes
    manifest: Dict[str, Any]
    cache_hit: bool = False


class CompositionService:
    """Builds composite components from graph selections.

    Args:
        host: Component host owning the artifact registry
        timeout: Upper bound for building one bundle, in seconds
        cache_size: Number of bundles kept in the cache
        event_emitter: Receives a completion event per composition
    """

    def __init__(
        self,
        host: ComponentHost,
        timeout: Optional[float] = None,
        cache_size: int = 32,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.host = host
        self.timeout = timeout or host.settings.composition_timeout
        self.cache_size = cache_size
        self.events = event_emitter
        self._cache: "OrderedDict[str, Tuple[bytes, Dict[str, Any]]]" = OrderedDict()

    # ------------------------------------------------------------------
    # Compose
    # ------------------------------------------------------------------

    async def compose(
        self,
        graph: NodeGraph,
        node_ids: Iterable[str],
        name: str,
        socket_id: Optional[str] = None,
    ) -> CompositionResult:
        """Compose the selected nodes into a new component.

        Raises:
            InsufficientSelectionError: Fewer than two nodes selected
            DisconnectedSelectionError: Selection is not connected
            NotComposableError: A selected node is not a WebAssembly component
            NoCompatiblePairingError: No plug export matches a socket import
            CompositionTimeoutError: Building the bundle exceeded the time bound
        """
        selected = list(dict.fromkeys(node_ids))
        if len(selected) < 2:
            raise InsufficientSelectionError(
                f"Composition needs at least 2 nodes, {len(selected)} selected",
                hint="Select two or more connected nodes",
            )
        for node_id in selected:
            graph.get_node(node_id)
        if not graph.is_connected_subgraph(selected):
            raise DisconnectedSelectionError(
                "Selected nodes are not connected",
                hint="Every selected node must be reachable from the others through selected nodes",
            )

        order = graph.topological_order(selected)
        members = {node_id: self._member(graph.get_node(node_id)) for node_id in order}

        socket_id = socket_id or order[-1]
        if socket_id not in members:
            raise CompositionError(f"Socket node '{socket_id}' is not part of the selection")
        plug_ids = [node_id for node_id in order if node_id != socket_id]

        socket = members[socket_id]
        plugs = [members[node_id] for node_id in plug_ids]
        key = self._cache_key(name, socket, plugs)

        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            artifact, manifest = cached
            cache_hit = True
            logger.debug("Composition cache hit for %s", name)
        else:
            try:
                artifact, manifest = await asyncio.wait_for(
                    asyncio.to_thread(self._build_bundle, name, socket, plugs), self.timeout
                )
            except asyncio.TimeoutError:
                raise CompositionTimeoutError(
                    f"Composition '{name}' did not finish within {self.timeout:.1f}s"
                ) from None
            self._cache[key] = (artifact, manifest)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
            cache_hit = False

        composition = self._snapshot(graph, order, name, socket, plugs, artifact)
        spec = ComposedSpec(
            id=f"composed:{name}",
            info=ComponentInfo(
                name=name,
                version="1.0.0",
                description=f"Composite of {', '.join(composition.metadata.component_names)}",
                category="Composed",
            ),
            inputs=[
                PortSpec(name=m.external_name, type=m.data_type, optional=self._is_optional(graph, m))
                for m in composition.exposed_inputs.values()
            ],
            outputs=[PortSpec(name=m.external_name, type=m.data_type) for m in composition.exposed_outputs.values()],
            capabilities=sorted({cap for member in members.values() for cap in member.spec.capabilities}),
            composition=composition,
            artifact_sha256=hashlib.sha256(artifact).hexdigest(),
        )
        self.host.register_composed(spec, artifact)

        node = spec.create_node(display_name=name)
        positions = [members[node_id].node.position for node_id in order]
        node.position = (
            sum(p[0] for p in positions) / len(positions),
            sum(p[1] for p in positions) / len(positions),
        )

        logger.info(
            "Composed %s from %d components (%d wired imports)",
            name,
            len(members),
            len(manifest["wiring"]),
        )
        if self.events is not None:
            await self.events.emit(
                ExecutionEvent(
                    type=EventType.COMPOSITION_COMPLETE,
                    node_id=node.id,
                    metadata={
                        "name": name,
                        "component_id": spec.id,
                        "cache_hit": cache_hit,
                        "composition_hash": composition.metadata.composition_hash,
                    },
                )
            )
        return CompositionResult(
            spec=spec,
            node=node,
            composition=composition,
            artifact=artifact,
            manifest=manifest,
            cache_hit=cache_hit,
        )

    def apply(self, graph: NodeGraph, result: CompositionResult) -> Node:
        """Replace the composed nodes in `graph` with the composite node.

        Edges crossing the selection boundary are reconnected to the
        composite's exposed ports.
        """
        composition = result.composition
        selected = set(composition.internal_nodes)
        inputs = {(m.internal_node_id, m.internal_port): name for name, m in composition.exposed_inputs.items()}
        outputs = {(m.internal_node_id, m.internal_port): name for name, m in composition.exposed_outputs.items()}

        incoming = []
        outgoing = []
        for edge in graph.edges:
            if edge.target in selected and edge.source not in selected:
                incoming.append((edge.source, edge.source_port, inputs[(edge.target, edge.target_port)]))
            elif edge.source in selected and edge.target not in selected:
                outgoing.append((outputs[(edge.source, edge.source_port)], edge.target, edge.target_port))

        for node_id in sorted(selected):
            graph.remove_node(node_id)
        node = result.node.model_copy(deep=True)
        graph.add_node(node)
        for source, source_port, external_name in incoming:
            graph.add_edge(source, source_port, node.id, external_name)
        for external_name, target, target_port in outgoing:
            graph.add_edge(node.id, external_name, target, target_port)
        return node

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # Validation and snapshot
    # ------------------------------------------------------------------

    def _member(self, node: Node) -> Member:
        spec = self.host.get_spec(node.component_id)
        if not isinstance(spec, WasmComponentSpec) or node.composition is not None:
            raise NotComposableError(
                f"Node '{node.display_name}' ({spec.kind} component) cannot be composed",
                node_id=node.id,
                hint="Only WebAssembly component nodes can be composed",
            )
        return Member(node=node, spec=spec, wasm=self.host.get_artifact(spec.id))

    @staticmethod
    def _is_optional(graph: NodeGraph, mapping: PortMapping) -> bool:
        port = graph.get_node(mapping.internal_node_id).get_input(mapping.internal_port)
        return port.optional or port.value is not None

    def _snapshot(
        self,
        graph: NodeGraph,
        order: List[str],
        name: str,
        socket: Member,
        plugs: List[Member],
        artifact: bytes,
    ) -> CompositionData:
        selected = set(order)
        labels = self._labels(graph, order)
        exposed_inputs: Dict[str, PortMapping] = {}
        exposed_outputs: Dict[str, PortMapping] = {}

        for node_id in order:
            node = graph.get_node(node_id)
            for port in node.inputs:
                edge = graph.edge_into(node_id, port.name)
                if edge is not None and edge.source in selected:
                    continue
                external = f"{labels[node_id]}.{port.name}"
                exposed_inputs[external] = PortMapping(
                    external_name=external,
                    internal_node_id=node_id,
                    internal_port=port.name,
                    data_type=port.data_type,
                )
            for port in node.outputs:
                targets = [e.target for e in graph.outgoing_edges(node_id) if e.source_port == port.name]
                if targets and all(target in selected for target in targets):
                    continue
                external = f"{labels[node_id]}.{port.name}"
                exposed_outputs[external] = PortMapping(
                    external_name=external,
                    internal_node_id=node_id,
                    internal_port=port.name,
                    data_type=port.data_type,
                )

        nodes, edges = graph.snapshot(order)
        for node in nodes.values():
            node.execution_state = ExecutionState.IDLE
            node.dirty = True
            node.last_error = None
            node.input_fingerprint = None

        members = plugs + [socket]
        composition = CompositionData(
            name=name,
            socket_path=socket.spec.path or socket.spec.id,
            socket_node_id=socket.node.id,
            plug_paths=[plug.spec.path or plug.spec.id for plug in plugs],
            internal_nodes=nodes,
            internal_edges=edges,
            exposed_inputs=exposed_inputs,
            exposed_outputs=exposed_outputs,
            metadata=CompositionMetadata(
                component_count=len(members),
                component_names=[member.spec.info.name for member in members],
                size_bytes=len(artifact),
            ),
        )
        composition.metadata.composition_hash = composition.compute_hash()
        return composition

    @staticmethod
    def _labels(graph: NodeGraph, order: List[str]) -> Dict[str, str]:
        names = [graph.get_node(node_id).display_name for node_id in order]
        labels = {}
        for node_id, display_name in zip(order, names):
            if names.count(display_name) > 1:
                labels[node_id] = f"{display_name}#{node_id[:8]}"
            else:
                labels[node_id] = display_name
        return labels

    # ------------------------------------------------------------------
    # Bundle
    # ------------------------------------------------------------------

    @staticmethod
    def _cache_key(name: str, socket: Member, plugs: List[Member]) -> str:
        content = json.dumps([name, socket.spec.sha256, [plug.spec.sha256 for plug in plugs]])
        return hashlib.sha256(content.encode()).hexdigest()

    def _build_bundle(self, name: str, socket: Member, plugs: List[Member]) -> Tuple[bytes, Dict[str, Any]]:
        runtime = self.host.runtime
        for member in [socket] + plugs:
            _, member.module = runtime.compile(member.wasm)

        unresolved: Dict[Tuple[str, str], FuncType] = {}
        for item in socket.module.imports:
            if item.module != HOST_MODULE and isinstance(item.type, FuncType):
                unresolved[(item.module, item.name)] = item.type

        wiring: List[Dict[str, Any]] = []
        for index, plug in enumerate(plugs):
            for export in plug.module.exports:
                if not isinstance(export.type, FuncType) or export.name.startswith("wf_"):
                    continue
                for key, import_type in sorted(unresolved.items()):
                    if key[1] == export.name and signature(import_type) == signature(export.type):
                        wiring.append(
                            {
                                "import_module": key[0],
                                "import_name": key[1],
                                "plug": index,
                                "export": export.name,
                            }
                        )
                        del unresolved[key]
                        break

        if not wiring:
            raise NoCompatiblePairingError(
                f"No plug export matches an unresolved import of socket '{socket.spec.info.name}'",
                node_id=socket.node.id,
                hint="Plugs must export functions named and typed like the socket's imports",
            )

        remaining = sorted(unresolved)
        for plug in plugs:
            for item in plug.module.imports:
                if item.module != HOST_MODULE:
                    remaining.append((item.module, item.name))

        manifest = {
            "format": BUNDLE_FORMAT,
            "version": BUNDLE_VERSION,
            "name": name,
            "socket": {"component_id": socket.spec.id, "sha256": socket.spec.sha256},
            "plugs": [{"component_id": p.spec.id, "sha256": p.spec.sha256} for p in plugs],
            "wiring": wiring,
            "imports": [{"module": module, "name": field} for module, field in sorted(set(remaining))],
            "exports": sorted(export.name for export in socket.module.exports),
        }

        if not remaining:
            with HostContext(
                f"composed:{name}", frozenset(), frozenset(), scratch_root=self.host.settings.scratch_root
            ) as ctx:
                runtime.instantiate_bundle(
                    [plug.module for plug in plugs],
                    socket.module,
                    wiring,
                    ctx,
                    self.host.settings.execution_timeout,
                )

        return write_bundle(manifest, socket.wasm, [plug.wasm for plug in plugs]), manifest

