"""Dependency-ordered graph executor with streaming support.

One pass runs every dirty node, and everything downstream of one, in
topological order:

1. Compute the dirty execution order (ascending node id breaks ties).
2. Group it into waves; a wave holds nodes whose upstream nodes in this
   pass have all finished, so nodes within a wave are independent.
3. For each node of a wave, resolve inputs from upstream outputs. Nodes
   with a failed upstream are blocked and keep their previous values;
   clean nodes whose inputs are unchanged are skipped without invoking
   the host.
4. Invoke the remaining nodes of the wave concurrently (bounded by
   ``max_concurrency``), then apply results in ascending node id order.

A failing node is scoped to itself: it is left ``Failed`` and dirty, its
error is recorded, and the rest of the pass continues.

Example:
    >>> executor = Executor(host)
    >>> async for event in executor.execute(graph):
    ...     print(event.type, event.node_id)
    >>> report = await executor.run(graph)
    >>> report.failed
    []
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple

from wasmflow.core.component import ComposedSpec
from wasmflow.core.events import EventEmitter, EventType, ExecutionEvent
from wasmflow.core.graph import Node, NodeGraph
from wasmflow.core.state import ExecutionState
from wasmflow.core.types import NodeValue, fingerprint_inputs
from wasmflow.utils.errors import ComponentTrapError, ExecutionError, WasmFlowError

logger = logging.getLogger(__name__)


@dataclass
class ExecutorConfig:
    """Configuration for graph passes.

    Attributes:
        max_concurrency: Maximum concurrent invocations within one wave
        timeout: Per-invocation bound in seconds; the host default when None
    """

    max_concurrency: int = 10
    timeout: Optional[float] = None

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")


@dataclass
class NodeRunResult:
    node_id: str
    outputs: Dict[str, NodeValue] = field(default_factory=dict)
    error: Optional[WasmFlowError] = None
    duration: float = 0.0
    fingerprint: str = ""


@dataclass
class ExecutionReport:
    """Summary of one graph pass.

    Attributes:
        executed: Nodes that ran successfully, in completion order
        failed: Nodes whose invocation failed
        skipped: Clean nodes with unchanged inputs, and running continuous nodes
        blocked: Nodes not run because an upstream node failed
        errors: Error of each failed node
        durations: Invocation time of each node that ran
    """

    executed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    errors: Dict[str, WasmFlowError] = field(default_factory=dict)
    durations: Dict[str, float] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, object]:
        return {
            "executed": list(self.executed),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "blocked": list(self.blocked),
            "errors": {node_id: error.to_dict() for node_id, error in self.errors.items()},
        }


class Executor:
    """Runs graph passes against a component host.

    Args:
        host: Component host providing the registry, grants and invocation
        config: Pass configuration
        event_emitter: Optional emitter receiving every yielded event
        bundles: Node ids run linked to their plugs, mapped to the composed component id
    """

    def __init__(
        self,
        host,
        config: Optional[ExecutorConfig] = None,
        event_emitter: Optional[EventEmitter] = None,
        bundles: Optional[Dict[str, str]] = None,
    ):
        self.host = host
        self.config = config or ExecutorConfig(max_concurrency=host.settings.max_concurrency)
        self.events = event_emitter
        self.bundles = dict(bundles or {})
        self.last_report: Optional[ExecutionReport] = None
        self._graph_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def run(self, graph: NodeGraph) -> ExecutionReport:
        """Run one pass and return its report."""
        async for _ in self.execute(graph):
            pass
        return self.last_report

    async def execute(self, graph: NodeGraph) -> AsyncIterator[ExecutionEvent]:
        """Run one pass, yielding events as nodes start and finish.

        Passes over the same graph are serialized, so a node never has two
        invocations in flight.

        Raises:
            CycleDetectedError: If the graph's edges contain a cycle
        """
        lock = self._graph_locks.setdefault(graph.id, asyncio.Lock())
        self._lock_users[graph.id] = self._lock_users.get(graph.id, 0) + 1
        try:
            async with lock:
                async for event in self._execute(graph):
                    if self.events is not None:
                        await self.events.emit(event)
                    yield event
        finally:
            # The lock lives only while some pass over the graph holds or awaits it.
            self._lock_users[graph.id] -= 1
            if not self._lock_users[graph.id]:
                del self._lock_users[graph.id]
                del self._graph_locks[graph.id]

    async def _execute(self, graph: NodeGraph) -> AsyncIterator[ExecutionEvent]:
        report = ExecutionReport()
        self.last_report = report
        order = graph.dirty_execution_order()
        logger.debug("Pass over graph %s scheduled %d nodes", graph.id, len(order))

        yield ExecutionEvent(
            type=EventType.EXECUTION_START,
            metadata={"graph_id": graph.id, "scheduled": list(order)},
        )

        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        halted = set()

        for wave in self._waves(graph, order):
            runnable: List[Tuple[Node, List[Tuple[str, NodeValue]], str]] = []
            for node_id in wave:
                node = graph.get_node(node_id)
                upstream = {edge.source for edge in graph.incoming_edges(node_id)}
                if upstream & halted:
                    halted.add(node_id)
                    report.blocked.append(node_id)
                    yield ExecutionEvent(
                        type=EventType.NODE_SKIPPED,
                        node_id=node_id,
                        metadata={"reason": "upstream-failed"},
                    )
                    continue

                if node.continuous is not None and node.continuous.runtime_state.is_running:
                    report.skipped.append(node_id)
                    yield ExecutionEvent(
                        type=EventType.NODE_SKIPPED, node_id=node_id, metadata={"reason": "continuous"}
                    )
                    continue

                inputs = graph.resolve_inputs(node_id)
                fingerprint = fingerprint_inputs(inputs)
                if (
                    not node.dirty
                    and node.execution_state == ExecutionState.COMPLETED
                    and node.input_fingerprint == fingerprint
                ):
                    report.skipped.append(node_id)
                    yield ExecutionEvent(
                        type=EventType.NODE_SKIPPED, node_id=node_id, metadata={"reason": "unchanged"}
                    )
                    continue

                node.execution_state = ExecutionState.RUNNING
                runnable.append((node, inputs, fingerprint))
                yield ExecutionEvent(
                    type=EventType.NODE_START,
                    node_id=node_id,
                    metadata={"component_id": node.component_id, "display_name": node.display_name},
                )

            results = await asyncio.gather(
                *[self._run_node(node, inputs, fingerprint, semaphore) for node, inputs, fingerprint in runnable]
            )

            for result in sorted(results, key=lambda r: r.node_id):
                node = graph.get_node(result.node_id)
                report.durations[result.node_id] = result.duration
                if result.error is None:
                    graph.set_output_values(result.node_id, result.outputs)
                    node.dirty = False
                    node.execution_state = ExecutionState.COMPLETED
                    node.last_error = None
                    node.input_fingerprint = result.fingerprint
                    report.executed.append(result.node_id)
                    yield ExecutionEvent(
                        type=EventType.NODE_COMPLETE,
                        node_id=result.node_id,
                        output={name: value.model_dump() for name, value in result.outputs.items()},
                        metadata={"duration": result.duration},
                    )
                else:
                    error = result.error
                    if error.node_id is None:
                        error.node_id = result.node_id
                    node.execution_state = ExecutionState.FAILED
                    node.last_error = error.to_dict()
                    halted.add(result.node_id)
                    report.failed.append(result.node_id)
                    report.errors[result.node_id] = error
                    logger.warning("Node %s (%s) failed: %s", result.node_id, node.component_id, error.message)
                    yield ExecutionEvent(
                        type=EventType.NODE_ERROR,
                        node_id=result.node_id,
                        error=error.message,
                        metadata=error.to_dict(),
                    )

        yield ExecutionEvent(
            type=EventType.EXECUTION_COMPLETE,
            metadata={"graph_id": graph.id, **report.to_dict()},
        )

    @staticmethod
    def _waves(graph: NodeGraph, order: List[str]) -> List[List[str]]:
        """Group an ordered node list into dependency levels."""
        scheduled = set(order)
        level: Dict[str, int] = {}
        for node_id in order:
            parents = [e.source for e in graph.incoming_edges(node_id) if e.source in scheduled]
            level[node_id] = 1 + max((level[p] for p in parents), default=-1)
        waves: Dict[int, List[str]] = {}
        for node_id in order:
            waves.setdefault(level[node_id], []).append(node_id)
        return [sorted(waves[index]) for index in sorted(waves)]

    async def _run_node(
        self,
        node: Node,
        inputs: List[Tuple[str, NodeValue]],
        fingerprint: str,
        semaphore: asyncio.Semaphore,
    ) -> NodeRunResult:
        result = NodeRunResult(node_id=node.id, fingerprint=fingerprint)
        started = time.monotonic()
        async with semaphore:
            try:
                if node.composition is not None:
                    result.outputs = await self._run_composite(node, inputs)
                elif node.id in self.bundles:
                    result.outputs = await self.host.execute_bundle(
                        self.bundles[node.id], inputs, timeout=self.config.timeout
                    )
                else:
                    result.outputs = await self.host.execute(
                        node.component_id,
                        inputs,
                        self.host.granted_capabilities(node.component_id),
                        timeout=self.config.timeout,
                    )
            except WasmFlowError as e:
                result.error = e
            except Exception as e:
                logger.exception("Unexpected failure running node %s", node.id)
                result.error = ComponentTrapError(f"Unexpected failure: {e}", component_id=node.component_id)
        result.duration = time.monotonic() - started
        return result

    async def _run_composite(self, node: Node, inputs: List[Tuple[str, NodeValue]]) -> Dict[str, NodeValue]:
        """Run a composite node's internal snapshot as an isolated subgraph.

        Exposed inputs are written onto the mapped internal ports, the
        internal graph runs through a nested executor with each internal
        component's own grants, and exposed outputs are read back. The socket
        node runs linked to its plugs, so calls through its wired imports
        reach live plug instances.

        A failure inside is reported against the composite node, with the
        internal node named in the message.

        Raises:
            ExecutionError: The registered composition no longer matches the node
        """
        composition = node.composition
        spec = self.host.get_spec(node.component_id)
        if (
            not isinstance(spec, ComposedSpec)
            or spec.composition.metadata.composition_hash != composition.metadata.composition_hash
        ):
            raise ExecutionError(
                f"Composite '{node.display_name}' does not match the registered '{node.component_id}'",
                component_id=node.component_id,
                hint="Recompose the selection to rebuild the composite component",
            )
        internal = composition.internal_graph()
        provided = dict(inputs)
        for external_name, mapping in composition.exposed_inputs.items():
            port = internal.get_node(mapping.internal_node_id).get_input(mapping.internal_port)
            if port is not None and external_name in provided:
                port.value = provided[external_name]
        for internal_node in internal.nodes.values():
            internal_node.dirty = True

        bundles = {composition.socket_node_id: node.component_id} if composition.socket_node_id else {}
        nested = Executor(self.host, self.config, bundles=bundles)
        report = await nested.run(internal)
        if report.failed:
            internal_id = report.failed[0]
            error = report.errors[internal_id]
            error.message = (
                f"Internal node '{internal.get_node(internal_id).display_name}' ({internal_id}) "
                f"of '{node.display_name}' failed: {error.message}"
            )
            error.args = (error.message,)
            error.node_id = node.id
            error.internal_node_id = internal_id
            raise error

        outputs: Dict[str, NodeValue] = {}
        for external_name, mapping in composition.exposed_outputs.items():
            port = internal.get_node(mapping.internal_node_id).get_output(mapping.internal_port)
            if port is not None and port.value is not None:
                outputs[external_name] = port.value
        return outputs
