"""Lifecycle controller for continuous (run-until-stopped) nodes.

Each active continuous node runs as its own asyncio task with its own
cancellation event and its own pinned sandbox (a ``ComponentSession``).
Lifecycle::

    Idle -> Starting -> Running -> Stopping -> {Stopped, Error}

Every iteration re-resolves the node's inputs from the current graph state
and goes through the same validated, capability-checked host invocation as
a one-shot execution. The ``interval`` input, when present, is re-read each
iteration (milliseconds); otherwise the node's configured interval applies,
falling back to the host's ``default_interval_ms`` setting.

Shutdown is three-phase and time-bounded:

1. set the cancellation event and wait up to the grace period for the task
   to exit on its own
2. if it is still running, cancel the task and wait a shorter bound
3. release the session and runtime state unconditionally

A stop that needed phase 2 ends in ``Error``; a graceful one in ``Stopped``.
``request_stop`` returns immediately and the shutdown is observed through
events or ``wait_stopped``.

Example:
    >>> controller = ContinuousController(host, graph)
    >>> await controller.start(timer_node.id)
    >>> ...
    >>> state = await controller.stop(timer_node.id)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from wasmflow.core.events import EventEmitter, EventType, ExecutionEvent
from wasmflow.core.graph import NodeGraph
from wasmflow.core.state import ContinuousExecutionState, ContinuousNodeConfig
from wasmflow.runtime.host import ComponentHost, ComponentSession
from wasmflow.utils.errors import (
    AlreadyRunningError,
    ForcedAbortError,
    NotContinuousError,
    NotRunningError,
    WasmFlowError,
)

logger = logging.getLogger(__name__)

INTERVAL_PORT = "interval"


@dataclass
class ContinuousTask:
    """Book-keeping for one active continuous node."""

    node_id: str
    session: ComponentSession
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    running: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    shutdown: Optional[asyncio.Task] = None
    forced: bool = False
    failure: Optional[WasmFlowError] = None


class ContinuousController:
    """Starts, runs and stops continuous nodes of one graph.

    Args:
        host: Component host used for every iteration
        graph: Graph whose nodes are driven; read live on every iteration
        event_emitter: Receives state, output, iteration and error events
        grace_period: Phase-one cooperative wait, in seconds
        abort_timeout: Phase-two wait after forced cancellation, in seconds
    """

    def __init__(
        self,
        host: ComponentHost,
        graph: NodeGraph,
        event_emitter: Optional[EventEmitter] = None,
        grace_period: Optional[float] = None,
        abort_timeout: Optional[float] = None,
    ):
        self.host = host
        self.graph = graph
        self.events = event_emitter or EventEmitter()
        self.grace_period = grace_period if grace_period is not None else host.settings.continuous_grace_period
        self.abort_timeout = abort_timeout if abort_timeout is not None else host.settings.continuous_abort_timeout
        self._tasks: Dict[str, ContinuousTask] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state(self, node_id: str) -> ContinuousExecutionState:
        return self._config(node_id).runtime_state.execution_state

    def is_active(self, node_id: str) -> bool:
        return node_id in self._tasks

    def active_nodes(self):
        return sorted(self._tasks)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, node_id: str) -> None:
        """Start a continuous node.

        Returns once the background task is spawned (state ``Starting``);
        the task moves the node to ``Running`` when its first iteration
        begins.

        Raises:
            NotContinuousError: If the node's component does not run continuously
            AlreadyRunningError: If the node is active or still shutting down
        """
        config = self._config(node_id)
        if node_id in self._tasks:
            raise AlreadyRunningError(f"Continuous node '{node_id}' is already running", node_id=node_id)

        node = self.graph.get_node(node_id)
        session = self.host.open_session(node.component_id)
        entry = ContinuousTask(node_id=node_id, session=session)
        self._tasks[node_id] = entry

        config.enabled = True
        config.reset_runtime()
        runtime = config.runtime_state
        runtime.is_running = True
        runtime.started_at = datetime.now()
        await self._set_state(node_id, ContinuousExecutionState.STARTING)

        entry.task = asyncio.create_task(self._activity(entry), name=f"continuous:{node_id}")
        logger.info("Started continuous node %s (%s)", node_id, node.component_id)

    async def wait_running(self, node_id: str, timeout: float = 5.0) -> None:
        """Wait until the node's first iteration has begun."""
        entry = self._tasks.get(node_id)
        if entry is None:
            raise NotRunningError(f"Continuous node '{node_id}' is not running", node_id=node_id)
        await asyncio.wait_for(entry.running.wait(), timeout)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def request_stop(self, node_id: str) -> asyncio.Task:
        """Begin shutdown without waiting for it.

        Returns:
            The shutdown task; awaiting it yields the final state

        Raises:
            NotRunningError: If the node is not active
        """
        entry = self._tasks.get(node_id)
        if entry is None:
            raise NotRunningError(f"Continuous node '{node_id}' is not running", node_id=node_id)
        if entry.shutdown is None:
            entry.shutdown = asyncio.create_task(self._shutdown(entry), name=f"shutdown:{node_id}")
        return entry.shutdown

    async def stop(self, node_id: str) -> ContinuousExecutionState:
        """Stop a node and wait for the shutdown protocol to finish."""
        return await self.request_stop(node_id)

    async def wait_stopped(self, node_id: str) -> ContinuousExecutionState:
        """Wait for an in-progress shutdown, returning the final state."""
        entry = self._tasks.get(node_id)
        if entry is not None and entry.shutdown is not None:
            return await asyncio.shield(entry.shutdown)
        return self.state(node_id)

    async def shutdown(self) -> Dict[str, ContinuousExecutionState]:
        """Stop every active node concurrently."""
        node_ids = list(self._tasks)
        states = await asyncio.gather(*[self.request_stop(node_id) for node_id in node_ids])
        return dict(zip(node_ids, states))

    async def _shutdown(self, entry: ContinuousTask) -> ContinuousExecutionState:
        node_id = entry.node_id
        config = self._config(node_id)
        try:
            try:
                if config.runtime_state.execution_state != ContinuousExecutionState.STOPPING:
                    await self._set_state(node_id, ContinuousExecutionState.STOPPING)

                # Phase 1: cooperative cancellation.
                entry.cancel.set()
                done, _ = await asyncio.wait({entry.task}, timeout=self.grace_period)

                # Phase 2: forced abort.
                if not done:
                    entry.forced = True
                    logger.warning(
                        "Continuous node %s did not stop within %.1fs, aborting", node_id, self.grace_period
                    )
                    entry.task.cancel()
                    done, _ = await asyncio.wait({entry.task}, timeout=self.abort_timeout)
                    if not done:
                        logger.error("Continuous node %s did not finish teardown after abort", node_id)
            finally:
                # Phase 3: unconditional release.
                entry.session.close()
                config.runtime_state.is_running = False

            if entry.forced:
                error = ForcedAbortError(
                    f"Continuous node '{node_id}' was forcibly terminated after {self.grace_period:.1f}s",
                    node_id=node_id,
                )
                config.runtime_state.last_error = config.runtime_state.last_error or error.message
                await self.events.emit(
                    ExecutionEvent(
                        type=EventType.CONTINUOUS_ERROR,
                        node_id=node_id,
                        error=error.message,
                        metadata=error.to_dict(),
                    )
                )
                final = ContinuousExecutionState.ERROR
            elif entry.failure is not None:
                final = ContinuousExecutionState.ERROR
            else:
                final = ContinuousExecutionState.STOPPED
            await self._set_state(node_id, final)
        finally:
            # The node stays registered until its final state is published.
            if self._tasks.get(node_id) is entry:
                del self._tasks[node_id]
        logger.info("Continuous node %s finished in state %s", node_id, final.value)
        return final

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def _activity(self, entry: ContinuousTask) -> None:
        node_id = entry.node_id
        runtime = self._config(node_id).runtime_state
        try:
            while not entry.cancel.is_set():
                if not entry.running.is_set():
                    entry.running.set()
                    await self._set_state(node_id, ContinuousExecutionState.RUNNING)

                inputs = self.graph.resolve_inputs(node_id)
                outputs = await entry.session.execute(inputs)
                self.graph.set_output_values(node_id, outputs)
                for edge in self.graph.outgoing_edges(node_id):
                    self.graph.mark_dirty(edge.target)
                runtime.iterations += 1

                await self.events.emit(
                    ExecutionEvent(
                        type=EventType.CONTINUOUS_OUTPUT,
                        node_id=node_id,
                        output={name: value.model_dump() for name, value in outputs.items()},
                    )
                )
                await self.events.emit(
                    ExecutionEvent(
                        type=EventType.CONTINUOUS_ITERATION,
                        node_id=node_id,
                        metadata={"iteration": runtime.iterations},
                    )
                )

                try:
                    await asyncio.wait_for(entry.cancel.wait(), self._interval(node_id) / 1000.0)
                except asyncio.TimeoutError:
                    pass
        except WasmFlowError as e:
            await self._fail(entry, e)
        except asyncio.CancelledError:
            logger.debug("Continuous node %s cancelled", node_id)
            raise
        except Exception as e:
            logger.exception("Continuous node %s crashed", node_id)
            await self._fail(entry, WasmFlowError(f"Unexpected failure: {e}", node_id=node_id))

    async def _fail(self, entry: ContinuousTask, error: WasmFlowError) -> None:
        """Record a fatal iteration error and begin shutdown."""
        node_id = entry.node_id
        if error.node_id is None:
            error.node_id = node_id
        entry.failure = error
        self._config(node_id).runtime_state.last_error = error.message
        logger.warning("Continuous node %s failed: %s", node_id, error.message)
        await self.events.emit(
            ExecutionEvent(
                type=EventType.CONTINUOUS_ERROR,
                node_id=node_id,
                error=error.message,
                metadata=error.to_dict(),
            )
        )
        self.request_stop(node_id)

    def _interval(self, node_id: str) -> int:
        node = self.graph.get_node(node_id)
        port = node.get_input(INTERVAL_PORT)
        if port is not None and port.value is not None:
            value = port.value.value
            if isinstance(value, int) and not isinstance(value, bool) and value > 0:
                return value
        if node.continuous.interval_ms is not None:
            return node.continuous.interval_ms
        return self.host.settings.default_interval_ms

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _config(self, node_id: str) -> ContinuousNodeConfig:
        node = self.graph.get_node(node_id)
        if node.continuous is None or not node.continuous.supports_continuous:
            raise NotContinuousError(
                f"Node '{node_id}' does not support continuous execution", node_id=node_id
            )
        return node.continuous

    async def _set_state(self, node_id: str, state: ContinuousExecutionState) -> None:
        self._config(node_id).runtime_state.execution_state = state
        await self.events.emit(
            ExecutionEvent(type=EventType.CONTINUOUS_STATE, node_id=node_id, state=state.value)
        )
