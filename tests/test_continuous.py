"""Tests for the continuous node controller."""

import asyncio
import time
from typing import Dict

import pytest

from conftest import call_with_json, component_wasm, ok
from wasmflow.builtin.base import BuiltinComponent
from wasmflow.core.component import PortSpec
from wasmflow.core.events import EventEmitter, EventType
from wasmflow.core.executor import Executor
from wasmflow.core.state import ContinuousExecutionState
from wasmflow.core.types import NodeValue
from wasmflow.runtime.continuous import ContinuousController
from wasmflow.utils.errors import (
    AlreadyRunningError,
    ComponentReportedError,
    NotContinuousError,
    NotRunningError,
)


class StubbornComponent(BuiltinComponent):
    """Ignores cooperative cancellation by blocking inside an iteration."""

    component_id = "test:stubborn"
    name = "Stubborn"
    continuous = True
    outputs = [PortSpec(name="tick", type="u32")]

    async def _execute_impl(self, inputs, ctx) -> Dict[str, NodeValue]:
        await asyncio.sleep(30)
        return {"tick": NodeValue.u32(1)}


class FlakyComponent(BuiltinComponent):
    """Fails on its third iteration."""

    component_id = "test:flaky"
    name = "Flaky"
    continuous = True
    outputs = [PortSpec(name="tick", type="u32")]

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def _execute_impl(self, inputs, ctx) -> Dict[str, NodeValue]:
        self.calls += 1
        if self.calls == 3:
            raise ComponentReportedError("sensor unplugged", component_id=self.component_id)
        return {"tick": NodeValue.u32(self.calls)}


async def wait_until(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def events():
    return []


@pytest.fixture
def controller(host, graph, events):
    emitter = EventEmitter()

    async def record(event):
        events.append(event)

    emitter.on(record)
    return ContinuousController(host, graph, event_emitter=emitter)


def add_node(host, graph, component_id, node_id):
    node = host.get_spec(component_id).create_node(node_id=node_id)
    graph.add_node(node)
    return node


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_timer_runs_and_stops(self, host, graph, controller, events):
        timer = add_node(host, graph, "builtin:continuous:timer", "timer")
        graph.set_input_value(timer.id, "interval", NodeValue.u32(20))

        await controller.start(timer.id)
        await controller.wait_running(timer.id)
        await wait_until(lambda: timer.continuous.runtime_state.iterations >= 3)

        started = time.monotonic()
        final = await controller.stop(timer.id)

        assert time.monotonic() - started < 2.0
        assert final == ContinuousExecutionState.STOPPED
        assert controller.state(timer.id) == ContinuousExecutionState.STOPPED
        assert not timer.continuous.runtime_state.is_running
        assert timer.get_output("counter").value.value >= 3
        states = [e.state for e in events if e.type == EventType.CONTINUOUS_STATE and e.node_id == timer.id]
        assert states == ["starting", "running", "stopping", "stopped"]

    @pytest.mark.asyncio
    async def test_request_stop_does_not_block(self, host, graph, controller):
        timer = add_node(host, graph, "builtin:continuous:timer", "timer")
        await controller.start(timer.id)
        await controller.wait_running(timer.id)

        shutdown = controller.request_stop(timer.id)

        assert not shutdown.done()
        assert controller.state(timer.id) in (ContinuousExecutionState.RUNNING, ContinuousExecutionState.STOPPING)
        assert await shutdown == ContinuousExecutionState.STOPPED

    @pytest.mark.asyncio
    async def test_forced_abort_ends_in_error(self, host, graph, controller, events):
        host.register_builtin(StubbornComponent())
        node = add_node(host, graph, "test:stubborn", "stubborn")
        await controller.start(node.id)
        await controller.wait_running(node.id)

        started = time.monotonic()
        final = await controller.stop(node.id)

        assert time.monotonic() - started < 2.0
        assert final == ContinuousExecutionState.ERROR
        assert not controller.is_active(node.id)
        errors = [e for e in events if e.type == EventType.CONTINUOUS_ERROR]
        assert errors and errors[-1].metadata["error"] == "ForcedAbortError"

    @pytest.mark.asyncio
    async def test_final_state_published_before_release(self, host, graph, controller):
        host.register_builtin(StubbornComponent())
        node = add_node(host, graph, "test:stubborn", "stubborn")
        seen = []

        async def restart_on_error(event):
            if event.type != EventType.CONTINUOUS_ERROR:
                return
            seen.append(controller.is_active(node.id))
            try:
                await controller.start(node.id)
            except AlreadyRunningError:
                seen.append("refused")

        controller.events.on(restart_on_error)
        await controller.start(node.id)
        await controller.wait_running(node.id)

        final = await controller.stop(node.id)

        assert final == ContinuousExecutionState.ERROR
        assert seen == [True, "refused"]
        assert controller.state(node.id) == ContinuousExecutionState.ERROR
        assert not controller.is_active(node.id)

    @pytest.mark.asyncio
    async def test_failed_iteration_ends_in_error(self, host, graph, controller, events):
        host.register_builtin(FlakyComponent())
        node = add_node(host, graph, "test:flaky", "flaky")
        node.continuous.interval_ms = 10

        await controller.start(node.id)
        await wait_until(lambda: not controller.is_active(node.id))

        assert controller.state(node.id) == ContinuousExecutionState.ERROR
        assert node.continuous.runtime_state.last_error == "sensor unplugged"
        assert node.continuous.runtime_state.iterations == 2
        assert any(e.type == EventType.CONTINUOUS_ERROR and e.error == "sensor unplugged" for e in events)

    @pytest.mark.asyncio
    async def test_start_twice(self, host, graph, controller):
        timer = add_node(host, graph, "builtin:continuous:timer", "timer")
        await controller.start(timer.id)
        with pytest.raises(AlreadyRunningError):
            await controller.start(timer.id)
        await controller.stop(timer.id)

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, host, graph, controller):
        timer = add_node(host, graph, "builtin:continuous:timer", "timer")
        with pytest.raises(NotRunningError):
            await controller.stop(timer.id)

    @pytest.mark.asyncio
    async def test_not_continuous(self, host, graph, controller):
        add = add_node(host, graph, "builtin:math:add", "add")
        with pytest.raises(NotContinuousError):
            await controller.start(add.id)

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, host, graph, controller):
        timer = add_node(host, graph, "builtin:continuous:timer", "timer")
        graph.set_input_value(timer.id, "interval", NodeValue.u32(10))
        await controller.start(timer.id)
        await wait_until(lambda: timer.continuous.runtime_state.iterations >= 2)
        await controller.stop(timer.id)

        await controller.start(timer.id)
        await wait_until(lambda: timer.continuous.runtime_state.iterations >= 1)
        await controller.stop(timer.id)

        assert timer.get_output("counter").value.value < 10

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self, host, graph, controller):
        first = add_node(host, graph, "builtin:continuous:timer", "t1")
        second = add_node(host, graph, "builtin:continuous:timer", "t2")
        await controller.start(first.id)
        await controller.start(second.id)

        states = await controller.shutdown()

        assert states == {first.id: ContinuousExecutionState.STOPPED, second.id: ContinuousExecutionState.STOPPED}
        assert controller.active_nodes() == []


class TestLiveInputs:
    """Tests for inputs re-read on every iteration."""

    @pytest.mark.asyncio
    async def test_interval_change_applies_live(self, host, graph, controller):
        timer = add_node(host, graph, "builtin:continuous:timer", "timer")
        graph.set_input_value(timer.id, "interval", NodeValue.u32(10))
        await controller.start(timer.id)
        await wait_until(lambda: timer.continuous.runtime_state.iterations >= 3)

        graph.set_input_value(timer.id, "interval", NodeValue.u32(10_000))
        await asyncio.sleep(0.1)
        frozen = timer.continuous.runtime_state.iterations
        await asyncio.sleep(0.2)

        assert timer.continuous.runtime_state.iterations == frozen
        started = time.monotonic()
        await controller.stop(timer.id)
        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_combiner_sees_input_edits(self, host, graph, controller):
        combiner = add_node(host, graph, "builtin:continuous:combiner", "combiner")
        graph.set_input_value(combiner.id, "input_a", NodeValue.string("hello"))
        graph.set_input_value(combiner.id, "input_b", NodeValue.string("world"))
        graph.set_input_value(combiner.id, "interval", NodeValue.u32(10))
        await controller.start(combiner.id)
        await wait_until(lambda: combiner.get_output("combined").value is not None)
        assert combiner.get_output("combined").value == NodeValue.string("hello world")

        graph.set_input_value(combiner.id, "input_a", NodeValue.string("goodbye"))
        await wait_until(lambda: combiner.get_output("combined").value == NodeValue.string("goodbye world"))
        await controller.stop(combiner.id)

        assert combiner.get_output("length_a").value == NodeValue.u32(7)

    @pytest.mark.asyncio
    async def test_downstream_marked_dirty_and_skipped_while_running(self, host, graph, controller):
        timer = add_node(host, graph, "builtin:continuous:timer", "a-timer")
        display = add_node(host, graph, "builtin:display", "b-display")
        graph.add_edge(timer.id, "counter", display.id, "value")
        graph.set_input_value(timer.id, "interval", NodeValue.u32(10))
        await controller.start(timer.id)
        await wait_until(lambda: timer.continuous.runtime_state.iterations >= 2)

        report = await Executor(host).run(graph)
        await controller.stop(timer.id)

        assert timer.id in report.skipped
        assert display.id in report.executed
        assert display.get_output("value").value is not None

    @pytest.mark.asyncio
    async def test_unwired_interval_uses_configured_default(self, host, graph, controller):
        host.settings.default_interval_ms = 10_000
        timer = add_node(host, graph, "builtin:continuous:timer", "timer")
        await controller.start(timer.id)
        await controller.wait_running(timer.id)
        await asyncio.sleep(0.3)

        assert timer.continuous.runtime_state.iterations == 1
        await controller.stop(timer.id)

    @pytest.mark.asyncio
    async def test_node_interval_overrides_default(self, host, graph, controller):
        host.settings.default_interval_ms = 10_000
        timer = add_node(host, graph, "builtin:continuous:timer", "timer")
        timer.continuous.interval_ms = 10
        await controller.start(timer.id)

        await wait_until(lambda: timer.continuous.runtime_state.iterations >= 3)
        await controller.stop(timer.id)


class TestCapabilitiesWhileRunning:

    @pytest.mark.asyncio
    async def test_denied_effect_stops_node(self, host, graph, controller, transport):
        wasm = component_wasm(
            name="Poller",
            outputs=[{"name": "status", "type": "string"}],
            capabilities=["network:good.com"],
            continuous=True,
            host_imports=["http_request"],
            before=call_with_json("http_request", {"method": "GET", "url": "https://evil.com/"}),
            result=ok(("status", NodeValue.string("ok"))),
        )
        spec = await host.load_bytes(wasm, "user:poller")
        host.grant(spec.id, ["network:good.com"])
        node = spec.create_node(node_id="poller")
        graph.add_node(node)

        await controller.start(node.id)
        await wait_until(lambda: not controller.is_active(node.id))

        assert controller.state(node.id) == ContinuousExecutionState.ERROR
        assert "outside declared scope" in node.continuous.runtime_state.last_error
        assert transport.requests == []
