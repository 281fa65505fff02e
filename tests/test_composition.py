"""Tests for the composition service."""

import time

import pytest

from conftest import component_wasm, ok
from wasmflow.core.events import EventEmitter, EventType
from wasmflow.core.executor import Executor
from wasmflow.core.types import NodeValue
from wasmflow.runtime.bundle import read_bundle
from wasmflow.runtime.capabilities import DenyReason
from wasmflow.runtime.composition import CompositionService
from wasmflow.utils.errors import (
    CapabilityViolationError,
    ComponentTrapError,
    CompositionTimeoutError,
    DisconnectedSelectionError,
    ExecutionError,
    InsufficientSelectionError,
    NoCompatiblePairingError,
    NotComposableError,
)

TRANSFORM_EXPORT = '(func (export "transform") (param i32) (result i32) (i32.mul (local.get 0) (i32.const 2)))'
TRANSFORM_IMPORT = '(import "env" "transform" (func $transform (param i32) (result i32)))'


async def load_components(host):
    """Source exports `transform`, Middle exports nothing, Sink imports `env.transform`."""
    source = await host.load_bytes(
        component_wasm(
            name="Source",
            inputs=[{"name": "seed", "type": "u32"}],
            outputs=[{"name": "value", "type": "u32"}],
            result=ok(("value", NodeValue.u32(4))),
            extra=TRANSFORM_EXPORT,
        ),
        "user:source",
    )
    middle = await host.load_bytes(
        component_wasm(
            name="Middle",
            inputs=[{"name": "value", "type": "u32"}],
            outputs=[{"name": "value", "type": "u32"}],
            result=ok(("value", NodeValue.u32(5))),
        ),
        "user:middle",
    )
    sink = await host.load_bytes(
        component_wasm(
            name="Sink",
            inputs=[{"name": "value", "type": "u32"}],
            outputs=[{"name": "result", "type": "string"}],
            imports=[TRANSFORM_IMPORT],
            result=ok(("result", NodeValue.string("done"))),
        ),
        "user:sink",
    )
    return source, middle, sink


async def load_calling_sink(host, capabilities=None):
    """Sink whose execution calls `env.transform` and checks the answer."""

    def call_transform(data):
        unlinked = data.packed(ok(("result", NodeValue.string("unlinked"))))
        return f"(if (i32.ne (call $transform (i32.const 3)) (i32.const 6)) (then (return (i64.const {unlinked}))))"

    return await host.load_bytes(
        component_wasm(
            name="Sink",
            inputs=[{"name": "value", "type": "u32"}],
            outputs=[{"name": "result", "type": "string"}],
            capabilities=capabilities,
            imports=[TRANSFORM_IMPORT],
            before=call_transform,
            result=ok(("result", NodeValue.string("linked"))),
        ),
        "user:calling-sink",
    )


def place(graph, spec, node_id):
    node = spec.create_node(node_id=node_id)
    graph.add_node(node)
    return node


def connect_pair(graph, source, sink, source_id="a-source", sink_id="b-sink"):
    a = place(graph, source, source_id)
    b = place(graph, sink, sink_id)
    graph.set_input_value(a.id, "seed", NodeValue.u32(2))
    graph.add_edge(a.id, "value", b.id, "value")
    return a, b


class TestValidation:
    """Tests for rejected selections."""

    @pytest.mark.asyncio
    async def test_single_node(self, host, graph):
        source, _, sink = await load_components(host)
        a, _ = connect_pair(graph, source, sink)

        with pytest.raises(InsufficientSelectionError):
            await CompositionService(host).compose(graph, [a.id, a.id], name="solo")

    @pytest.mark.asyncio
    async def test_disconnected_pairs(self, host, graph):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)
        c, d = connect_pair(graph, source, sink, "c-source", "d-sink")

        with pytest.raises(DisconnectedSelectionError):
            await CompositionService(host).compose(graph, [a.id, b.id, c.id, d.id], name="split")
        assert not host.has_component("composed:split")

    @pytest.mark.asyncio
    async def test_builtin_not_composable(self, host, graph):
        source, _, sink = await load_components(host)
        a, _ = connect_pair(graph, source, sink)
        const = place(graph, host.get_spec("builtin:constant:u32"), "0-const")
        graph.add_edge(const.id, "value", a.id, "seed")

        with pytest.raises(NotComposableError) as exc:
            await CompositionService(host).compose(graph, [const.id, a.id], name="mixed")
        assert exc.value.node_id == const.id

    @pytest.mark.asyncio
    async def test_no_compatible_pairing(self, host, graph):
        source, middle, _ = await load_components(host)
        a = place(graph, source, "a-source")
        m = place(graph, middle, "m-middle")
        graph.add_edge(a.id, "value", m.id, "value")

        with pytest.raises(NoCompatiblePairingError):
            await CompositionService(host).compose(graph, [a.id, m.id], name="unwired")
        assert not host.has_component("composed:unwired")


class TestCompose:
    """Tests for successful compositions."""

    @pytest.mark.asyncio
    async def test_pair_exposes_boundary_ports(self, host, graph):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)

        result = await CompositionService(host).compose(graph, [b.id, a.id], name="pipeline")

        composition = result.composition
        assert list(composition.exposed_inputs) == ["Source.seed"]
        assert list(composition.exposed_outputs) == ["Sink.result"]
        assert composition.exposed_inputs["Source.seed"].internal_node_id == a.id
        assert [p.name for p in result.node.inputs] == ["Source.seed"]
        assert [p.name for p in result.node.outputs] == ["Sink.result"]
        assert result.spec.input_spec("Source.seed").optional
        assert result.manifest["wiring"] == [
            {"import_module": "env", "import_name": "transform", "plug": 0, "export": "transform"}
        ]
        assert result.manifest["imports"] == []
        assert "wf_execute" in result.manifest["exports"]

    @pytest.mark.asyncio
    async def test_three_node_chain(self, host, graph):
        source, middle, sink = await load_components(host)
        a = place(graph, source, "a-source")
        m = place(graph, middle, "m-middle")
        b = place(graph, sink, "z-sink")
        graph.add_edge(a.id, "value", m.id, "value")
        graph.add_edge(m.id, "value", b.id, "value")

        result = await CompositionService(host).compose(graph, [a.id, m.id, b.id], name="chain")

        composition = result.composition
        assert list(composition.exposed_inputs) == ["Source.seed"]
        assert list(composition.exposed_outputs) == ["Sink.result"]
        assert composition.socket_path == "user:sink"
        assert composition.plug_paths == ["user:source", "user:middle"]
        assert composition.metadata.component_count == 3
        assert len(composition.internal_edges) == 2

    @pytest.mark.asyncio
    async def test_output_with_external_consumer_stays_exposed(self, host, graph):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)
        watcher = place(graph, host.get_spec("builtin:display"), "w-display")
        graph.add_edge(a.id, "value", watcher.id, "value")

        result = await CompositionService(host).compose(graph, [a.id, b.id], name="tapped")

        assert set(result.composition.exposed_outputs) == {"Source.value", "Sink.result"}

    @pytest.mark.asyncio
    async def test_same_name_replaces_registration(self, host, graph):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)
        c, d = connect_pair(graph, source, sink, "c-source", "d-sink")
        service = CompositionService(host)

        first = await service.compose(graph, [a.id, b.id], name="pipeline")
        second = await service.compose(graph, [c.id, d.id], name="pipeline")

        assert second.spec.id == first.spec.id == "composed:pipeline"
        registered = host.get_spec("composed:pipeline")
        assert set(registered.composition.internal_nodes) == {c.id, d.id}

    @pytest.mark.asyncio
    async def test_identical_selection_hits_cache(self, host, graph):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)
        service = CompositionService(host)

        first = await service.compose(graph, [a.id, b.id], name="pipeline")
        second = await service.compose(graph, [a.id, b.id], name="pipeline")

        assert not first.cache_hit
        assert second.cache_hit
        assert second.artifact == first.artifact

        service.clear_cache()
        third = await service.compose(graph, [a.id, b.id], name="pipeline")
        assert not third.cache_hit

    @pytest.mark.asyncio
    async def test_bundle_is_deterministic(self, host, graph):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)

        first = await CompositionService(host).compose(graph, [a.id, b.id], name="pipeline")
        second = await CompositionService(host).compose(graph, [a.id, b.id], name="pipeline")

        assert not second.cache_hit
        assert second.artifact == first.artifact
        manifest, socket, plugs = read_bundle(second.artifact)
        assert manifest["socket"]["component_id"] == "user:sink"
        assert socket == host.get_artifact("user:sink")
        assert plugs == [host.get_artifact("user:source")]

    @pytest.mark.asyncio
    async def test_completion_event(self, host, graph):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)
        seen = []

        async def record(event):
            seen.append(event)

        emitter = EventEmitter()
        emitter.on(record)
        service = CompositionService(host, event_emitter=emitter)
        result = await service.compose(graph, [a.id, b.id], name="pipeline")

        assert [e.type for e in seen] == [EventType.COMPOSITION_COMPLETE]
        assert seen[0].metadata["composition_hash"] == result.composition.metadata.composition_hash
        assert seen[0].metadata["cache_hit"] is False


class TestApply:
    """Tests for inserting a composite into the graph."""

    @pytest.mark.asyncio
    async def test_apply_rewires_boundary_edges(self, host, graph):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)
        const = place(graph, host.get_spec("builtin:constant:u32"), "0-const")
        display = place(graph, host.get_spec("builtin:display"), "z-display")
        graph.set_input_value(const.id, "value", NodeValue.u32(9))
        graph.add_edge(const.id, "value", a.id, "seed")
        graph.add_edge(b.id, "result", display.id, "value")
        service = CompositionService(host)

        result = await service.compose(graph, [a.id, b.id], name="pipeline")
        composite = service.apply(graph, result)

        assert set(graph.nodes) == {const.id, composite.id, display.id}
        assert sorted((e.source, e.source_port, e.target, e.target_port) for e in graph.edges) == sorted(
            [
                (const.id, "value", composite.id, "Source.seed"),
                (composite.id, "Sink.result", display.id, "value"),
            ]
        )
        assert composite.is_composite

        report = await Executor(host).run(graph)

        assert report.succeeded, report.to_dict()
        assert composite.get_output("Sink.result").value == NodeValue.string("done")
        assert display.get_output("text").value == NodeValue.string("done")

    @pytest.mark.asyncio
    async def test_internal_snapshot_is_independent(self, host, graph):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)
        service = CompositionService(host)
        result = await service.compose(graph, [a.id, b.id], name="pipeline")
        composite = service.apply(graph, result)

        inner = composite.composition.internal_graph()
        inner.remove_node(a.id)

        assert list(composite.composition.internal_nodes) == [a.id, b.id]
        assert composite.composition.compute_hash() == result.composition.metadata.composition_hash


class TestLinkedExecution:
    """Tests for composites whose socket calls into its plugs."""

    @pytest.mark.asyncio
    async def test_socket_calls_reach_plug(self, host, graph):
        source, _, _ = await load_components(host)
        sink = await load_calling_sink(host)
        a, b = connect_pair(graph, source, sink)

        with pytest.raises(ComponentTrapError):
            await host.execute(sink.id, [("value", NodeValue.u32(1))])

        service = CompositionService(host)
        result = await service.compose(graph, [a.id, b.id], name="linked")
        composite = service.apply(graph, result)
        report = await Executor(host).run(graph)

        assert result.composition.socket_node_id == b.id
        assert report.succeeded, report.to_dict()
        assert composite.get_output("Sink.result").value == NodeValue.string("linked")

    @pytest.mark.asyncio
    async def test_plug_keeps_its_own_capabilities(self, host, graph):
        plug = await host.load_bytes(
            component_wasm(
                name="Source",
                inputs=[{"name": "seed", "type": "u32"}],
                outputs=[{"name": "value", "type": "u32"}],
                result=ok(("value", NodeValue.u32(4))),
                host_imports=["get_temp_dir"],
                extra=(
                    '(func (export "transform") (param i32) (result i32) '
                    "(drop (call $get_temp_dir)) (i32.mul (local.get 0) (i32.const 2)))"
                ),
            ),
            "user:greedy-source",
        )
        sink = await load_calling_sink(host, capabilities=["scratch:*"])
        host.grant(sink.id, ["scratch:*"])
        a, b = connect_pair(graph, plug, sink)
        service = CompositionService(host)
        composite = service.apply(graph, await service.compose(graph, [a.id, b.id], name="greedy"))

        report = await Executor(host).run(graph)

        error = report.errors[composite.id]
        assert isinstance(error, CapabilityViolationError)
        assert error.component_id == "user:greedy-source"
        assert error.denial.reason == DenyReason.NOT_DECLARED
        assert error.node_id == composite.id
        assert error.internal_node_id == b.id
        assert b.id in error.message

    @pytest.mark.asyncio
    async def test_stale_composite_is_rejected(self, host, graph):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)
        c, d = connect_pair(graph, source, sink, "c-source", "d-sink")
        service = CompositionService(host)
        stale = service.apply(graph, await service.compose(graph, [a.id, b.id], name="pipeline"))
        await service.compose(graph, [c.id, d.id], name="pipeline")

        report = await Executor(host).run(graph)

        assert isinstance(report.errors[stale.id], ExecutionError)
        assert report.errors[stale.id].node_id == stale.id
        assert "Recompose" in report.errors[stale.id].hint


class TestTimeBound:
    """Tests for the composition time bound."""

    @pytest.mark.asyncio
    async def test_slow_build_times_out_without_registering(self, host, graph, monkeypatch):
        source, _, sink = await load_components(host)
        a, b = connect_pair(graph, source, sink)
        service = CompositionService(host, timeout=0.05)

        def slow_build(*args):
            time.sleep(0.5)
            return b"", {"wiring": []}

        monkeypatch.setattr(service, "_build_bundle", slow_build)

        with pytest.raises(CompositionTimeoutError):
            await service.compose(graph, [a.id, b.id], name="slow")
        assert not host.has_component("composed:slow")
