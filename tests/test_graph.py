"""Tests for the graph model."""

import random

import pytest

from wasmflow.core.graph import Node, NodeGraph, Port, PortDirection
from wasmflow.core.state import ExecutionState
from wasmflow.core.types import NodeValue
from wasmflow.utils.errors import (
    CycleDetectedError,
    DuplicateNodeError,
    IncompatibleTypesError,
    NodeNotFoundError,
    PortAlreadyConnectedError,
    PortNotFoundError,
    SelfConnectionError,
)


def make_node(node_id, inputs=(), outputs=(), name=None):
    return Node(
        id=node_id,
        component_id="test:node",
        display_name=name or node_id,
        inputs=[Port(name=n, data_type=t, direction=PortDirection.INPUT) for n, t in inputs],
        outputs=[Port(name=n, data_type=t, direction=PortDirection.OUTPUT) for n, t in outputs],
    )


def chain(graph, *ids, data_type="f32"):
    for node_id in ids:
        graph.add_node(make_node(node_id, inputs=[("in", data_type)], outputs=[("out", data_type)]))
    for source, target in zip(ids, ids[1:]):
        graph.add_edge(source, "out", target, "in")
    return graph


class TestGraphEditing:
    """Tests for structural edits and their validation."""

    def test_add_and_remove_node(self, graph):
        chain(graph, "a", "b")
        removed = graph.remove_node("a")

        assert removed.id == "a"
        assert "a" not in graph.nodes
        assert graph.edges == []

    def test_duplicate_node_rejected(self, graph):
        graph.add_node(make_node("a"))
        with pytest.raises(DuplicateNodeError):
            graph.add_node(make_node("a"))

    def test_unknown_node_rejected(self, graph):
        graph.add_node(make_node("a", outputs=[("out", "f32")]))
        with pytest.raises(NodeNotFoundError):
            graph.add_edge("a", "out", "missing", "in")

    def test_unknown_port_rejected(self, graph):
        chain(graph, "a", "b")
        with pytest.raises(PortNotFoundError) as exc:
            graph.add_edge("a", "nope", "b", "in")
        assert exc.value.port_name == "nope"

    def test_incompatible_types_rejected(self, graph):
        graph.add_node(make_node("a", outputs=[("out", "string")]))
        graph.add_node(make_node("b", inputs=[("in", "f32")]))

        with pytest.raises(IncompatibleTypesError) as exc:
            graph.add_edge("a", "out", "b", "in")

        assert exc.value.node_id == "b"
        assert exc.value.port_name == "in"
        assert graph.edges == []

    def test_any_type_is_compatible(self, graph):
        graph.add_node(make_node("a", outputs=[("out", "string")]))
        graph.add_node(make_node("b", inputs=[("in", "any")]))
        graph.add_edge("a", "out", "b", "in")
        assert len(graph.edges) == 1

    def test_list_types_compare_elements(self, graph):
        graph.add_node(make_node("a", outputs=[("out", "list<u32>")]))
        graph.add_node(make_node("b", inputs=[("in", "list<u32>")]))
        graph.add_node(make_node("c", inputs=[("in", "list<string>")]))

        graph.add_edge("a", "out", "b", "in")
        with pytest.raises(IncompatibleTypesError):
            graph.add_edge("a", "out", "c", "in")

    def test_self_connection_rejected(self, graph):
        graph.add_node(make_node("a", inputs=[("in", "f32")], outputs=[("out", "f32")]))
        with pytest.raises(SelfConnectionError):
            graph.add_edge("a", "out", "a", "in")

    def test_input_accepts_one_edge(self, graph):
        chain(graph, "a", "b")
        graph.add_node(make_node("c", outputs=[("out", "f32")]))
        with pytest.raises(PortAlreadyConnectedError):
            graph.add_edge("c", "out", "b", "in")

    def test_cycle_rejected_and_graph_unchanged(self, graph):
        chain(graph, "a", "b", "c")
        before = [edge.id for edge in graph.edges]

        with pytest.raises(CycleDetectedError) as exc:
            graph.add_edge("c", "out", "a", "in")

        assert exc.value.cycle[0] == "a"
        assert exc.value.cycle[-1] == "a"
        assert [edge.id for edge in graph.edges] == before
        assert graph.topological_order() == ["a", "b", "c"]

    def test_remove_edge_clears_input(self, graph):
        chain(graph, "a", "b")
        graph.set_output_values("a", {"out": NodeValue.f32(1.0)})
        graph.resolve_inputs("b")
        assert graph.get_node("b").get_input("in").value == NodeValue.f32(1.0)

        graph.remove_edge(graph.edges[0].id)

        assert graph.get_node("b").get_input("in").value is None
        assert graph.get_node("b").dirty

    def test_set_input_value_type_checked(self, graph):
        graph.add_node(make_node("a", inputs=[("in", "u32")]))
        with pytest.raises(IncompatibleTypesError):
            graph.set_input_value("a", "in", NodeValue.string("x"))

    def test_set_input_value_on_connected_port_rejected(self, graph):
        chain(graph, "a", "b")
        with pytest.raises(PortAlreadyConnectedError):
            graph.set_input_value("b", "in", NodeValue.f32(2.0))


class TestTopologicalOrder:
    """Tests for dependency ordering."""

    def test_ties_broken_by_node_id(self, graph):
        for node_id in ["c", "a", "b"]:
            graph.add_node(make_node(node_id))
        assert graph.topological_order() == ["a", "b", "c"]

    @pytest.mark.parametrize("seed", range(20))
    def test_random_dags_respect_every_edge(self, seed):
        rng = random.Random(seed)
        graph = NodeGraph()
        ids = [f"n{i:02d}" for i in range(12)]
        rng.shuffle(ids)
        for node_id in ids:
            graph.add_node(
                make_node(node_id, inputs=[(f"in{i}", "any") for i in range(12)], outputs=[("out", "any")])
            )
        ranked = sorted(ids, key=lambda _: rng.random())
        for i, source in enumerate(ranked):
            for j, target in enumerate(ranked[i + 1:]):
                if rng.random() < 0.3:
                    graph.add_edge(source, "out", target, f"in{i}")

        order = graph.topological_order()
        position = {node_id: index for index, node_id in enumerate(order)}

        assert sorted(order) == sorted(ids)
        for edge in graph.edges:
            assert position[edge.source] < position[edge.target]
        assert graph.copy_graph().topological_order() == order

    def test_subset_keeps_global_order(self, graph):
        chain(graph, "a", "b", "c", "d")
        assert graph.topological_order(["d", "b"]) == ["b", "d"]

    def test_reachability(self, graph):
        chain(graph, "a", "b", "c")
        graph.add_node(make_node("x"))

        assert graph.descendants("a") == {"b", "c"}
        assert graph.ancestors("c") == {"a", "b"}
        assert graph.ancestors("x") == set()


class TestDirtyTracking:
    """Tests for dirty propagation."""

    def test_marking_dirty_propagates_downstream(self, graph):
        chain(graph, "a", "b", "c")
        graph.add_node(make_node("x", outputs=[("out", "f32")]))
        for node in graph.nodes.values():
            node.dirty = False
            node.execution_state = ExecutionState.COMPLETED

        graph.mark_dirty("b")

        assert not graph.get_node("a").dirty
        assert graph.get_node("b").dirty
        assert graph.get_node("c").dirty
        assert not graph.get_node("x").dirty
        assert graph.get_node("c").execution_state == ExecutionState.IDLE

    def test_dirty_execution_order(self, graph):
        chain(graph, "a", "b", "c")
        for node in graph.nodes.values():
            node.dirty = False
        graph.get_node("b").dirty = True

        assert graph.dirty_execution_order() == ["b", "c"]

    def test_unchanged_value_does_not_dirty(self, graph):
        graph.add_node(make_node("a", inputs=[("in", "f32")]))
        graph.set_input_value("a", "in", NodeValue.f32(1.0))
        graph.get_node("a").dirty = False

        graph.set_input_value("a", "in", NodeValue.f32(1.0))
        assert not graph.get_node("a").dirty

        graph.set_input_value("a", "in", NodeValue.f32(2.0))
        assert graph.get_node("a").dirty


class TestConnectivity:
    """Tests for selection connectivity."""

    def test_chain_is_connected(self, graph):
        chain(graph, "a", "b", "c")
        assert graph.is_connected_subgraph(["a", "b", "c"])

    def test_direction_ignored(self, graph):
        graph.add_node(make_node("a", outputs=[("out", "f32")]))
        graph.add_node(make_node("b", outputs=[("out", "f32")]))
        graph.add_node(make_node("c", inputs=[("x", "f32"), ("y", "f32")]))
        graph.add_edge("a", "out", "c", "x")
        graph.add_edge("b", "out", "c", "y")
        assert graph.is_connected_subgraph(["a", "b", "c"])

    def test_two_isolated_pairs_not_connected(self, graph):
        chain(graph, "a", "b")
        chain(graph, "c", "d")
        assert not graph.is_connected_subgraph(["a", "b", "c", "d"])

    def test_path_through_unselected_node_does_not_count(self, graph):
        chain(graph, "a", "b", "c")
        assert not graph.is_connected_subgraph(["a", "c"])

    def test_single_or_unknown_nodes(self, graph):
        chain(graph, "a", "b")
        assert not graph.is_connected_subgraph(["a"])
        assert not graph.is_connected_subgraph(["a", "zzz"])


class TestValidation:

    def test_warns_about_unset_required_inputs(self, graph):
        graph.add_node(make_node("a", inputs=[("in", "f32")]))
        report = graph.validate()

        assert report.is_valid
        assert any("'in'" in warning for warning in report.warnings)
