"""Tests for the arena-backed workflow graph."""

import pytest

from autoflow.workflow.dag import WorkflowGraph
from autoflow.workflow.definition import parse_workflow
from tests.workflow_fixtures import action, edge, workflow


def _ids(graph):
    return [graph.nodes[i].id for i in graph.topological_order()]


class TestBuild:
    def test_indices_follow_declaration_order(self):
        graph = WorkflowGraph.build(["a", "b", "c"], [("a", "b"), ("a", "c")])

        assert [n.id for n in graph.nodes] == ["a", "b", "c"]
        assert [n.index for n in graph.nodes] == [0, 1, 2]
        assert graph.successors(0) == [1, 2]
        assert graph.nodes[2].inbound == [1]
        assert graph.is_terminal(1) and not graph.is_terminal(0)

    def test_duplicate_node_rejected(self):
        with pytest.raises(ValueError, match="Duplicate node id 'a'"):
            WorkflowGraph.build(["a", "a"], [])

    def test_unknown_edge_endpoint_rejected(self):
        with pytest.raises(ValueError, match="non-existent node 'z'"):
            WorkflowGraph.build(["a"], [("a", "z")])


class TestCycles:
    def test_finds_cycle_path(self):
        graph = WorkflowGraph.build(["a", "b", "c"], [("a", "b"), ("b", "c"), ("c", "b")])
        assert graph.find_cycle() == ["b", "c", "b"]

    def test_self_loop(self):
        graph = WorkflowGraph.build(["a"], [("a", "a")])
        assert graph.find_cycle() == ["a", "a"]

    def test_acyclic(self):
        graph = WorkflowGraph.build(["a", "b"], [("a", "b")])
        assert graph.find_cycle() is None

    def test_topological_order_rejects_cycle(self):
        graph = WorkflowGraph.build(["a", "b"], [("a", "b"), ("b", "a")])
        with pytest.raises(ValueError, match="cycle"):
            graph.topological_order()

    def test_long_chain_does_not_recurse(self):
        ids = [f"n{i}" for i in range(5000)]
        graph = WorkflowGraph.build(ids, list(zip(ids, ids[1:])))
        assert graph.find_cycle() is None
        assert _ids(graph)[-1] == "n4999"


class TestTopologicalOrder:
    def test_ties_broken_by_declaration_order(self):
        # d is declared before b and c but depends on both
        graph = WorkflowGraph.build(
            ["a", "d", "c", "b"],
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        assert _ids(graph) == ["a", "c", "b", "d"]

    def test_every_node_appears_once(self):
        graph = WorkflowGraph.build(
            ["x", "y", "z", "w"],
            [("x", "z"), ("y", "z"), ("z", "w"), ("x", "w")],
        )
        order = _ids(graph)
        assert sorted(order) == ["w", "x", "y", "z"]
        assert order.index("x") < order.index("z") < order.index("w")
        assert order.index("y") < order.index("z")


class TestFromDefinition:
    def test_carries_definitions(self):
        definition = parse_workflow(workflow(
            nodes=[action("a"), action("b")],
            edges=[edge("a", "b", guard={"type": "exists", "value": 1})],
        ))

        graph = WorkflowGraph.from_definition(definition)

        assert graph.nodes[1].data.id == "b"
        assert graph.edges[0].data.guard == {"type": "exists", "value": 1}

    def test_cycle_in_definition(self):
        definition = parse_workflow(workflow(
            nodes=[action("a"), action("b")],
            edges=[edge("a", "b"), edge("b", "a")],
        ))
        with pytest.raises(ValueError, match="a -> b -> a"):
            WorkflowGraph.from_definition(definition)
