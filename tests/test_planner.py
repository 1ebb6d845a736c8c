"""Tests for topological leveling."""

import pytest

from taskgraph.errors import GraphValidationError, ValidationReason
from taskgraph.graph.edge import GraphSpec
from taskgraph.graph.plan import Planner


@pytest.fixture
def planner():
    return Planner()


class TestLeveling:
    def test_empty_graph(self, planner):
        plan = planner.plan(GraphSpec())
        assert plan.is_empty
        assert plan.groupings() == []

    def test_independent_nodes_share_level_zero(self, planner, make_graph):
        graph = make_graph([("a", "search"), ("b", "search"), ("c", "search")])
        assert planner.plan(graph).groupings() == [["a", "b", "c"]]

    def test_diamond(self, planner, make_graph):
        graph = make_graph(
            [("a", "search"), ("b", "search"), ("c", "summarize"), ("d", "answer")],
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        plan = planner.plan(graph)
        assert plan.groupings() == [["a"], ["b", "c"], ["d"]]
        assert plan.level_of("d") == 2
        assert plan.level_of("missing") is None

    def test_level_is_longest_path(self, planner, make_graph):
        graph = make_graph(
            [("a", "search"), ("b", "search"), ("c", "answer")],
            [("a", "b"), ("b", "c"), ("a", "c")],
        )
        assert planner.plan(graph).groupings() == [["a"], ["b"], ["c"]]

    def test_ties_follow_insertion_order(self, planner, make_graph):
        graph = make_graph(
            [("z", "search"), ("m", "search"), ("late", "answer"), ("early", "answer")],
            [("z", "early"), ("m", "late")],
        )
        assert planner.plan(graph).groupings() == [["z", "m"], ["late", "early"]]

    def test_same_graph_same_plan(self, planner, make_graph):
        graph = make_graph(
            [("a", "search"), ("b", "search"), ("c", "answer"), ("d", "answer")],
            [("a", "c"), ("b", "c"), ("b", "d")],
        )
        assert planner.plan(graph).groupings() == planner.plan(graph).groupings()


class TestReplanning:
    def test_started_nodes_are_not_planned(self, planner, make_graph):
        graph = make_graph(
            [("a", "search"), ("b", "search"), ("c", "answer")],
            [("a", "b"), ("b", "c")],
        )
        plan = planner.plan(graph, started=["a"])
        assert plan.groupings() == [["b"], ["c"]]
        assert "a" not in plan.node_ids

    def test_new_nodes_slot_in_after_started_sources(self, planner, make_graph):
        graph = make_graph(
            [("plan", "eval"), ("s1", "search"), ("a1", "answer")],
            [("s1", "a1")],
        )
        assert planner.plan(graph, started={"plan"}).groupings() == [["s1"], ["a1"]]

    def test_all_started_gives_empty_plan(self, planner, make_graph):
        graph = make_graph([("a", "search")])
        assert planner.plan(graph, started=["a"]).is_empty

    def test_cycle_in_remaining_subgraph_raises(self, planner, make_graph):
        graph = make_graph(
            [("a", "search"), ("b", "search"), ("c", "answer")],
            [("a", "b"), ("b", "c"), ("c", "b")],
        )
        with pytest.raises(GraphValidationError) as exc_info:
            planner.plan(graph, started=["a"])
        assert exc_info.value.reason == ValidationReason.CYCLE
        assert exc_info.value.details["subjects"] == ["b", "c"]
