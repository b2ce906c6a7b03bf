"""
Tests for the producer/consumer dependency graph.
"""

import pytest

from interaqt.util import DependencyGraph


@pytest.mark.unit
@pytest.mark.scheduler
class TestDependencyGraph:
    """Test suite for DependencyGraph cycle and ordering checks."""

    def test_empty_graph(self):
        """Empty graph has no cycles and no nodes."""
        graph = DependencyGraph()
        assert len(graph) == 0
        assert not graph.has_cycle()
        assert graph.topological_sort() == []

    def test_simple_chain(self):
        """Linear chain A -> B -> C sorts in order."""
        graph = DependencyGraph()

        assert graph.add_edge("A", "B")
        assert graph.add_edge("B", "C")

        assert len(graph) == 3
        assert "B" in graph
        assert not graph.has_cycle()
        assert graph.topological_sort() == ["A", "B", "C"]

    def test_duplicate_edge_is_accepted(self):
        """Adding an existing edge again is a no-op."""
        graph = DependencyGraph()
        graph.add_edge("A", "B")
        assert graph.add_edge("A", "B")
        assert graph.get_consumers("A") == {"B"}

    def test_cycle_is_recorded_not_inserted(self):
        """An edge closing a cycle is refused and the cycle path recorded."""
        graph = DependencyGraph()

        graph.add_edge("A", "B")
        graph.add_edge("B", "C")
        assert graph.add_edge("C", "A") is False

        assert graph.has_cycle()
        assert graph.cycles == [["C", "A", "B", "C"]]
        # The refused edge is not part of the graph, so sorting still works
        assert graph.topological_sort() == ["A", "B", "C"]

    def test_self_loop(self):
        """A computation reading its own output is a one-node cycle."""
        graph = DependencyGraph()

        assert graph.add_edge("A", "A") is False
        assert graph.cycles == [["A", "A"]]

    def test_producers_and_consumers(self):
        """Reverse edges are tracked."""
        graph = DependencyGraph()
        graph.add_edge("A", "C")
        graph.add_edge("B", "C")

        assert graph.get_producers("C") == {"A", "B"}
        assert graph.get_consumers("A") == {"C"}
        assert graph.get_producers("unknown") == set()

    def test_multiple_components_keep_insertion_order(self):
        """Independent components sort by insertion order."""
        graph = DependencyGraph()
        graph.add_edge("X", "Y")
        graph.add_edge("P", "Q")
        graph.add_edge("Q", "R")

        order = graph.topological_sort()
        assert order.index("X") < order.index("Y")
        assert order.index("P") < order.index("Q") < order.index("R")
        assert order[:2] == ["X", "P"]

    def test_order_violations(self):
        """A consumer declared before its producer is reported."""
        graph = DependencyGraph()
        graph.add_edge("total", "report")
        graph.add_edge("count", "report")

        assert graph.order_violations(["total", "count", "report"]) == []
        assert graph.order_violations(["report", "total", "count"]) == [
            ("total", "report"),
            ("count", "report"),
        ]

    def test_order_violations_ignore_undeclared_nodes(self):
        """Nodes missing from the declared order are skipped."""
        graph = DependencyGraph()
        graph.add_edge("a", "b")
        assert graph.order_violations(["b"]) == []

    @pytest.mark.parametrize("size", [10, 100])
    def test_long_chain(self, size):
        """Long chains sort without recursion limits."""
        graph = DependencyGraph()
        for index in range(size - 1):
            graph.add_edge(index, index + 1)
        assert graph.topological_sort() == list(range(size))
        assert graph.add_edge(size - 1, 0) is False
        assert str(graph) == f"DependencyGraph(nodes={size}, edges={size - 1}, cycles=1)"
