"""
interaqt Dependency Ordering - Producer/Consumer Graph over Computations
========================================================================

The scheduler runs affected computations in declaration order. That order is
deterministic but not necessarily topological: a consumer declared before its
producer may read a value the producer has not refreshed yet in the same
cascade. This module builds the producer -> consumer graph at setup so such
cases (and outright cycles) can be reported.

Usage:
    graph = DependencyGraph()
    graph.add_edge(order_total, customer_lifetime_value)   # consumer depends on producer
    graph.add_edge(customer_lifetime_value, order_total)   # closes a cycle

    graph.cycles               # [[customer_lifetime_value, order_total, customer_lifetime_value]]
    graph.order_violations([customer_lifetime_value, order_total])

Edges that would close a cycle are recorded, not inserted, so the graph stays
acyclic and ``topological_sort`` always succeeds.
"""

from collections import defaultdict, deque
from typing import Dict, Generic, Hashable, List, Optional, Sequence, Set, Tuple, TypeVar

T = TypeVar("T", bound=Hashable)


class DependencyGraph(Generic[T]):
    """
    Directed graph where an edge ``producer -> consumer`` means the consumer reads
    what the producer writes.

    Attributes:
        graph: Forward edges (node -> consumers)
        reverse_graph: Reverse edges (node -> producers)
        cycles: Cycle paths found while adding edges, each starting and ending
            with the same node
    """

    def __init__(self):
        self.graph: Dict[T, Set[T]] = defaultdict(set)
        self.reverse_graph: Dict[T, Set[T]] = defaultdict(set)
        self.nodes: List[T] = []
        self.cycles: List[List[T]] = []
        self._node_set: Set[T] = set()

    def add_node(self, node: T) -> None:
        if node not in self._node_set:
            self._node_set.add(node)
            self.nodes.append(node)

    def add_edge(self, producer: T, consumer: T) -> bool:
        """
        Add ``producer -> consumer``.

        Returns:
            False if the edge would close a cycle (the cycle is recorded in
            ``cycles`` and the edge is not inserted), True otherwise.
        """
        self.add_node(producer)
        self.add_node(consumer)

        if consumer in self.graph[producer]:
            return True

        path = self._path(consumer, producer)
        if path is not None:
            self.cycles.append([producer] + path)
            return False

        self.graph[producer].add(consumer)
        self.reverse_graph[consumer].add(producer)
        return True

    def has_cycle(self) -> bool:
        return bool(self.cycles)

    def topological_sort(self) -> List[T]:
        """Kahn's algorithm; ties are broken by insertion order."""
        indegrees = {node: len(self.reverse_graph[node]) for node in self.nodes}
        queue = deque(node for node in self.nodes if indegrees[node] == 0)
        result: List[T] = []

        while queue:
            node = queue.popleft()
            result.append(node)
            for consumer in sorted(self.graph[node], key=self.nodes.index):
                indegrees[consumer] -= 1
                if indegrees[consumer] == 0:
                    queue.append(consumer)

        if len(result) != len(self.nodes):
            raise ValueError("Graph contains cycles")
        return result

    def order_violations(self, declared: Sequence[T]) -> List[Tuple[T, T]]:
        """
        Return ``(producer, consumer)`` pairs where the consumer comes first in
        ``declared``.
        """
        position = {node: index for index, node in enumerate(declared)}
        violations = []
        for producer in self.nodes:
            for consumer in self.graph[producer]:
                if producer in position and consumer in position:
                    if position[consumer] < position[producer]:
                        violations.append((producer, consumer))
        violations.sort(key=lambda pair: (position[pair[1]], position[pair[0]]))
        return violations

    def get_producers(self, node: T) -> Set[T]:
        return set(self.reverse_graph.get(node, set()))

    def get_consumers(self, node: T) -> Set[T]:
        return set(self.graph.get(node, set()))

    def _path(self, start: T, target: T) -> Optional[List[T]]:
        """Depth-first search for a path start -> ... -> target."""
        if start == target:
            return [start]
        stack: List[Tuple[T, List[T]]] = [(start, [start])]
        visited: Set[T] = set()
        while stack:
            node, path = stack.pop()
            if node in visited:
                continue
            visited.add(node)
            for consumer in self.graph.get(node, ()):
                if consumer == target:
                    return path + [consumer]
                stack.append((consumer, path + [consumer]))
        return None

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node: T) -> bool:
        return node in self._node_set

    def __str__(self) -> str:
        edges = sum(len(consumers) for consumers in self.graph.values())
        return f"DependencyGraph(nodes={len(self.nodes)}, edges={edges}, cycles={len(self.cycles)})"
