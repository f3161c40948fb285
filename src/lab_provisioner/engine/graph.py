"""Dependency graph utilities."""

from __future__ import annotations

import heapq
from typing import TYPE_CHECKING

from lab_provisioner.engine.errors import DependencyCycleError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


class DependencyGraph:
    """A directed graph where nodes depend on other nodes.

    Dependencies on nodes outside the graph are ignored.
    """

    def __init__(
        self,
        nodes: Iterable[str],
        dependencies: Mapping[str, Iterable[str]],
        priorities: Mapping[str, int] | None = None,
        names: Mapping[str, str] | None = None,
    ) -> None:
        self._nodes = set(nodes)
        self._priorities = priorities or {}
        self._names = names or {}
        # node -> filtered deps within graph
        self._deps: dict[str, set[str]] = {}
        self._dependents: dict[str, set[str]] = {n: set() for n in self._nodes}
        for node in self._nodes:
            deps = set(dependencies.get(node, []))
            self._deps[node] = {d for d in deps if d in self._nodes}
            for dep in self._deps[node]:
                self._dependents[dep].add(node)

    @property
    def nodes(self) -> frozenset[str]:
        return frozenset(self._nodes)

    def sort_key(self, node: str) -> tuple[str, int, str]:
        """Tie-break key: resource name, then priority, then the node itself.

        Nodes without a name sort by their own key.
        """
        return (self._names.get(node, node), self._priorities.get(node, 0), node)

    def dependencies(self, node: str) -> frozenset[str]:
        return frozenset(self._deps[node])

    def dependents(self, node: str) -> frozenset[str]:
        return frozenset(self._dependents[node])

    def descendants(self, node: str) -> set[str]:
        """All nodes that transitively depend on *node*."""
        seen: set[str] = set()
        stack = list(self._dependents[node])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return seen

    def topological_order(self) -> list[str]:
        """Return deterministic topo order (ties broken by ``sort_key``)."""
        indegree: dict[str, int] = {n: len(self._deps[n]) for n in self._nodes}

        ready: list[tuple[tuple[str, int, str], str]] = [
            (self.sort_key(n), n) for n, deg in indegree.items() if deg == 0
        ]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for child in sorted(self._dependents[node]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, (self.sort_key(child), child))

        if len(order) != len(self._nodes):
            remaining = sorted(self._nodes - set(order))
            raise DependencyCycleError(remaining)

        return order

    def reverse_topological_order(self) -> list[str]:
        order = self.topological_order()
        order.reverse()
        return order
