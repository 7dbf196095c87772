"""Dependency graph for resource ordering.

Builds a directed graph from resource dependencies (explicit depends_on
plus implicit ${...} references) and computes traversal orderings for
create (dependencies first) and destroy (dependents first).

Nodes are stored as integer indices into the sorted key list, with
adjacency lists in both directions. Ties between independent resources
are broken by key, so orderings are reproducible for a given input.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

from config import ConfigError
from engine.errors import CycleDetected

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyEdge:
    """source is applied after target."""
    source: str
    target: str


class DependencyGraph:
    """Directed acyclic graph of resource keys.

    Provides ordered traversal for lifecycle operations:
    - create_order(): dependencies before dependents
    - destroy_order(): exact reverse of create_order()
    """

    def __init__(self, dependencies: Mapping[str, Iterable[str]]):
        """Build graph from a key -> dependency keys mapping.

        Raises:
            ConfigError: If a dependency names a key not in the mapping
            CycleDetected: If the dependencies contain a cycle
        """
        self._keys: list[str] = sorted(dependencies)
        self._index: dict[str, int] = {k: i for i, k in enumerate(self._keys)}
        self._deps: list[list[int]] = [[] for _ in self._keys]
        self._dependents: list[list[int]] = [[] for _ in self._keys]

        for key, deps in dependencies.items():
            i = self._index[key]
            for dep in sorted(set(deps)):
                if dep not in self._index:
                    raise ConfigError(f"'{key}' depends on unknown resource '{dep}'")
                j = self._index[dep]
                self._deps[i].append(j)
                self._dependents[j].append(i)

        self._order = self._topological_sort()

    @classmethod
    def from_configuration(cls, configuration) -> 'DependencyGraph':
        return cls({r.key: r.dependencies for r in configuration.resources})

    def __contains__(self, key: str) -> bool:
        return key in self._index

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def keys(self) -> list[str]:
        return list(self._keys)

    def edges(self) -> list[DependencyEdge]:
        return [
            DependencyEdge(self._keys[i], self._keys[j])
            for i, deps in enumerate(self._deps)
            for j in deps
        ]

    def _topological_sort(self) -> list[int]:
        """Kahn's algorithm, smallest index first among ready nodes."""
        remaining = [len(d) for d in self._deps]
        ready = [i for i, n in enumerate(remaining) if n == 0]
        heapq.heapify(ready)
        order: list[int] = []

        while ready:
            i = heapq.heappop(ready)
            order.append(i)
            for dependent in self._dependents[i]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(self._keys):
            stuck = {i for i, n in enumerate(remaining) if n > 0}
            raise CycleDetected(self._find_cycle(stuck))
        return order

    def _find_cycle(self, stuck: set[int]) -> list[str]:
        """Walk dependencies among unsorted nodes until one repeats.

        Every unsorted node has at least one unsorted dependency, so the
        walk always closes a cycle. Returns the cycle with its first member
        repeated at the end.
        """
        start = min(stuck)
        path: list[int] = []
        position: dict[int, int] = {}
        node = start
        while node not in position:
            position[node] = len(path)
            path.append(node)
            node = next(j for j in self._deps[node] if j in stuck)
        cycle = path[position[node]:] + [node]
        return [self._keys[i] for i in cycle]

    def create_order(self) -> list[str]:
        """Keys in creation order (dependencies before dependents)."""
        return [self._keys[i] for i in self._order]

    def destroy_order(self) -> list[str]:
        """Keys in destruction order (dependents before dependencies).

        Reverse of create_order.
        """
        return list(reversed(self.create_order()))

    def _closure(self, key: str, adjacency: list[list[int]]) -> list[str]:
        seen: set[int] = set()
        stack = list(adjacency[self._index[key]])
        while stack:
            i = stack.pop()
            if i in seen:
                continue
            seen.add(i)
            stack.extend(adjacency[i])
        return sorted(self._keys[i] for i in seen)

    def dependencies_of(self, key: str, transitive: bool = False) -> list[str]:
        """Keys that key depends on.

        Raises:
            KeyError: If key is not in the graph
        """
        if transitive:
            return self._closure(key, self._deps)
        return [self._keys[j] for j in self._deps[self._index[key]]]

    def dependents_of(self, key: str, transitive: bool = False) -> list[str]:
        """Keys that depend on key.

        Raises:
            KeyError: If key is not in the graph
        """
        if transitive:
            return self._closure(key, self._dependents)
        return sorted(self._keys[i] for i in self._dependents[self._index[key]])

    def levels(self) -> list[list[str]]:
        """Group keys by depth: level 0 has no dependencies."""
        depth = [0] * len(self._keys)
        for i in self._order:
            if self._deps[i]:
                depth[i] = 1 + max(depth[j] for j in self._deps[i])
        grouped: dict[int, list[str]] = {}
        for i in self._order:
            grouped.setdefault(depth[i], []).append(self._keys[i])
        return [sorted(grouped[d]) for d in sorted(grouped)]
