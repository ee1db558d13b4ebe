"""Directed dependency graph over ticket ids.

An edge ``A -> B`` means *A requires B to complete first*. All traversals use
explicit stacks or work-lists, so graph depth is bounded by memory rather
than by the interpreter recursion limit.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping


class DependencyGraph:
    """Insertion-ordered adjacency sets in both directions."""

    def __init__(self) -> None:
        self._dependencies: dict[str, dict[str, None]] = {}
        self._dependents: dict[str, dict[str, None]] = {}

    @classmethod
    def from_tasks(cls, tasks: Mapping[str, Iterable[str]]) -> DependencyGraph:
        """Build from ``{task_id: prerequisites}``; unknown prerequisites become nodes."""

        graph = cls()
        for task_id in tasks:
            graph.add_node(task_id)
        for task_id, dependencies in tasks.items():
            for dependency_id in dependencies:
                graph.add_edge(task_id, dependency_id)
        return graph

    def copy(self) -> DependencyGraph:
        clone = DependencyGraph()
        for node in self._dependencies:
            clone.add_node(node)
        for node, dependencies in self._dependencies.items():
            for dependency_id in dependencies:
                clone.add_edge(node, dependency_id)
        return clone

    def add_node(self, node_id: str) -> None:
        if node_id in self._dependencies:
            return
        self._dependencies[node_id] = {}
        self._dependents[node_id] = {}

    def add_edge(self, from_id: str, to_id: str) -> None:
        """Record that ``from_id`` depends on ``to_id``."""

        self.add_node(from_id)
        self.add_node(to_id)
        self._dependencies[from_id][to_id] = None
        self._dependents[to_id][from_id] = None

    def remove_edge(self, from_id: str, to_id: str) -> None:
        self._dependencies.get(from_id, {}).pop(to_id, None)
        self._dependents.get(to_id, {}).pop(from_id, None)

    def remove_node(self, node_id: str) -> None:
        if node_id not in self._dependencies:
            return
        for dependency_id in self._dependencies.pop(node_id):
            self._dependents.get(dependency_id, {}).pop(node_id, None)
        for dependent_id in self._dependents.pop(node_id):
            self._dependencies.get(dependent_id, {}).pop(node_id, None)

    def nodes(self) -> list[str]:
        return list(self._dependencies)

    def dependencies(self, node_id: str) -> list[str]:
        return list(self._dependencies.get(node_id, ()))

    def dependents(self, node_id: str) -> list[str]:
        return list(self._dependents.get(node_id, ()))

    def all_dependencies(self, node_id: str) -> list[str]:
        """Transitive prerequisites of ``node_id`` in discovery order."""

        return self._reachable(node_id, self._dependencies)

    def all_dependents(self, node_id: str) -> list[str]:
        return self._reachable(node_id, self._dependents)

    def roots(self) -> list[str]:
        """Nodes without prerequisites."""

        return [node for node, dependencies in self._dependencies.items() if not dependencies]

    def leaves(self) -> list[str]:
        """Nodes nothing depends on."""

        return [node for node, dependents in self._dependents.items() if not dependents]

    def __len__(self) -> int:
        return len(self._dependencies)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._dependencies

    def topological_sort(self) -> list[str]:
        """Kahn's algorithm; prerequisites come before the tasks needing them.

        When the graph has cycles the returned order is partial: nodes on or
        behind a cycle are missing and ``detect_cycles`` explains why.
        """

        in_degree = {node: len(dependencies) for node, dependencies in self._dependencies.items()}
        ready = deque(node for node, degree in in_degree.items() if degree == 0)
        order: list[str] = []
        while ready:
            node = ready.popleft()
            order.append(node)
            for dependent_id in self._dependents[node]:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    ready.append(dependent_id)
        return order

    def detect_cycles(self) -> list[list[str]]:
        """Depth-first search over prerequisites with an explicit stack.

        Reaching a node still on the current path reports the path slice from
        that node to the current one. The closing node is not repeated and a
        self-dependency is reported as a single-node cycle.
        """

        visited: set[str] = set()
        cycles: list[list[str]] = []
        for start in self._dependencies:
            if start in visited:
                continue
            visited.add(start)
            path = [start]
            on_path = {start: 0}
            stack = [iter(self._dependencies[start])]
            while stack:
                next_id = next(stack[-1], None)
                if next_id is None:
                    stack.pop()
                    on_path.pop(path.pop())
                    continue
                if next_id in on_path:
                    cycles.append(path[on_path[next_id] :])
                    continue
                if next_id in visited:
                    continue
                visited.add(next_id)
                on_path[next_id] = len(path)
                path.append(next_id)
                stack.append(iter(self._dependencies[next_id]))
        return cycles

    def has_cycles(self) -> bool:
        return len(self.topological_sort()) < len(self._dependencies)

    def critical_path(self) -> list[str]:
        """Longest prerequisite chain, ordered from first to last task."""

        order = self.topological_sort()
        distance = dict.fromkeys(order, 0)
        paths = {node: [node] for node in order}
        for node in order:
            for dependent_id in self._dependents[node]:
                candidate = distance[node] + 1
                if candidate > distance.get(dependent_id, 0):
                    distance[dependent_id] = candidate
                    paths[dependent_id] = [*paths[node], dependent_id]

        longest: list[str] = []
        for path in paths.values():
            if len(path) > len(longest):
                longest = path
        return longest

    def parallel_levels(self) -> list[list[str]]:
        """Group nodes into waves whose prerequisites are all in earlier waves.

        Stops at the first pass that places nothing; the remainder is blocked
        by a cycle and left unplaced.
        """

        processed: set[str] = set()
        remaining = list(self._dependencies)
        levels: list[list[str]] = []
        while remaining:
            level = [
                node
                for node in remaining
                if all(dependency_id in processed for dependency_id in self._dependencies[node])
            ]
            if not level:
                break
            levels.append(level)
            processed.update(level)
            remaining = [node for node in remaining if node not in processed]
        return levels

    @staticmethod
    def _reachable(node_id: str, adjacency: dict[str, dict[str, None]]) -> list[str]:
        seen: dict[str, None] = {}
        stack = list(reversed(list(adjacency.get(node_id, ()))))
        while stack:
            current = stack.pop()
            if current in seen or current == node_id:
                continue
            seen[current] = None
            stack.extend(reversed(list(adjacency.get(current, ()))))
        return list(seen)
