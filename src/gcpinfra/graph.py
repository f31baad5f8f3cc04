"""Dependency graph over resource keys.

The graph is an arena: every node is addressed by its resource key and edges
are stored as key lists, never as object references. This keeps traversal
deterministic and lets the same validation run on a freshly declared flow and
on a FlowState document decoded from the cluster status.

ORDERING:
- Dependencies always come before their dependents
- Among nodes that become eligible at the same time, declaration order wins,
  so two runs over the same graph visit nodes in the same sequence
- Teardown walks the same graph in reverse (dependents first)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when a dependency graph is malformed."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


class UnknownDependencyError(DependencyError):
    """Raised when a node depends on a key that is not part of the graph."""

    pass


class DependencyBlocked(Exception):
    """A step is not eligible yet because a prerequisite is incomplete.

    This is a scheduling signal, not a failure: the step is simply skipped
    for this pass and picked up again once its prerequisites complete.
    """

    def __init__(self, key: str, waiting_on: Sequence[str]) -> None:
        self.key = key
        self.waiting_on = tuple(waiting_on)
        super().__init__(f"'{key}' is waiting on {list(self.waiting_on)}")


def validate_edges(edges: Mapping[str, Iterable[str]]) -> None:
    """Check that every dependency exists and that the relation is acyclic.

    Args:
        edges: Mapping of key to the keys it depends on.

    Raises:
        UnknownDependencyError: If a dependency is not a key of the mapping.
        CyclicDependencyError: If a cycle is detected.
    """
    for key, deps in edges.items():
        for dep in deps:
            if dep == key:
                raise CyclicDependencyError(f"'{key}' cannot depend on itself")
            if dep not in edges:
                raise UnknownDependencyError(f"'{key}' depends on unknown key '{dep}'")

    # Kahn's algorithm: count how many nodes each key is still waiting on
    remaining: dict[str, int] = {key: len(set(deps)) for key, deps in edges.items()}
    dependents: dict[str, list[str]] = {key: [] for key in edges}
    for key, deps in edges.items():
        for dep in set(deps):
            dependents[dep].append(key)

    queue = [key for key, count in remaining.items() if count == 0]
    processed = 0
    while queue:
        current = queue.pop()
        processed += 1
        for dependent in dependents[current]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                queue.append(dependent)

    if processed != len(edges):
        cycle_nodes = sorted(key for key, count in remaining.items() if count > 0)
        raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")


@dataclass(frozen=True)
class GraphNode:
    """A node in the task graph."""

    key: str
    depends_on: tuple[str, ...] = ()
    order: int = 0


@dataclass
class TaskGraph:
    """Directed acyclic graph of resource keys, validated on construction."""

    nodes: dict[str, GraphNode] = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_edges({key: node.depends_on for key, node in self.nodes.items()})
        self._dependents: dict[str, list[str]] = {key: [] for key in self.nodes}
        for node in self._in_order():
            for dep in dict.fromkeys(node.depends_on):
                self._dependents[dep].append(node.key)

    @classmethod
    def from_declarations(cls, declarations: Iterable[tuple[str, Sequence[str]]]) -> TaskGraph:
        """Build a graph from (key, depends_on) pairs in declaration order.

        Raises:
            DependencyError: On duplicate keys, unknown dependencies or cycles.
        """
        nodes: dict[str, GraphNode] = {}
        for order, (key, depends_on) in enumerate(declarations):
            if key in nodes:
                raise DependencyError(f"Duplicate resource key '{key}'")
            nodes[key] = GraphNode(key=key, depends_on=tuple(depends_on), order=order)
        return cls(nodes=nodes)

    def __contains__(self, key: object) -> bool:
        return key in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def _in_order(self) -> list[GraphNode]:
        return sorted(self.nodes.values(), key=lambda n: n.order)

    def keys(self) -> list[str]:
        """All keys in declaration order."""
        return [node.key for node in self._in_order()]

    def dependencies(self, key: str) -> tuple[str, ...]:
        return self.nodes[key].depends_on

    def dependents(self, key: str) -> tuple[str, ...]:
        return tuple(self._dependents[key])

    def topological_order(self) -> list[str]:
        """Return keys in dependency order (dependencies first).

        Ties among simultaneously eligible keys are broken by declaration order.
        """
        in_degree = {key: len(set(node.depends_on)) for key, node in self.nodes.items()}
        result: list[str] = []
        queue = [node for node in self._in_order() if in_degree[node.key] == 0]

        while queue:
            queue.sort(key=lambda n: n.order)
            current = queue.pop(0)
            result.append(current.key)
            for dependent in self._dependents[current.key]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(self.nodes[dependent])

        return result

    def reverse_topological_order(self) -> list[str]:
        """Return keys dependents-first, for teardown."""
        in_degree = {key: len(deps) for key, deps in self._dependents.items()}
        result: list[str] = []
        # Reverse declaration order among peers so teardown mirrors apply
        queue = [node for node in self._in_order() if in_degree[node.key] == 0]

        while queue:
            queue.sort(key=lambda n: -n.order)
            current = queue.pop(0)
            result.append(current.key)
            for dep in set(current.depends_on):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(self.nodes[dep])

        return result

    def blocked_by(self, key: str, complete: set[str]) -> list[str]:
        """Return the prerequisites of a key that are not complete yet."""
        return [dep for dep in self.nodes[key].depends_on if dep not in complete]

    def check_ready(self, key: str, complete: set[str]) -> None:
        """Raise DependencyBlocked unless every prerequisite of key is complete."""
        waiting_on = self.blocked_by(key, complete)
        if waiting_on:
            raise DependencyBlocked(key, waiting_on)

    def check_removable(self, key: str, removed: set[str]) -> None:
        """Raise DependencyBlocked unless every dependent of key is removed."""
        waiting_on = [dep for dep in self._dependents[key] if dep not in removed]
        if waiting_on:
            raise DependencyBlocked(key, waiting_on)

    def ready(self, complete: set[str], exclude: set[str] | None = None) -> list[str]:
        """Keys whose prerequisites are all complete, in declaration order.

        Args:
            complete: Keys already done.
            exclude: Keys that must not be offered (running, failed, ...).
        """
        skip = complete | (exclude or set())
        return [
            node.key
            for node in self._in_order()
            if node.key not in skip and all(dep in complete for dep in node.depends_on)
        ]

    def reverse_ready(self, removed: set[str], exclude: set[str] | None = None) -> list[str]:
        """Keys whose dependents are all removed, in reverse declaration order."""
        skip = removed | (exclude or set())
        return [
            node.key
            for node in reversed(self._in_order())
            if node.key not in skip and all(d in removed for d in self._dependents[node.key])
        ]
