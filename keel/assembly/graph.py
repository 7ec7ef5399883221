"""
Dependency graph builder.

Scans declared resources for references to other resources' outputs (plus
explicit depends_on) and builds a directed acyclic graph. Edges point from a
consumer to the producers it depends on.
"""

import logging
from collections.abc import Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

import networkx as nx

from ..errors import ConfigurationError, CyclicDependencyError, UnknownReferenceError
from ..resources.base import Reference, Resource

logger = logging.getLogger(__name__)

N = TypeVar("N", bound=Hashable)


def _to_digraph(edges: Mapping[N, Sequence[N]]) -> nx.DiGraph:
    graph = nx.DiGraph()
    graph.add_nodes_from(edges)
    for node, preds in edges.items():
        for pred in preds:
            graph.add_edge(node, pred)
    return graph


def find_cycle(edges: Mapping[N, Sequence[N]]) -> list[N] | None:
    """Find one cycle in a graph given as node -> predecessors.

    Returns:
        The cycle as a path whose first and last elements are equal, or None
    """
    try:
        cycle_edges = nx.find_cycle(_to_digraph(edges))
    except nx.NetworkXNoCycle:
        return None
    return [u for u, _ in cycle_edges] + [cycle_edges[0][0]]


def compute_depths(edges: Mapping[N, Sequence[N]]) -> dict[N, int]:
    """Longest-path depth of every node (roots are 0).

    Every edge strictly increases depth, so sorting by depth is a valid
    topological order and nodes of equal depth are independent.

    Args:
        edges: node -> predecessors (every predecessor must be a key)

    Raises:
        CyclicDependencyError: If the graph has a cycle
    """
    graph = _to_digraph(edges).reverse(copy=False)
    try:
        generations = list(nx.topological_generations(graph))
    except nx.NetworkXUnfeasible:
        raise CyclicDependencyError([str(node) for node in find_cycle(edges) or []]) from None
    return {node: depth for depth, nodes in enumerate(generations) for node in nodes}


@dataclass
class GraphNode:
    """A resource in the dependency graph.

    Attributes:
        resource: The declared resource
        dependencies: Names of resources this one depends on
        dependents: Names of resources that depend on this one
        depth: Longest distance from a root (0 for resources without dependencies)
    """
    resource: Resource
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    depth: int = 0

    @property
    def name(self) -> str:
        return self.resource.name

    @property
    def kind(self) -> str:
        return self.resource.kind

    def __repr__(self) -> str:
        return f"GraphNode({self.name}, kind={self.kind}, depth={self.depth})"


class DependencyGraph:
    """Directed acyclic graph of declared resources.

    Provides ordered traversal for lifecycle operations:
    - create_order(): producers before consumers
    - destroy_order(): consumers before producers
    """

    def __init__(
        self,
        resources: Iterable[Resource],
        exports: Iterable[tuple[str, Reference]] = (),
    ):
        """Build and validate the graph.

        Args:
            resources: Declared resources
            exports: (export name, reference) pairs to validate as well

        Raises:
            ConfigurationError: If two resources share a name
            UnknownReferenceError: If a reference targets an undeclared
                resource or an output its kind does not publish
            CyclicDependencyError: If references form a cycle
        """
        self._nodes: dict[str, GraphNode] = {}
        for resource in resources:
            if resource.name in self._nodes:
                raise ConfigurationError(f"Duplicate resource name '{resource.name}'")
            self._nodes[resource.name] = GraphNode(resource=resource)

        self._wire_edges()
        for export_name, ref in exports:
            self._check_reference(f"export:{export_name}", ref)

        cycle = find_cycle({name: node.dependencies for name, node in self._nodes.items()})
        if cycle is not None:
            raise CyclicDependencyError(cycle)

        depths = compute_depths({name: node.dependencies for name, node in self._nodes.items()})
        for name, depth in depths.items():
            self._nodes[name].depth = depth

        logger.debug(
            f"Built dependency graph: {len(self._nodes)} resources, "
            f"max depth {self.max_depth}"
        )

    @classmethod
    def from_stack(cls, stack) -> "DependencyGraph":
        return cls(stack.resources, stack.export_references())

    def _check_reference(self, owner: str, ref: Reference) -> None:
        target = self._nodes.get(ref.node)
        if target is None:
            raise UnknownReferenceError(owner, ref.node)
        if not target.resource.publishes(ref.output):
            raise UnknownReferenceError(owner, ref.node, ref.output)

    def _wire_edges(self) -> None:
        for node in self._nodes.values():
            resource = node.resource
            for ref in resource.references():
                self._check_reference(resource.name, ref)
            for dep in resource.depends_on:
                if dep not in self._nodes:
                    raise UnknownReferenceError(resource.name, dep)

            node.dependencies = resource.dependency_names()
            for dep in node.dependencies:
                self._nodes[dep].dependents.append(resource.name)

    @property
    def max_depth(self) -> int:
        if not self._nodes:
            return 0
        return max(n.depth for n in self._nodes.values())

    @property
    def names(self) -> list[str]:
        return list(self._nodes)

    def get_node(self, name: str) -> GraphNode:
        """Get a GraphNode by name.

        Raises:
            KeyError: If node name not found
        """
        return self._nodes[name]

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def create_order(self) -> list[GraphNode]:
        """Return nodes in creation order (dependencies first).

        Ordered by depth, then by name, so the order is stable across runs
        regardless of declaration order.
        """
        return sorted(self._nodes.values(), key=lambda n: (n.depth, n.name))

    def destroy_order(self) -> list[GraphNode]:
        """Return nodes in destruction order (dependents first)."""
        return list(reversed(self.create_order()))

    def transitive_dependencies(self, name: str) -> set[str]:
        """All resources name depends on, directly or indirectly."""
        graph = _to_digraph({n: node.dependencies for n, node in self._nodes.items()})
        return set(nx.descendants(graph, name))
