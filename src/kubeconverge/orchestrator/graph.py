"""Resource graph built from declared resources."""

import heapq
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

from kubeconverge.config.models import ResourceSpec
from kubeconverge.utils.errors import ConfigurationError, CycleError, DependencyError, ErrorContext

N = TypeVar("N", bound=Hashable)


class Direction(str, Enum):
    """Traversal direction for ordering."""
    CREATE = "create"    # dependencies before dependents
    DESTROY = "destroy"  # dependents before dependencies


def _find_cycle(nodes: Iterable[N], successors: Dict[N, Set[N]]) -> List[N]:
    """Return one cycle (first node repeated at the end) among ``nodes``.

    Uses DFS with white/gray/black colouring and walks the parent chain back
    from the first back edge found.
    """
    color: Dict[N, int] = {node: 0 for node in nodes}
    parent: Dict[N, N] = {}

    for start in sorted(color):
        if color[start] != 0:
            continue
        stack = [(start, iter(sorted(n for n in successors.get(start, ()) if n in color)))]
        color[start] = 1
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[node] = 2
                stack.pop()
                continue
            if color[child] == 1:
                cycle = [node]
                current = node
                while current != child:
                    current = parent[current]
                    cycle.append(current)
                cycle.reverse()
                cycle.append(child)
                return cycle
            if color[child] == 0:
                parent[child] = node
                color[child] = 1
                stack.append((child, iter(sorted(n for n in successors.get(child, ()) if n in color))))
    return []


def order_nodes(nodes: Iterable[N], edges: Iterable[Tuple[N, N]]) -> List[N]:
    """Topologically sort ``nodes`` given ``(before, after)`` edges.

    Ties among ready nodes are broken by the nodes' natural ordering, so the
    result is identical across runs for identical input.

    Raises:
        CycleError: If the edges contain a cycle
    """
    nodes = list(nodes)
    successors: Dict[N, Set[N]] = defaultdict(set)
    in_degree: Dict[N, int] = {node: 0 for node in nodes}

    for before, after in edges:
        if after in successors[before]:
            continue
        successors[before].add(after)
        in_degree[after] += 1

    ready = [node for node, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    result: List[N] = []

    while ready:
        node = heapq.heappop(ready)
        result.append(node)
        for successor in successors[node]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(ready, successor)

    if len(result) != len(in_degree):
        remaining = [node for node in in_degree if in_degree[node] > 0]
        cycle = _find_cycle(remaining, successors)
        raise CycleError(
            [str(node) for node in cycle],
            edges=[(str(a), str(b)) for a, b in zip(cycle, cycle[1:])],
        )

    return result


@dataclass
class GraphNode:
    """Node in the resource graph."""

    address: str
    spec: ResourceSpec
    dependencies: Set[str]  # addresses this node depends on
    dependents: Set[str]  # addresses that depend on this node


class ResourceGraph:
    """Directed acyclic graph of declared resources.

    An edge ``A -> B`` means A is created before B and destroyed after it.
    Edges come from ``${kind.name.output}`` references in attributes plus
    explicit ``depends_on`` entries.
    """

    def __init__(self):
        self.nodes: Dict[str, GraphNode] = {}

    @classmethod
    def build(cls, specs: Sequence[ResourceSpec]) -> "ResourceGraph":
        """Build and validate a graph.

        Raises:
            ConfigurationError: If two specs share an address
            DependencyError: If a spec depends on an undeclared address
            CycleError: If the dependencies contain a cycle
        """
        graph = cls()

        for spec in specs:
            if spec.address in graph.nodes:
                raise ConfigurationError(
                    f"Resource '{spec.address}' is declared more than once",
                    context=ErrorContext(resource_id=spec.address, resource_type=spec.kind)
                )
            graph.nodes[spec.address] = GraphNode(
                address=spec.address, spec=spec, dependencies=set(), dependents=set()
            )

        for address, node in graph.nodes.items():
            for dep in sorted(node.spec.dependency_addresses()):
                if dep == address:
                    raise CycleError([address, address])
                if dep not in graph.nodes:
                    raise DependencyError(
                        f"Resource '{address}' depends on '{dep}' which is not declared",
                        context=ErrorContext(resource_id=address, resource_type=node.spec.kind),
                        suggestions=[f"Declare '{dep}' or remove the reference to it"]
                    )
                node.dependencies.add(dep)
                graph.nodes[dep].dependents.add(address)

        # Fail fast on cycles
        graph.topological_order()
        return graph

    def edges(self) -> List[Tuple[str, str]]:
        """All ``(producer, consumer)`` edges, sorted."""
        return sorted(
            (dep, address) for address, node in self.nodes.items() for dep in node.dependencies
        )

    def topological_order(self, direction: Direction = Direction.CREATE) -> List[str]:
        """Every address exactly once, consistent with the edges.

        Ties among independent resources are broken lexicographically.
        """
        edges = self.edges()
        if direction == Direction.DESTROY:
            edges = [(after, before) for before, after in edges]
        return order_nodes(self.nodes, edges)

    def waves(self) -> List[List[str]]:
        """Group addresses into levels that could be created in parallel."""
        in_degree = {address: len(node.dependencies) for address, node in self.nodes.items()}
        current = sorted(address for address, degree in in_degree.items() if degree == 0)
        waves = []

        while current:
            waves.append(current)
            following = []
            for address in current:
                for dependent in self.nodes[address].dependents:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        following.append(dependent)
            current = sorted(following)

        return waves

    def get(self, address: str) -> Optional[ResourceSpec]:
        node = self.nodes.get(address)
        return node.spec if node else None

    def dependencies(self, address: str) -> Set[str]:
        if address not in self.nodes:
            return set()
        return set(self.nodes[address].dependencies)

    def dependents(self, address: str) -> Set[str]:
        if address not in self.nodes:
            return set()
        return set(self.nodes[address].dependents)

    def all_dependents(self, address: str) -> Set[str]:
        """Transitive dependents of ``address``."""
        visited = set()
        queue = deque([address])

        while queue:
            current = queue.popleft()
            for dependent in self.dependents(current):
                if dependent not in visited:
                    visited.add(dependent)
                    queue.append(dependent)

        return visited

    def specs(self) -> List[ResourceSpec]:
        return [self.nodes[address].spec for address in sorted(self.nodes)]

    def __contains__(self, address: str) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)
