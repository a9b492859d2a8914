"""Dependency graph builder for resource ordering."""

import heapq
from typing import Dict, Iterable, List, Set, Optional
from dataclasses import dataclass, field
from collections import defaultdict, deque

from converge.config.models import ResourceSpec
from converge.orchestrator.references import collect_references, parse_value
from converge.utils.errors import ConfigurationError, CycleError, UnresolvedReferenceError
from converge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    node_id: str
    order: int  # Declaration position, used to break ordering ties
    dependencies: Set[str] = field(default_factory=set)  # IDs this node depends on


class DependencyGraph:
    """Directed graph of "depends on" edges between IDs."""

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, DependencyNode] = {}
        self._dependents: Dict[str, Set[str]] = defaultdict(set)

    def add_node(self, node_id: str, dependencies: Iterable[str] = (), order: Optional[int] = None) -> None:
        """Add a node, or replace the dependencies of an existing one.

        Args:
            node_id: ID of the node
            dependencies: IDs the node depends on
            order: Declaration position (defaults to insertion order)
        """
        new_deps = set(dependencies)

        if node_id in self.nodes:
            node = self.nodes[node_id]
            for dep_id in node.dependencies - new_deps:
                self._dependents[dep_id].discard(node_id)
            node.dependencies = new_deps
            if order is not None:
                node.order = order
        else:
            self.nodes[node_id] = DependencyNode(
                node_id=node_id,
                order=len(self.nodes) if order is None else order,
                dependencies=new_deps
            )

        for dep_id in new_deps:
            self._dependents[dep_id].add(node_id)

    def get_dependencies(self, node_id: str) -> Set[str]:
        """Get direct dependencies of a node."""
        if node_id not in self.nodes:
            return set()
        return self.nodes[node_id].dependencies.copy()

    def get_dependents(self, node_id: str) -> Set[str]:
        """Get direct dependents of a node."""
        return {d for d in self._dependents.get(node_id, set()) if d in self.nodes}

    def get_all_dependencies(self, node_id: str) -> Set[str]:
        """Get all transitive dependencies of a node."""
        return self._walk(node_id, self.get_dependencies)

    def get_all_dependents(self, node_id: str) -> Set[str]:
        """Get all transitive dependents of a node."""
        return self._walk(node_id, self.get_dependents)

    def _walk(self, start: str, neighbours) -> Set[str]:
        visited = set()
        queue = deque([start])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue
            visited.add(current_id)
            for next_id in neighbours(current_id):
                if next_id not in visited:
                    queue.append(next_id)

        visited.discard(start)
        return visited

    def missing_dependencies(self) -> Dict[str, List[str]]:
        """Get dependencies that name IDs not present in the graph."""
        missing = {}
        for node_id, node in self.nodes.items():
            absent = sorted(dep for dep in node.dependencies if dep not in self.nodes)
            if absent:
                missing[node_id] = absent
        return missing

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            IDs forming a cycle, first ID repeated at the end, or None
        """
        # White (0): unvisited, Gray (1): visiting, Black (2): visited
        color = {node_id: 0 for node_id in self.nodes}
        stack: List[str] = []

        def dfs(node_id: str) -> Optional[List[str]]:
            color[node_id] = 1
            stack.append(node_id)

            for dep_id in sorted(self.nodes[node_id].dependencies, key=self._sort_key):
                if dep_id not in self.nodes:
                    continue
                if color[dep_id] == 1:
                    return stack[stack.index(dep_id):] + [dep_id]
                if color[dep_id] == 0:
                    cycle = dfs(dep_id)
                    if cycle:
                        return cycle

            stack.pop()
            color[node_id] = 2
            return None

        for node_id in self._ordered_ids():
            if color[node_id] == 0:
                cycle = dfs(node_id)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the graph is acyclic.

        Raises:
            CycleError: If the graph contains a cycle
        """
        cycle = self.detect_circular_dependencies()
        if cycle:
            raise CycleError(cycle)

    def topological_sort(self) -> List[str]:
        """Order IDs so every node comes after its dependencies.

        Ties are broken by declaration order, so the result is deterministic.
        Dependencies on IDs outside the graph are ignored.

        Raises:
            CycleError: If the graph contains a cycle
        """
        self.validate()

        in_degree = {
            node_id: sum(1 for dep in node.dependencies if dep in self.nodes)
            for node_id, node in self.nodes.items()
        }
        heap = [self._sort_key(node_id) + (node_id,) for node_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            node_id = heapq.heappop(heap)[-1]
            result.append(node_id)

            for dependent_id in self.get_dependents(node_id):
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    heapq.heappush(heap, self._sort_key(dependent_id) + (dependent_id,))

        return result

    def get_destruction_order(self) -> List[str]:
        """Get destruction order (dependents before dependencies)."""
        return list(reversed(self.topological_sort()))

    def _sort_key(self, node_id: str):
        node = self.nodes.get(node_id)
        return (node.order if node else len(self.nodes),)

    def _ordered_ids(self) -> List[str]:
        return sorted(self.nodes, key=self._sort_key)

    def has_node(self, node_id: str) -> bool:
        """Check if a node exists in the graph."""
        return node_id in self.nodes

    def size(self) -> int:
        """Get the number of nodes in the graph."""
        return len(self.nodes)

    def is_empty(self) -> bool:
        """Check if the graph is empty."""
        return len(self.nodes) == 0


class ResourceGraph:
    """Declared resources with typed references and their dependency edges."""

    def __init__(self, specs: Dict[str, ResourceSpec], graph: DependencyGraph, skipped: List[str]):
        self.specs = specs
        self.graph = graph
        self.skipped = skipped
        self._order: Optional[List[str]] = None

    def __len__(self) -> int:
        return len(self.specs)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self.specs

    def get(self, resource_id: str) -> Optional[ResourceSpec]:
        """Get a spec by identity."""
        return self.specs.get(resource_id)

    def ids(self) -> List[str]:
        """Resource identities in declaration order."""
        return list(self.specs.keys())

    def topological_order(self) -> List[str]:
        """Identities with dependencies first, ties in declaration order."""
        if self._order is None:
            self._order = self.graph.topological_sort()
        return list(self._order)

    def dependencies(self, resource_id: str) -> List[str]:
        """Direct dependencies of a resource, in declaration order."""
        return sorted(self.graph.get_dependencies(resource_id), key=self._position)

    def dependents(self, resource_id: str) -> List[str]:
        """Direct dependents of a resource, in declaration order."""
        return sorted(self.graph.get_dependents(resource_id), key=self._position)

    def all_dependents(self, resource_id: str) -> Set[str]:
        """All transitive dependents of a resource."""
        return self.graph.get_all_dependents(resource_id)

    def destruction_order(self) -> List[str]:
        """Identities with dependents first."""
        return list(reversed(self.topological_order()))

    def _position(self, resource_id: str) -> int:
        return self.graph.nodes[resource_id].order


class GraphBuilder:
    """Builds a ResourceGraph from declared resource specs."""

    def build(self, specs: Iterable[ResourceSpec]) -> ResourceGraph:
        """Build and validate the resource graph.

        Args:
            specs: Declared resources, in declaration order

        Returns:
            ResourceGraph with textual references converted to typed ones

        Raises:
            ConfigurationError: If an identity is declared twice
            UnresolvedReferenceError: If a reference names an undeclared resource
            CycleError: If the dependencies form a cycle
        """
        specs = list(specs)

        seen: Set[str] = set()
        for spec in specs:
            if spec.id in seen:
                raise ConfigurationError(f"Resource '{spec.id}' is declared more than once")
            seen.add(spec.id)

        disabled = {spec.id for spec in specs if not spec.enabled}
        enabled = [spec for spec in specs if spec.enabled]
        enabled_ids = {spec.id for spec in enabled}

        typed_specs: Dict[str, ResourceSpec] = {}
        graph = DependencyGraph()

        for position, spec in enumerate(enabled):
            attributes = parse_value(dict(spec.attributes))

            dependencies: List[str] = []
            for reference in collect_references(attributes):
                self._check_target(spec.id, reference.resource_id, str(reference), enabled_ids, disabled)
                if reference.resource_id not in dependencies:
                    dependencies.append(reference.resource_id)
            for dep_id in spec.depends_on:
                self._check_target(spec.id, dep_id, dep_id, enabled_ids, disabled)
                if dep_id not in dependencies:
                    dependencies.append(dep_id)

            if spec.id in dependencies:
                raise CycleError([spec.id, spec.id])

            typed_specs[spec.id] = spec.model_copy(update={"attributes": attributes})
            graph.add_node(spec.id, dependencies, order=position)

        graph.validate()

        if disabled:
            logger.info(f"Skipping {len(disabled)} resource(s) with count 0: {', '.join(sorted(disabled))}")
        logger.debug(f"Built resource graph with {graph.size()} resources")

        return ResourceGraph(typed_specs, graph, sorted(disabled))

    def _check_target(
        self,
        resource_id: str,
        target_id: str,
        reference: str,
        enabled_ids: Set[str],
        disabled: Set[str]
    ) -> None:
        if target_id in enabled_ids:
            return
        detail = "it has count 0" if target_id in disabled else None
        raise UnresolvedReferenceError(resource_id, reference, detail)
