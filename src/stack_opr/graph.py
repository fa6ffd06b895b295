"""Graph module for stack deployment.

Builds a dependency graph from the output references in resource
properties and computes traversal orderings for create (dependencies
first) and delete (dependents first).
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from config import ConfigError
from stack import Resource, Stack

logger = logging.getLogger(__name__)


class DependencyCycleError(ConfigError):
    """The reference graph contains a cycle."""

    def __init__(self, members: list[str]):
        self.members = members
        super().__init__(f"Dependency cycle detected: {' -> '.join(members)}")


@dataclass(eq=False)
class GraphNode:
    """A resource in the dependency graph.

    Attributes:
        resource: The underlying Resource declaration
        dependencies: Nodes this resource references (deduplicated)
        dependents: Nodes that reference this resource
        depth: Length of the longest dependency chain below this node
    """
    resource: Resource
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)
    depth: int = 0

    @property
    def name(self) -> str:
        return self.resource.name

    @property
    def type(self) -> str:
        return self.resource.type

    @property
    def is_root(self) -> bool:
        return not self.dependencies

    @property
    def is_leaf(self) -> bool:
        return not self.dependents

    def __repr__(self) -> str:
        return f"GraphNode({self.name}, type={self.type}, depth={self.depth})"


class StackGraph:
    """Dependency graph built from a Stack's resources.

    Edges point from a resource to every resource it references. Provides
    ordered traversal for lifecycle operations:
    - create_order(): dependencies before dependents (Kahn)
    - destroy_order(): dependents before dependencies
    """

    def __init__(self, stack: Stack):
        """Build the dependency graph.

        Args:
            stack: Stack with at least one resource

        Raises:
            ValueError: If the stack has no resources
            ConfigError: If a reference names an undeclared resource
            DependencyCycleError: If the references form a cycle
        """
        if not stack.resources:
            raise ValueError("StackGraph requires a stack with resources")

        self.stack = stack
        self._nodes: dict[str, GraphNode] = {}
        self._build_graph(stack.resources)
        self._order = self._topological_order()
        for node in self._order:
            if node.dependencies:
                node.depth = 1 + max(dep.depth for dep in node.dependencies)

    def _build_graph(self, resources: list[Resource]) -> None:
        for resource in resources:
            self._nodes[resource.name] = GraphNode(resource=resource)

        for resource in resources:
            node = self._nodes[resource.name]
            for dep_name in resource.dependency_names():
                if dep_name not in self._nodes:
                    raise ConfigError(
                        f"Resource '{resource.name}' ({resource.type}) references "
                        f"undeclared resource '{dep_name}'"
                    )
                dep = self._nodes[dep_name]
                if dep not in node.dependencies:
                    node.dependencies.append(dep)
                    dep.dependents.append(node)

    def _topological_order(self) -> list[GraphNode]:
        """Kahn's algorithm with declaration order as the tie-break."""
        in_degree = {name: len(node.dependencies) for name, node in self._nodes.items()}
        queue: deque[GraphNode] = deque(n for n in self._nodes.values() if not n.dependencies)
        ordered: list[GraphNode] = []

        while queue:
            node = queue.popleft()
            ordered.append(node)
            for dependent in node.dependents:
                in_degree[dependent.name] -= 1
                if in_degree[dependent.name] == 0:
                    queue.append(dependent)

        if len(ordered) < len(self._nodes):
            remaining = [n for n in self._nodes if in_degree[n] > 0]
            raise DependencyCycleError(self._find_cycle(remaining))
        return ordered

    def _find_cycle(self, remaining: list[str]) -> list[str]:
        """Return one cycle among the unordered nodes as [a, b, ..., a]."""
        candidates = set(remaining)
        for start in remaining:
            path: list[str] = []
            on_path: dict[str, int] = {}
            name: Optional[str] = start
            while name is not None and name not in on_path:
                on_path[name] = len(path)
                path.append(name)
                name = next((d.name for d in self._nodes[name].dependencies
                             if d.name in candidates), None)
            if name is not None:
                return path[on_path[name]:] + [name]
        return sorted(remaining)

    @property
    def roots(self) -> list[GraphNode]:
        """Resources with no dependencies."""
        return [n for n in self._order if n.is_root]

    @property
    def max_depth(self) -> int:
        return max(n.depth for n in self._nodes.values())

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, name: str) -> GraphNode:
        """Get a GraphNode by name.

        Raises:
            KeyError: If node name not found
        """
        return self._nodes[name]

    def dependencies(self, name: str) -> list[str]:
        return [d.name for d in self._nodes[name].dependencies]

    def dependents(self, name: str) -> list[str]:
        return [d.name for d in self._nodes[name].dependents]

    def transitive_dependents(self, name: str) -> set[str]:
        """Every resource that depends on name directly or indirectly."""
        found: set[str] = set()
        queue: deque[GraphNode] = deque(self._nodes[name].dependents)
        while queue:
            node = queue.popleft()
            if node.name in found:
                continue
            found.add(node.name)
            queue.extend(node.dependents)
        return found

    def create_order(self) -> list[GraphNode]:
        """Return nodes in creation order (dependencies before dependents)."""
        return list(self._order)

    def destroy_order(self) -> list[GraphNode]:
        """Return nodes in destruction order (dependents before dependencies)."""
        return list(reversed(self._order))

    def levels(self) -> list[list[GraphNode]]:
        """Group nodes by depth; nodes in one level are mutually independent."""
        grouped: list[list[GraphNode]] = [[] for _ in range(self.max_depth + 1)]
        for node in self._order:
            grouped[node.depth].append(node)
        return grouped

    def validate_types(self, provider) -> None:
        """Check every resource type is supported and has its required inputs.

        Raises:
            ConfigError: Listing every unsupported type or missing input
        """
        errors: list[str] = []
        for node in self._order:
            resource = node.resource
            if not provider.supports(resource.type):
                errors.append(f"Resource '{resource.name}' has unsupported type '{resource.type}'")
                continue
            missing = sorted(set(provider.required_inputs(resource.type)) - set(resource.properties))
            if missing:
                errors.append(
                    f"Resource '{resource.name}' ({resource.type}) missing required "
                    f"input(s): {', '.join(missing)}"
                )
        if errors:
            raise ConfigError('\n'.join(errors))


def deletion_blockers(records: dict[str, list[str]]) -> dict[str, list[str]]:
    """Map each record to the records that must be deleted before it.

    Args:
        records: name -> names it depends on (as recorded in state)

    Returns:
        name -> dependents within records (dependencies outside are ignored)
    """
    blockers: dict[str, list[str]] = {name: [] for name in records}
    for name, deps in records.items():
        for dep in deps:
            if dep in blockers and name not in blockers[dep]:
                blockers[dep].append(name)
    return blockers


def reverse_order(records: dict[str, list[str]]) -> list[str]:
    """Deletion order for state records: dependents before dependencies.

    Raises:
        DependencyCycleError: If the recorded dependencies form a cycle
    """
    blockers = deletion_blockers(records)
    remaining = {name: len(b) for name, b in blockers.items()}
    queue: deque[str] = deque(name for name, count in remaining.items() if count == 0)
    ordered: list[str] = []
    while queue:
        name = queue.popleft()
        ordered.append(name)
        for dep in dict.fromkeys(records[name]):
            if dep in remaining and dep != name:
                remaining[dep] -= 1
                if remaining[dep] == 0:
                    queue.append(dep)
    if len(ordered) < len(records):
        raise DependencyCycleError(sorted(n for n, c in remaining.items() if c > 0))
    return ordered
