"""Dependency graph of environments for reconciliation ordering."""

from typing import Dict, Iterable, List, Set, Optional
from dataclasses import dataclass, field
from collections import defaultdict, deque

from drift_controller.config.models import EnvironmentConfig
from drift_controller.utils.errors import DependencyError, ErrorContext


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    name: str
    environment: EnvironmentConfig
    dependencies: Set[str] = field(default_factory=set)  # Environments this one runs after


class DependencyGraph:
    """Directed acyclic graph (DAG) of "runs after" edges between environments."""

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, DependencyNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def from_environments(
        cls,
        environments: Iterable[EnvironmentConfig],
        restrict_to: Optional[Set[str]] = None
    ) -> "DependencyGraph":
        """Build a graph, optionally keeping only edges among a subset.

        Args:
            environments: Every configured environment
            restrict_to: Names to include; edges to excluded environments are dropped

        Returns:
            DependencyGraph
        """
        graph = cls()
        for env in environments:
            if restrict_to is not None and env.name not in restrict_to:
                continue
            dependencies = set(env.depends_on)
            if restrict_to is not None:
                dependencies &= restrict_to
            graph.add_environment(env, dependencies)
        return graph

    def add_environment(self, env: EnvironmentConfig, dependencies: Optional[Set[str]] = None) -> None:
        """Add an environment to the graph.

        Args:
            env: Environment to add
            dependencies: Prerequisites; defaults to ``env.depends_on``
        """
        dependencies = set(env.depends_on if dependencies is None else dependencies)
        self.nodes[env.name] = DependencyNode(name=env.name, environment=env, dependencies=dependencies)
        for dep in dependencies:
            self._adjacency_list[dep].add(env.name)

    def get_dependencies(self, name: str) -> Set[str]:
        """Get direct prerequisites of an environment."""
        if name not in self.nodes:
            return set()
        return self.nodes[name].dependencies.copy()

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            List of environment names forming a cycle, or None if no cycle exists
        """
        # White (0): unvisited, Gray (1): visiting, Black (2): visited
        color = {name: 0 for name in self.nodes}
        parent = {}

        def dfs(name: str) -> Optional[List[str]]:
            color[name] = 1

            for dependent in self._adjacency_list[name]:
                if dependent not in color:
                    continue
                if color[dependent] == 1:
                    cycle = [dependent]
                    current = name
                    while current != dependent:
                        cycle.append(current)
                        current = parent.get(current)
                        if current is None:
                            break
                    cycle.append(dependent)
                    return list(reversed(cycle))

                if color[dependent] == 0:
                    parent[dependent] = name
                    cycle = dfs(dependent)
                    if cycle:
                        return cycle

            color[name] = 2
            return None

        for name in self.nodes:
            if color[name] == 0:
                cycle = dfs(name)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            DependencyError: If there are circular or missing dependencies
        """
        cycle = self.detect_circular_dependencies()
        if cycle:
            raise DependencyError(
                f"Circular dependency detected: {' -> '.join(cycle)}",
                context=ErrorContext(environment=cycle[0])
            )

        for name, node in self.nodes.items():
            for dep in node.dependencies:
                if dep not in self.nodes:
                    raise DependencyError(
                        f"Environment '{name}' depends on '{dep}' which does not exist",
                        context=ErrorContext(environment=name)
                    )

    def topological_sort(self) -> List[str]:
        """Order environments so prerequisites come first.

        Ties are broken alphabetically for a deterministic order.

        Raises:
            DependencyError: If graph contains cycles
        """
        self.validate()

        in_degree = {name: len(node.dependencies) for name, node in self.nodes.items()}
        queue = deque(sorted(name for name, degree in in_degree.items() if degree == 0))
        result = []

        while queue:
            name = queue.popleft()
            result.append(name)
            for dependent in sorted(self._adjacency_list[name]):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self.nodes):
            raise DependencyError("Cannot perform topological sort: graph contains cycles")

        return result

    def get_waves(self) -> List[List[str]]:
        """Group environments into waves that may run in parallel.

        Raises:
            DependencyError: If graph contains cycles
        """
        self.validate()

        in_degree = {name: len(node.dependencies) for name, node in self.nodes.items()}
        current_wave = sorted(name for name, degree in in_degree.items() if degree == 0)
        waves = []

        while current_wave:
            waves.append(current_wave)
            next_wave = []
            for name in current_wave:
                for dependent in self._adjacency_list[name]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_wave.append(dependent)
            current_wave = sorted(next_wave)

        if sum(len(wave) for wave in waves) != len(self.nodes):
            raise DependencyError("Cannot create waves: graph contains cycles")

        return waves

