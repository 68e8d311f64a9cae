import pytest

from drift_controller.config.models import EnvironmentConfig
from drift_controller.orchestrator.dependency_graph import DependencyGraph
from drift_controller.utils.errors import DependencyError


def env(name, *depends_on):
    return EnvironmentConfig(name=name, region="us-east-1", depends_on=list(depends_on))


def test_topological_order_puts_prerequisites_first():
    graph = DependencyGraph.from_environments([env("prod", "preprod"), env("preprod", "dev"), env("dev")])

    assert graph.topological_sort() == ["dev", "preprod", "prod"]
    assert graph.get_waves() == [["dev"], ["preprod"], ["prod"]]


def test_independent_environments_share_a_wave():
    graph = DependencyGraph.from_environments([
        env("qa", "dev"),
        env("dev"),
        env("sandbox"),
        env("preprod", "dev"),
    ])

    assert graph.get_waves() == [["dev", "sandbox"], ["preprod", "qa"]]


def test_circular_dependency_is_rejected():
    graph = DependencyGraph.from_environments([env("a", "c"), env("b", "a"), env("c", "b")])

    cycle = graph.detect_circular_dependencies()
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    with pytest.raises(DependencyError):
        graph.topological_sort()


def test_missing_dependency_is_rejected():
    graph = DependencyGraph.from_environments([env("preprod", "dev")])

    with pytest.raises(DependencyError, match="does not exist"):
        graph.validate()


def test_restricting_drops_edges_to_excluded_environments():
    graph = DependencyGraph.from_environments(
        [env("dev"), env("preprod", "dev"), env("prod", "preprod")],
        restrict_to={"dev", "preprod"},
    )

    assert set(graph.nodes) == {"dev", "preprod"}
    assert graph.topological_sort() == ["dev", "preprod"]
