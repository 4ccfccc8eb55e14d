"""Tests for the resource graph."""

import pytest

from kubeconverge.config.models import ResourceSpec
from kubeconverge.orchestrator.graph import Direction, ResourceGraph, order_nodes
from kubeconverge.utils.errors import ConfigurationError, CycleError, DependencyError


def spec(kind, name, /, depends_on=(), **attributes):
    return ResourceSpec(kind=kind, name=name, attributes=attributes, depends_on=list(depends_on))


@pytest.fixture
def cluster_specs():
    """Network -> cluster -> node group -> ingress, plus an unrelated registry."""
    return [
        spec("helm_release", "ingress", depends_on=["node_group.workers[0]"],
             cluster="${eks_cluster.main.name}"),
        spec("node_group", "workers[0]", cluster="${eks_cluster.main.name}"),
        spec("node_group", "workers[1]", cluster="${eks_cluster.main.name}"),
        spec("eks_cluster", "main", name="demo", subnets=["${subnet.a.id}", "${subnet.b.id}"]),
        spec("subnet", "a", vpc_id="${vpc.main.id}"),
        spec("subnet", "b", vpc_id="${vpc.main.id}"),
        spec("vpc", "main", cidr_block="10.0.0.0/16"),
        spec("ecr_repository", "app", name="app"),
    ]


class TestResourceGraphBuild:
    """Test graph construction and validation."""

    def test_edges_from_references_and_depends_on(self, cluster_specs):
        """Test inferred and explicit dependencies both become edges."""
        graph = ResourceGraph.build(cluster_specs)

        assert graph.dependencies("subnet.a") == {"vpc.main"}
        assert graph.dependencies("eks_cluster.main") == {"subnet.a", "subnet.b"}
        assert graph.dependencies("helm_release.ingress") == {
            "eks_cluster.main", "node_group.workers[0]"
        }
        assert graph.dependents("vpc.main") == {"subnet.a", "subnet.b"}
        assert len(graph) == 8
        assert ("vpc.main", "subnet.a") in graph.edges()

    def test_unknown_dependency(self):
        """Test a reference to an undeclared address is rejected."""
        specs = [spec("subnet", "a", vpc_id="${vpc.missing.id}")]

        with pytest.raises(DependencyError) as exc_info:
            ResourceGraph.build(specs)

        assert not isinstance(exc_info.value, CycleError)
        assert "vpc.missing" in exc_info.value.message
        assert exc_info.value.context.resource_id == "subnet.a"

    def test_duplicate_address(self):
        """Test two specs with the same address are rejected."""
        specs = [spec("vpc", "main"), spec("vpc", "main", cidr_block="10.1.0.0/16")]

        with pytest.raises(ConfigurationError, match="declared more than once"):
            ResourceGraph.build(specs)

    def test_cycle_is_reported_with_path(self):
        """Test a two-node cycle names both nodes."""
        specs = [
            spec("subnet", "a", peer="${subnet.b.id}"),
            spec("subnet", "b", peer="${subnet.a.id}"),
        ]

        with pytest.raises(CycleError) as exc_info:
            ResourceGraph.build(specs)

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"subnet.a", "subnet.b"}
        assert "Circular dependency" in exc_info.value.message

    def test_longer_cycle(self):
        """Test a cycle through three resources."""
        specs = [
            spec("vpc", "main", route="${eks_cluster.main.id}"),
            spec("subnet", "a", vpc_id="${vpc.main.id}"),
            spec("eks_cluster", "main", subnet="${subnet.a.id}"),
            spec("ecr_repository", "app"),
        ]

        with pytest.raises(CycleError) as exc_info:
            ResourceGraph.build(specs)

        assert set(exc_info.value.cycle) == {"vpc.main", "subnet.a", "eks_cluster.main"}
        assert len(exc_info.value.edges) == 3

    def test_self_dependency(self):
        """Test a resource depending on itself is a cycle."""
        specs = [spec("vpc", "main", depends_on=["vpc.main"])]

        with pytest.raises(CycleError) as exc_info:
            ResourceGraph.build(specs)

        assert exc_info.value.cycle == ["vpc.main", "vpc.main"]


class TestResourceGraphOrdering:
    """Test topological ordering."""

    def test_producers_before_consumers(self, cluster_specs):
        """Test every edge is respected by the create order."""
        graph = ResourceGraph.build(cluster_specs)
        order = graph.topological_order()

        assert sorted(order) == sorted(s.address for s in cluster_specs)
        for producer, consumer in graph.edges():
            assert order.index(producer) < order.index(consumer)

    def test_destroy_order_is_reversed(self, cluster_specs):
        """Test dependents come first when destroying."""
        graph = ResourceGraph.build(cluster_specs)
        order = graph.topological_order(Direction.DESTROY)

        for producer, consumer in graph.edges():
            assert order.index(consumer) < order.index(producer)

    def test_ties_break_lexicographically(self):
        """Test independent resources come out in address order."""
        graph = ResourceGraph.build([
            spec("vpc", "b"), spec("ecr_repository", "z"), spec("vpc", "a")
        ])

        assert graph.topological_order() == ["ecr_repository.z", "vpc.a", "vpc.b"]

    def test_order_is_independent_of_declaration_order(self, cluster_specs):
        """Test identical inputs give identical orders."""
        forward = ResourceGraph.build(cluster_specs).topological_order()
        backward = ResourceGraph.build(list(reversed(cluster_specs))).topological_order()

        assert forward == backward

    def test_waves(self, cluster_specs):
        """Test grouping into parallel levels."""
        waves = ResourceGraph.build(cluster_specs).waves()

        assert waves[0] == ["ecr_repository.app", "vpc.main"]
        assert waves[1] == ["subnet.a", "subnet.b"]
        assert waves[2] == ["eks_cluster.main"]
        assert waves[3] == ["node_group.workers[0]", "node_group.workers[1]"]
        assert waves[4] == ["helm_release.ingress"]

    def test_all_dependents(self, cluster_specs):
        """Test transitive dependents."""
        graph = ResourceGraph.build(cluster_specs)

        assert graph.all_dependents("subnet.a") == {
            "eks_cluster.main",
            "node_group.workers[0]",
            "node_group.workers[1]",
            "helm_release.ingress",
        }
        assert graph.all_dependents("ecr_repository.app") == set()

    def test_empty_graph(self):
        """Test an empty graph orders to nothing."""
        graph = ResourceGraph.build([])

        assert graph.topological_order() == []
        assert graph.waves() == []


class TestOrderNodes:
    """Test the generic ordering helper."""

    def test_tuple_nodes(self):
        """Test ordering arbitrary comparable nodes."""
        nodes = [("b", "delete"), ("a", "create"), ("b", "create")]
        edges = [(("b", "delete"), ("b", "create"))]

        assert order_nodes(nodes, edges) == [("a", "create"), ("b", "delete"), ("b", "create")]

    def test_duplicate_edges_are_ignored(self):
        """Test repeated edges do not corrupt in-degrees."""
        assert order_nodes(["x", "y"], [("x", "y"), ("x", "y")]) == ["x", "y"]

    def test_cycle(self):
        """Test a cycle among generic nodes."""
        with pytest.raises(CycleError):
            order_nodes(["x", "y", "z"], [("x", "y"), ("y", "x")])
