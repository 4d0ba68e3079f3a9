"""
Tests for the dependency graph resolver and the resource catalog.
"""

import random

import pytest

from rollout.core.config.loader import ConfigError
from rollout.core.engine.catalog import ResourceNames, build_nodes
from rollout.core.engine.graph import ResourceGraph, validate_nodes
from rollout.core.models.resource import ResourceKind, ResourceNode, Stage, Target


def _node(node_id: str, stage: Stage = Stage.INFRA, depends_on=None) -> ResourceNode:
    return ResourceNode(
        id=node_id,
        stage=stage,
        kind=ResourceKind.NETWORK,
        depends_on=list(depends_on or []),
        resource_name=node_id,
    )


def _random_dag(seed: int, size: int = 30) -> list[ResourceNode]:
    """Random DAG: edges only point to earlier nodes, then shuffled.

    The first half is infra; every app node depends on n0 so the graph
    passes startup validation.
    """
    rng = random.Random(seed)
    nodes = []
    for i in range(size):
        stage = Stage.INFRA if i < size // 2 else Stage.APP
        earlier = [f"n{j}" for j in range(i)]
        if stage == Stage.INFRA:
            earlier = [f"n{j}" for j in range(min(i, size // 2))]
        deps = rng.sample(earlier, k=min(len(earlier), rng.randint(0, 3)))
        if stage == Stage.APP and "n0" not in deps:
            deps.append("n0")
        nodes.append(_node(f"n{i}", stage, deps))
    rng.shuffle(nodes)
    return nodes


def _assert_topological(order: list[ResourceNode]) -> None:
    position = {n.id: i for i, n in enumerate(order)}
    for n in order:
        for dep in n.depends_on:
            if dep in position:
                assert position[dep] < position[n.id], f"{dep} must precede {n.id}"


# ── Validation ──────────────────────────────────────────────────────


class TestValidation:
    def test_valid_graph(self):
        nodes = [_node("a"), _node("b", depends_on=["a"])]
        assert validate_nodes(nodes) == []

    def test_unknown_dependency(self):
        errors = validate_nodes([_node("a", depends_on=["ghost"])])
        assert len(errors) == 1
        assert "ghost" in errors[0]

    def test_duplicate_id(self):
        errors = validate_nodes([_node("a"), _node("a")])
        assert any("Duplicate" in e for e in errors)

    def test_cycle_detected(self):
        nodes = [
            _node("a", depends_on=["c"]),
            _node("b", depends_on=["a"]),
            _node("c", depends_on=["b"]),
        ]
        errors = validate_nodes(nodes)
        assert len(errors) == 1
        assert "cycle" in errors[0]
        assert "a, b, c" in errors[0]

    def test_app_node_without_infra_dependency(self):
        nodes = [_node("net"), _node("orphan", Stage.APP)]
        errors = validate_nodes(nodes)
        assert errors == ["App node 'orphan' does not depend on any infra node"]

    def test_app_node_with_transitive_infra_dependency(self):
        nodes = [
            _node("net"),
            _node("ns", Stage.APP, ["net"]),
            _node("svc", Stage.APP, ["ns"]),
        ]
        assert validate_nodes(nodes) == []

    def test_graph_rejects_invalid_nodes(self):
        with pytest.raises(ConfigError, match="Invalid resource graph"):
            ResourceGraph([_node("a", depends_on=["a"])])


# ── Ordering ────────────────────────────────────────────────────────


class TestApplyOrder:
    @pytest.mark.parametrize("seed", range(25))
    def test_random_dag_is_topological(self, seed):
        graph = ResourceGraph(_random_dag(seed))
        order = graph.order_for_apply(Target.ALL)
        assert len(order) == len(graph)
        assert len({n.id for n in order}) == len(graph)
        _assert_topological(order)

    @pytest.mark.parametrize("seed", range(25))
    def test_random_dag_stage_closure(self, seed):
        graph = ResourceGraph(_random_dag(seed))
        order = graph.order_for_apply(Target.APP)
        ids = {n.id for n in order}

        for n in graph.stage_nodes(Stage.APP):
            assert n.id in ids
            assert set(graph.dependencies(n.id, transitive=True)) <= ids
        _assert_topological(order)

    @pytest.mark.parametrize("seed", range(10))
    def test_infra_order_has_no_app_nodes(self, seed):
        graph = ResourceGraph(_random_dag(seed))
        order = graph.order_for_apply(Target.INFRA)
        assert all(n.stage == Stage.INFRA for n in order)
        assert len(order) == len(graph.stage_nodes(Stage.INFRA))

    def test_ties_keep_declaration_order(self):
        graph = ResourceGraph([_node("z"), _node("a"), _node("m", depends_on=["z"])])
        assert [n.id for n in graph.order_for_apply(Target.ALL)] == ["z", "a", "m"]

    def test_deterministic(self):
        nodes = _random_dag(7)
        first = [n.id for n in ResourceGraph(nodes).order_for_apply(Target.ALL)]
        second = [n.id for n in ResourceGraph(list(nodes)).order_for_apply(Target.ALL)]
        assert first == second

    def test_catalog_infra_order(self, graph):
        ids = [n.id for n in graph.order_for_apply(Target.INFRA)]
        assert ids == ["network", "firewall", "router", "cluster", "node-pool"]

    def test_catalog_app_order_pulls_infra_dependencies(self, graph):
        ids = [n.id for n in graph.order_for_apply(Target.APP)]
        assert ids[:4] == ["network", "router", "cluster", "node-pool"]
        assert "firewall" not in ids
        assert ids.index("database") < ids.index("workload")
        assert ids.index("storage") < ids.index("workload")
        assert ids.index("ingress") < ids.index("certificate")
        assert ids[-1] == "certificate"


class TestDestroyOrder:
    def test_reverse_of_apply(self, graph):
        order = graph.order_for_destroy(Target.INFRA)
        assert order.ids == ["node-pool", "cluster", "router", "firewall", "network"]

    def test_app_destroy_excludes_infra(self, graph):
        order = graph.order_for_destroy(Target.APP)
        assert all(n.stage == Stage.APP for n in order.nodes)
        assert order.ids[0] == "certificate"
        assert order.ids[-1] == "namespace"
        assert order.dependents == {}

    def test_infra_destroy_reports_outside_dependents(self, graph):
        order = graph.order_for_destroy(Target.INFRA)
        assert order.dependents == {
            "namespace": ["node-pool"],
            "static-ip": ["network"],
        }

    def test_all_has_no_outside_dependents(self, graph):
        order = graph.order_for_destroy(Target.ALL)
        assert len(order.nodes) == len(graph)
        assert order.dependents == {}

    @pytest.mark.parametrize("seed", range(10))
    def test_random_dag_dependents_destroyed_first(self, seed):
        graph = ResourceGraph(_random_dag(seed))
        order = graph.order_for_destroy(Target.ALL)
        position = {nid: i for i, nid in enumerate(order.ids)}
        for n in graph:
            for dep in n.depends_on:
                assert position[n.id] < position[dep]


class TestBlockedBranches:
    def test_live_namespace_blocks_cluster_branch(self, graph):
        order = graph.order_for_destroy(Target.INFRA)
        blocked = graph.blocked_branches(order, ["namespace"])
        assert set(blocked) == {"node-pool", "cluster", "network", "router"}
        assert blocked["node-pool"] == ["namespace"]
        assert "firewall" not in blocked

    def test_live_static_ip_blocks_only_network(self, graph):
        order = graph.order_for_destroy(Target.INFRA)
        blocked = graph.blocked_branches(order, ["static-ip"])
        assert blocked == {"network": ["static-ip"]}

    def test_blockers_accumulate(self, graph):
        order = graph.order_for_destroy(Target.INFRA)
        blocked = graph.blocked_branches(order, ["namespace", "static-ip"])
        assert blocked["network"] == ["namespace", "static-ip"]

    def test_no_live_dependents(self, graph):
        order = graph.order_for_destroy(Target.INFRA)
        assert graph.blocked_branches(order, []) == {}


# ── Catalog ─────────────────────────────────────────────────────────


class TestCatalog:
    def test_fourteen_nodes(self, env):
        nodes = build_nodes(env)
        assert len(nodes) == 14
        assert [n.id for n in nodes if n.stage == Stage.INFRA] == [
            "network", "firewall", "router", "cluster", "node-pool",
        ]

    def test_names_share_prefix(self, env):
        names = ResourceNames(env)
        assert names.prefix == "dev-n8n-cluster"
        assert names.vpc == "dev-n8n-cluster-n8n-vpc"
        assert names.router == "dev-n8n-cluster-n8n-vpc-router"
        assert names.cluster == "dev-n8n-cluster"
        assert names.certificate == "dev-n8n-cluster-n8n-ssl-cert"

    def test_flags(self, graph):
        assert graph.get("cluster").protected
        assert graph.get("database").stateful
        assert graph.get("storage").stateful
        assert graph.get("ingress").best_effort
        assert graph.get("certificate").best_effort
        assert graph.get("workload").foundational

    def test_adapters_by_kind(self, graph):
        assert graph.get("cluster").adapter == "gcloud"
        assert graph.get("static-ip").adapter == "gcloud"
        assert graph.get("certificate").adapter == "gcloud"
        assert graph.get("workload").adapter == "kubectl"

    def test_regional_topology(self, prod_env):
        nodes = {n.id: n for n in build_nodes(prod_env)}
        assert nodes["cluster"].spec["regional"] is True
        assert nodes["cluster"].spec["location"] == "us-central1"
        assert nodes["cluster"].spec["location_flag"] == "region"
        assert nodes["cluster"].spec["deletion_protection"] is True

    def test_zonal_topology(self, env):
        nodes = {n.id: n for n in build_nodes(env)}
        assert nodes["cluster"].spec["location"] == "us-central1-a"
        assert nodes["cluster"].spec["location_flag"] == "zone"
