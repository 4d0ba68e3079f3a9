"""
Readiness probes — map an observed resource to a tri-state verdict.

Pure functions: each probe receives the node declaration and the
normalized observation from a describe receipt and returns a
ProbeResult. No I/O; polling lives in the reliability layer.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from rollout.core.models.resource import ProbeResult, ResourceKind, ResourceNode

# Minimum share of kube-system pods that must be Running.
SYSTEM_POD_THRESHOLD_PERCENT = 80

_CLUSTER_PENDING = {"PROVISIONING", "RECONCILING"}
_CLUSTER_BROKEN = {"ERROR", "DEGRADED", "STOPPING"}


def system_pods_healthy(running: int, total: int) -> bool:
    """At least 80% of system pods Running. No reported pods is not healthy."""
    if total <= 0:
        return False
    return running * 100 >= total * SYSTEM_POD_THRESHOLD_PERCENT


def _status_probe(status: str | None, label: str) -> ProbeResult:
    status = (status or "").upper()
    if status == "RUNNING":
        return ProbeResult.is_ready(f"{label} RUNNING", status=status)
    if status in _CLUSTER_BROKEN:
        return ProbeResult.degraded(f"{label} is {status}", status=status)
    return ProbeResult.pending(f"{label} is {status or 'unknown'}", status=status)


# ── Infra ───────────────────────────────────────────────────────────


def probe_network(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    wanted = node.spec.get("subnet_cidr")
    actual = obs.get("subnet_cidr")
    if not actual:
        return ProbeResult.pending("subnet not created yet")
    if wanted and actual != wanted:
        return ProbeResult.degraded(
            f"subnet bound to {actual}, expected {wanted}", subnet_cidr=actual,
        )
    return ProbeResult.is_ready("network and subnet exist", subnet_cidr=actual)


def probe_firewall(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    expected = [r["name"] for r in node.spec.get("rules", [])]
    present = set(obs.get("rules", []))
    missing = [name for name in expected if name not in present]
    if missing:
        return ProbeResult.pending(f"missing rule(s): {', '.join(missing)}", missing=missing)
    return ProbeResult.is_ready(f"{len(expected)} rule(s) present")


def probe_router(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    if obs.get("nat"):
        return ProbeResult.is_ready("router with NAT", nat=obs["nat"])
    return ProbeResult.pending("router has no NAT configured")


def probe_cluster(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    return _status_probe(obs.get("status"), "cluster")


def probe_node_pool(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    """Full cluster convergence.

    Cluster RUNNING, pool RUNNING, every reported node Ready, and at
    least 80% of system pods Running.
    """
    cluster = _status_probe(obs.get("cluster_status"), "cluster")
    if not cluster.ready:
        return cluster
    pool = _status_probe(obs.get("pool_status"), "node pool")
    if not pool.ready:
        return pool

    nodes_total = int(obs.get("nodes_total", 0))
    nodes_ready = int(obs.get("nodes_ready", 0))
    pods_total = int(obs.get("system_pods_total", 0))
    pods_running = int(obs.get("system_pods_running", 0))
    details = {
        "nodes": f"{nodes_ready}/{nodes_total}",
        "system_pods": f"{pods_running}/{pods_total}",
    }

    if nodes_total == 0 or nodes_ready < nodes_total:
        return ProbeResult.pending(f"{nodes_ready}/{nodes_total} nodes Ready", **details)
    if not system_pods_healthy(pods_running, pods_total):
        return ProbeResult.pending(
            f"only {pods_running}/{pods_total} system pods Running "
            f"(need {SYSTEM_POD_THRESHOLD_PERCENT}%)",
            **details,
        )
    return ProbeResult.is_ready(
        f"{nodes_ready}/{nodes_total} nodes Ready, "
        f"{pods_running}/{pods_total} system pods Running",
        **details,
    )


# ── App ─────────────────────────────────────────────────────────────


def probe_namespace(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    phase = obs.get("phase", "")
    if phase == "Active":
        return ProbeResult.is_ready("namespace Active")
    return ProbeResult.pending(f"namespace is {phase or 'unknown'}")


def probe_exists(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    return ProbeResult.is_ready(f"{node.resource_name} exists")


def probe_volume_claim(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    # WaitForFirstConsumer storage classes keep a claim Pending until a pod mounts it.
    phase = obs.get("phase", "")
    if phase in ("Bound", "Pending"):
        return ProbeResult.is_ready(f"claim {phase}", phase=phase)
    if phase == "Lost":
        return ProbeResult.degraded("claim lost its volume", phase=phase)
    return ProbeResult.pending(f"claim is {phase or 'unknown'}", phase=phase)


def probe_replicas(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    """Ready when ready replicas equal desired replicas exactly."""
    desired = int(obs.get("desired", 0))
    ready = int(obs.get("ready", 0))
    details = {"desired": desired, "ready": ready}
    if desired > 0 and ready == desired:
        return ProbeResult.is_ready(f"{ready}/{desired} replicas ready", **details)
    return ProbeResult.pending(f"{ready}/{desired} replicas ready", **details)


def probe_address(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    if obs.get("address"):
        return ProbeResult.is_ready(f"reserved {obs['address']}", address=obs["address"])
    return ProbeResult.pending("address not reserved yet")


def probe_ingress(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    if obs.get("ip"):
        return ProbeResult.is_ready(f"external address {obs['ip']}", ip=obs["ip"])
    return ProbeResult.pending("external address not assigned yet")


def probe_certificate(node: ResourceNode, obs: dict[str, Any]) -> ProbeResult:
    status = obs.get("status") or "UNKNOWN"
    if status == "ACTIVE":
        return ProbeResult.is_ready("certificate ACTIVE", status=status)
    if status == "PROVISIONING":
        return ProbeResult.pending(
            "certificate PROVISIONING (DNS must point at the static IP)", status=status,
        )
    return ProbeResult.degraded(f"certificate status {status}", status=status)


Probe = Callable[[ResourceNode, dict[str, Any]], ProbeResult]

PROBES: dict[ResourceKind, Probe] = {
    ResourceKind.NETWORK: probe_network,
    ResourceKind.FIREWALL: probe_firewall,
    ResourceKind.ROUTER: probe_router,
    ResourceKind.CLUSTER: probe_cluster,
    ResourceKind.NODE_POOL: probe_node_pool,
    ResourceKind.NAMESPACE: probe_namespace,
    ResourceKind.SECRET: probe_exists,
    ResourceKind.VOLUME_CLAIM: probe_volume_claim,
    ResourceKind.DATABASE: probe_replicas,
    ResourceKind.WORKLOAD: probe_replicas,
    ResourceKind.SERVICE: probe_exists,
    ResourceKind.ADDRESS: probe_address,
    ResourceKind.INGRESS: probe_ingress,
    ResourceKind.CERTIFICATE: probe_certificate,
}


def probe(node: ResourceNode, observation: dict[str, Any]) -> ProbeResult:
    """Evaluate the readiness probe for a node's kind."""
    return PROBES[node.kind](node, observation)
