"""
Cloud client — node-level operations over the adapter registry.

Turns a ResourceNode into adapter Actions (describe, create, update,
delete) with the catalog spec as params, and probes readiness from the
describe observation. The engine components never build Actions
themselves.
"""

from __future__ import annotations

import logging
from typing import Any

from rollout.adapters.registry import AdapterRegistry
from rollout.core.engine.readiness import probe
from rollout.core.models.action import Receipt
from rollout.core.models.config import ResolvedEnvironment
from rollout.core.models.resource import ProbeResult, ResourceKind, ResourceNode

logger = logging.getLogger(__name__)

# Per-call limit for a single CLI invocation; convergence waits are separate.
CALL_TIMEOUT = 300.0


class CloudClient:
    """Node and account operations for one environment."""

    def __init__(self, registry: AdapterRegistry, env: ResolvedEnvironment):
        self.registry = registry
        self.env = env
        self._connected = False

    # ── Params ──────────────────────────────────────────────────

    @staticmethod
    def params_for(node: ResourceNode, **overrides: Any) -> dict[str, Any]:
        params = {"name": node.resource_name, **node.spec}
        params.update(overrides)
        return params

    def _node_call(self, node: ResourceNode, verb: str, **overrides: Any) -> Receipt:
        return self.registry.call(
            node.adapter, verb,
            node_id=node.id,
            kind=node.kind.value,
            params=self.params_for(node, **overrides),
            timeout=CALL_TIMEOUT,
        )

    # ── Node verbs ──────────────────────────────────────────────

    def describe(self, node: ResourceNode) -> Receipt:
        receipt = self._node_call(node, "describe")
        if node.kind == ResourceKind.NODE_POOL and receipt.ok and receipt.present:
            self._merge_cluster_health(receipt)
        return receipt

    def create(self, node: ResourceNode) -> Receipt:
        return self._node_call(node, "create")

    def update(self, node: ResourceNode, **overrides: Any) -> Receipt:
        return self._node_call(node, "update", **overrides)

    def delete(self, node: ResourceNode) -> Receipt:
        return self._node_call(node, "delete")

    def check(self, node: ResourceNode) -> tuple[Receipt, ProbeResult | None]:
        """Describe a node and evaluate its probe (None when absent or unknown)."""
        receipt = self.describe(node)
        if receipt.failed or not receipt.present:
            return receipt, None
        return receipt, probe(node, receipt.observation)

    def poll(self, node: ResourceNode) -> ProbeResult:
        """One readiness poll, suitable for ``wait_until``."""
        receipt, result = self.check(node)
        if result is not None:
            return result
        if receipt.failed:
            return ProbeResult.pending(f"describe failed: {receipt.error}")
        return ProbeResult.pending(f"{node.resource_name} not visible yet")

    # ── Account verbs ───────────────────────────────────────────

    def account(self, verb: str, **params: Any) -> Receipt:
        params.setdefault("project_id", self.env.project.project_id)
        return self.registry.call("gcloud", verb, params=params, timeout=CALL_TIMEOUT)

    def connect(self) -> Receipt:
        """Fetch cluster credentials into the local kubeconfig."""
        receipt = self.account(
            "connect",
            cluster=self.env.prefix,
            location=self.env.location,
            location_flag=self.env.location_flag,
        )
        self._connected = receipt.ok
        return receipt

    def cluster_health(self) -> Receipt:
        return self.registry.call(
            "kubectl", "health",
            params={"context": self.env.kube_context},
            timeout=CALL_TIMEOUT,
        )

    def _merge_cluster_health(self, receipt: Receipt) -> None:
        obs = receipt.observation
        if obs.get("cluster_status") != "RUNNING" or obs.get("pool_status") != "RUNNING":
            return
        if not self._connected:
            connected = self.connect()
            if connected.failed:
                obs["health_error"] = connected.error
                return
        health = self.cluster_health()
        if health.failed:
            obs["health_error"] = health.error
            return
        obs.update(health.observation)
