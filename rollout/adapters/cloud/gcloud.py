"""
gcloud adapter — Google Cloud resources through the gcloud CLI.

Handles the infra nodes (network, firewall, router, cluster, node pool)
plus the global address and managed certificate, and the account-level
queries preflight needs. Describe output is normalized into small
observation dicts that the readiness probes understand.

Long-running cluster and node-pool operations use ``--async``:
convergence is observed by polling describe. The one exception is
removing the cluster's default pool, which blocks so the node-pool
create that follows never overlaps it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from rollout.adapters.base import CommandAdapter, ExecutionContext, Runner
from rollout.adapters.shell.command import CommandResult, run_command
from rollout.core.models.action import (
    NODE_VERBS,
    REASON_ALREADY_EXISTS,
    REASON_DELETION_PROTECTED,
    REASON_NOT_FOUND,
    Receipt,
)

logger = logging.getLogger(__name__)

ACCOUNT_VERBS = (
    "active_account",
    "describe_project",
    "list_enabled_apis",
    "enable_api",
    "describe_machine_type",
    "describe_quotas",
    "connect",
)

MASTER_CIDR = "172.16.0.0/28"
DEFAULT_POOL = "default-pool"
DEFAULT_POOL_DELETE_TIMEOUT = 900.0


def classify_error(text: str) -> str | None:
    """Map gcloud error text to a receipt reason."""
    lowered = (text or "").lower()
    if "deletion protection" in lowered or "deletion_protection" in lowered:
        return REASON_DELETION_PROTECTED
    if "already exists" in lowered or "alreadyexists" in lowered:
        return REASON_ALREADY_EXISTS
    if "not found" in lowered or "not_found" in lowered or "404" in lowered:
        return REASON_NOT_FOUND
    return None


class GcloudAdapter(CommandAdapter):
    """Drive Google Cloud through the gcloud CLI.

    Action params (node verbs):
        name (str): Primary resource name.
        project_id, location, location_flag, region: Placement.
        Plus the node spec from the resource catalog.

    Account verbs take their inputs from params as well
    (``api``, ``machine_type``, ``zone``, ``region``, ``cluster``).
    """

    tool = "gcloud"
    classify = staticmethod(classify_error)

    def __init__(self, project_id: str = "", runner: Runner = run_command):
        super().__init__(runner)
        self._project_id = project_id
        self._node_handlers: dict[tuple[str, str], Callable[[dict], Receipt]] = {}
        for kind in ("network", "firewall", "router", "cluster", "node_pool",
                     "address", "certificate"):
            for verb in NODE_VERBS:
                handler = getattr(self, f"_{verb}_{kind}", None)
                if handler is not None:
                    self._node_handlers[(kind, verb)] = handler

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        action = context.action
        if action.node_id is None:
            if action.verb not in ACCOUNT_VERBS:
                return False, f"Unknown account verb: {action.verb}"
            return True, ""
        if (action.kind, action.verb) not in self._node_handlers:
            return False, f"gcloud cannot {action.verb} a {action.kind or 'resource'}"
        if not context.params.get("name"):
            return False, "Missing required param: 'name'"
        return True, ""

    def dispatch(self, context: ExecutionContext, params: dict[str, Any]) -> Receipt:
        params.setdefault("project_id", self._project_id)
        if context.action.node_id is None:
            return getattr(self, f"_{context.action.verb}")(params)
        return self._node_handlers[(context.action.kind, context.action.verb)](params)

    # ── Plumbing ────────────────────────────────────────────────

    def _gcloud(
        self,
        params: dict,
        *args: str,
        fmt: str | None = "json",
        timeout: float | None = None,
    ) -> CommandResult:
        cmd = ["gcloud", *args, f"--project={params['project_id']}", "--quiet"]
        if fmt:
            cmd.append(f"--format={fmt}")
        return self._run(cmd, timeout=timeout or self._timeout)

    @staticmethod
    def _loc(params: dict) -> str:
        return f"--{params.get('location_flag', 'zone')}={params['location']}"

    def _describe_json(self, params: dict, *args: str) -> tuple[Receipt | None, Any]:
        """Run a describe; returns (receipt-on-absence-or-failure, data)."""
        result = self._gcloud(params, *args)
        if result.ok:
            return None, result.json() or {}
        reason = classify_error(result.error)
        if reason == REASON_NOT_FOUND:
            return self._absent(), None
        return self._fail(result.error, reason=reason), None

    # ── Network ─────────────────────────────────────────────────

    def _describe_network(self, p: dict) -> Receipt:
        early, _ = self._describe_json(p, "compute", "networks", "describe", p["name"])
        if early:
            return early
        subnet = self._gcloud(p, "compute", "networks", "subnets", "describe",
                              p["subnet"], f"--region={p['region']}")
        observation: dict[str, Any] = {"exists": True, "subnet_cidr": None,
                                       "secondary_ranges": {}}
        if subnet.ok:
            data = subnet.json() or {}
            observation["subnet_cidr"] = data.get("ipCidrRange")
            observation["secondary_ranges"] = {
                r.get("rangeName"): r.get("ipCidrRange")
                for r in data.get("secondaryIpRanges", [])
            }
        elif classify_error(subnet.error) != REASON_NOT_FOUND:
            return self._fail(subnet.error, reason=classify_error(subnet.error))
        return self._observed(observation)

    def _create_network(self, p: dict) -> Receipt:
        net = self._gcloud(p, "compute", "networks", "create", p["name"],
                           "--subnet-mode=custom", fmt=None)
        receipt = self._from_result(net, tolerate=(REASON_ALREADY_EXISTS,))
        if receipt.failed:
            return receipt
        ranges = ",".join(f"{k}={v}" for k, v in p.get("secondary_ranges", {}).items())
        args = ["compute", "networks", "subnets", "create", p["subnet"],
                f"--network={p['name']}", f"--region={p['region']}",
                f"--range={p['subnet_cidr']}", "--enable-private-ip-google-access"]
        if ranges:
            args.append(f"--secondary-range={ranges}")
        return self._from_result(self._gcloud(p, *args, fmt=None),
                                 tolerate=(REASON_ALREADY_EXISTS,))

    def _delete_network(self, p: dict) -> Receipt:
        subnet = self._gcloud(p, "compute", "networks", "subnets", "delete",
                              p["subnet"], f"--region={p['region']}", fmt=None)
        receipt = self._from_result(subnet, tolerate=(REASON_NOT_FOUND,))
        if receipt.failed:
            return receipt
        net = self._gcloud(p, "compute", "networks", "delete", p["name"], fmt=None)
        return self._from_result(net, tolerate=(REASON_NOT_FOUND,))

    # ── Firewall ────────────────────────────────────────────────

    def _describe_firewall(self, p: dict) -> Receipt:
        result = self._gcloud(p, "compute", "firewall-rules", "list",
                              f"--filter=network:{p['network']}")
        if not result.ok:
            reason = classify_error(result.error)
            return self._absent() if reason == REASON_NOT_FOUND else self._fail(result.error)
        expected = {r["name"] for r in p.get("rules", [])}
        names = [r.get("name") for r in (result.json() or []) if r.get("name") in expected]
        if not names:
            return self._absent()
        return self._observed({"rules": names})

    def _create_firewall(self, p: dict) -> Receipt:
        for rule in p.get("rules", []):
            result = self._gcloud(
                p, "compute", "firewall-rules", "create", rule["name"],
                f"--network={p['network']}", f"--allow={rule['allow']}",
                f"--source-ranges={','.join(rule['source_ranges'])}", fmt=None,
            )
            receipt = self._from_result(result, tolerate=(REASON_ALREADY_EXISTS,))
            if receipt.failed:
                return receipt
        return self._ok(f"{len(p.get('rules', []))} firewall rule(s) in place")

    def _delete_firewall(self, p: dict) -> Receipt:
        for rule in p.get("rules", []):
            result = self._gcloud(p, "compute", "firewall-rules", "delete",
                                  rule["name"], fmt=None)
            receipt = self._from_result(result, tolerate=(REASON_NOT_FOUND,))
            if receipt.failed:
                return receipt
        return self._ok("firewall rules removed")

    # ── Router / NAT ────────────────────────────────────────────

    def _describe_router(self, p: dict) -> Receipt:
        early, data = self._describe_json(p, "compute", "routers", "describe", p["name"],
                                          f"--region={p['region']}")
        if early:
            return early
        nats = [n.get("name") for n in data.get("nats", [])]
        return self._observed({"nat": p["nat"] if p["nat"] in nats else None, "nats": nats})

    def _create_router(self, p: dict) -> Receipt:
        router = self._gcloud(p, "compute", "routers", "create", p["name"],
                              f"--network={p['network']}", f"--region={p['region']}",
                              fmt=None)
        receipt = self._from_result(router, tolerate=(REASON_ALREADY_EXISTS,))
        if receipt.failed:
            return receipt
        nat = self._gcloud(p, "compute", "routers", "nats", "create", p["nat"],
                           f"--router={p['name']}", f"--region={p['region']}",
                           "--auto-allocate-nat-external-ips",
                           "--nat-all-subnet-ip-ranges", fmt=None)
        return self._from_result(nat, tolerate=(REASON_ALREADY_EXISTS,))

    def _delete_router(self, p: dict) -> Receipt:
        result = self._gcloud(p, "compute", "routers", "delete", p["name"],
                              f"--region={p['region']}", fmt=None)
        return self._from_result(result, tolerate=(REASON_NOT_FOUND,))

    # ── Cluster ─────────────────────────────────────────────────

    def _describe_cluster(self, p: dict) -> Receipt:
        early, data = self._describe_json(p, "container", "clusters", "describe",
                                          p["name"], self._loc(p))
        if early:
            return early
        return self._observed({
            "status": data.get("status"),
            "deletion_protection": bool(data.get("deletionProtection", False)),
            "endpoint": data.get("endpoint"),
            "node_pools": [np.get("name") for np in data.get("nodePools", [])],
        })

    def _create_cluster(self, p: dict) -> Receipt:
        protection = ("--deletion-protection" if p.get("deletion_protection")
                      else "--no-deletion-protection")
        result = self._gcloud(
            p, "container", "clusters", "create", p["name"], self._loc(p),
            f"--network={p['network']}", f"--subnetwork={p['subnet']}",
            "--enable-ip-alias",
            f"--cluster-secondary-range-name={p['pods_range']}",
            f"--services-secondary-range-name={p['services_range']}",
            "--enable-private-nodes", f"--master-ipv4-cidr={MASTER_CIDR}",
            "--num-nodes=1", "--release-channel=regular",
            protection, "--async", fmt=None,
        )
        return self._from_result(result, tolerate=(REASON_ALREADY_EXISTS,))

    def _update_cluster(self, p: dict) -> Receipt:
        flag = ("--deletion-protection" if p.get("deletion_protection")
                else "--no-deletion-protection")
        result = self._gcloud(p, "container", "clusters", "update", p["name"],
                              self._loc(p), flag, fmt=None)
        return self._from_result(result)

    def _delete_cluster(self, p: dict) -> Receipt:
        result = self._gcloud(p, "container", "clusters", "delete", p["name"],
                              self._loc(p), "--async", fmt=None)
        return self._from_result(result, tolerate=(REASON_NOT_FOUND,))

    # ── Node pool ───────────────────────────────────────────────

    def _describe_node_pool(self, p: dict) -> Receipt:
        early, cluster = self._describe_json(p, "container", "clusters", "describe",
                                             p["cluster"], self._loc(p))
        if early:
            return early
        early, pool = self._describe_json(p, "container", "node-pools", "describe",
                                          p["name"], f"--cluster={p['cluster']}",
                                          self._loc(p))
        if early:
            return early
        autoscaling = pool.get("autoscaling", {})
        return self._observed({
            "cluster_status": cluster.get("status"),
            "pool_status": pool.get("status"),
            "machine_type": pool.get("config", {}).get("machineType"),
            "min_nodes": autoscaling.get("minNodeCount"),
            "max_nodes": autoscaling.get("maxNodeCount"),
        })

    def _create_node_pool(self, p: dict) -> Receipt:
        # GKE runs one operation per cluster; the one-node default pool
        # must be gone before the pool create is issued.
        default = self._gcloud(p, "container", "node-pools", "delete", DEFAULT_POOL,
                               f"--cluster={p['cluster']}", self._loc(p),
                               fmt=None, timeout=DEFAULT_POOL_DELETE_TIMEOUT)
        if not default.ok and classify_error(default.error) != REASON_NOT_FOUND:
            return self._fail(f"Could not remove {DEFAULT_POOL}: {default.error}",
                              reason=classify_error(default.error))
        if default.ok:
            logger.info("Removed %s from %s", DEFAULT_POOL, p["cluster"])

        result = self._gcloud(
            p, "container", "node-pools", "create", p["name"],
            f"--cluster={p['cluster']}", self._loc(p),
            f"--machine-type={p['machine_type']}",
            f"--disk-size={p['disk_size_gb']}",
            f"--num-nodes={max(p['min_nodes'], 1)}",
            "--enable-autoscaling",
            f"--min-nodes={p['min_nodes']}", f"--max-nodes={p['max_nodes']}",
            "--async", fmt=None,
        )
        return self._from_result(result, tolerate=(REASON_ALREADY_EXISTS,))

    def _delete_node_pool(self, p: dict) -> Receipt:
        result = self._gcloud(p, "container", "node-pools", "delete", p["name"],
                              f"--cluster={p['cluster']}", self._loc(p), "--async",
                              fmt=None)
        return self._from_result(result, tolerate=(REASON_NOT_FOUND,))

    # ── Global address ──────────────────────────────────────────

    def _describe_address(self, p: dict) -> Receipt:
        early, data = self._describe_json(p, "compute", "addresses", "describe",
                                          p["name"], "--global")
        if early:
            return early
        return self._observed({
            "address": data.get("address"),
            "address_type": data.get("addressType", "EXTERNAL"),
            "status": data.get("status"),
            "global": True,
        })

    def _create_address(self, p: dict) -> Receipt:
        result = self._gcloud(p, "compute", "addresses", "create", p["name"],
                              "--global", fmt=None)
        return self._from_result(result, tolerate=(REASON_ALREADY_EXISTS,))

    def _delete_address(self, p: dict) -> Receipt:
        result = self._gcloud(p, "compute", "addresses", "delete", p["name"],
                              "--global", fmt=None)
        return self._from_result(result, tolerate=(REASON_NOT_FOUND,))

    # ── Managed certificate ─────────────────────────────────────

    def _describe_certificate(self, p: dict) -> Receipt:
        early, data = self._describe_json(p, "compute", "ssl-certificates", "describe",
                                          p["name"], "--global")
        if early:
            return early
        managed = data.get("managed", {})
        return self._observed({
            "status": managed.get("status"),
            "domains": managed.get("domains", []),
            "domain_status": managed.get("domainStatus", {}),
        })

    def _create_certificate(self, p: dict) -> Receipt:
        result = self._gcloud(p, "compute", "ssl-certificates", "create", p["name"],
                              f"--domains={','.join(p['domains'])}", "--global", fmt=None)
        return self._from_result(result, tolerate=(REASON_ALREADY_EXISTS,))

    def _delete_certificate(self, p: dict) -> Receipt:
        result = self._gcloud(p, "compute", "ssl-certificates", "delete", p["name"],
                              "--global", fmt=None)
        return self._from_result(result, tolerate=(REASON_NOT_FOUND,))

    # ── Account-level queries ───────────────────────────────────

    def _active_account(self, p: dict) -> Receipt:
        result = self._run(
            ["gcloud", "auth", "list", "--filter=status:ACTIVE",
             "--format=value(account)"],
            timeout=self._timeout,
        )
        if not result.ok:
            return self._fail(result.error)
        account = result.stdout.splitlines()[0].strip() if result.stdout else ""
        if not account:
            return self._fail("No active gcloud account")
        return self._observed({"account": account})

    def _describe_project(self, p: dict) -> Receipt:
        result = self._run(
            ["gcloud", "projects", "describe", p["project_id"], "--format=json"],
            timeout=self._timeout,
        )
        if not result.ok:
            reason = classify_error(result.error)
            if reason == REASON_NOT_FOUND:
                return self._absent()
            return self._fail(result.error, reason=reason)
        data = result.json() or {}
        return self._observed({
            "project_id": data.get("projectId", p["project_id"]),
            "lifecycle_state": data.get("lifecycleState", "ACTIVE"),
        })

    def _list_enabled_apis(self, p: dict) -> Receipt:
        result = self._gcloud(p, "services", "list", "--enabled",
                              fmt="value(config.name)")
        if not result.ok:
            return self._fail(result.error)
        apis = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return self._observed({"apis": apis})

    def _enable_api(self, p: dict) -> Receipt:
        result = self._gcloud(p, "services", "enable", p["api"], fmt=None)
        return self._from_result(result)

    def _describe_machine_type(self, p: dict) -> Receipt:
        early, data = self._describe_json(p, "compute", "machine-types", "describe",
                                          p["machine_type"], f"--zone={p['zone']}")
        if early:
            return early
        return self._observed({
            "name": data.get("name", p["machine_type"]),
            "guest_cpus": int(data.get("guestCpus", 0)),
            "memory_mb": int(data.get("memoryMb", 0)),
        })

    def _describe_quotas(self, p: dict) -> Receipt:
        early, data = self._describe_json(p, "compute", "regions", "describe", p["region"])
        if early:
            return early
        quotas = {
            q["metric"]: {"limit": float(q.get("limit", 0)), "usage": float(q.get("usage", 0))}
            for q in data.get("quotas", [])
            if "metric" in q
        }
        return self._observed({"quotas": quotas})

    def _connect(self, p: dict) -> Receipt:
        result = self._gcloud(p, "container", "clusters", "get-credentials",
                              p["cluster"], self._loc(p), fmt=None)
        return self._from_result(result)

