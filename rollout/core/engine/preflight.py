"""
Preflight validator — aggregated checks before any mutation.

Every check in a phase runs, regardless of earlier failures, and the
caller sees every failure. Checks are plain callables returning a
CheckResult (or an ``(ok, reason)`` tuple), so tests and callers can
pass their own lists to ``run_checks``.

Enabling a missing API is the only check with a side effect; it is
idempotent and the check re-reads the enabled list before deciding.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from rollout.core.engine.cloud import CloudClient
from rollout.core.engine.graph import ResourceGraph
from rollout.core.engine.readiness import (
    SYSTEM_POD_THRESHOLD_PERCENT,
    system_pods_healthy,
)
from rollout.core.models.config import Topology
from rollout.core.models.resource import ResourceKind, Stage
from rollout.core.models.run import CheckPhase, CheckResult, ValidationResult

logger = logging.getLogger(__name__)

_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)

# Cluster states that cannot be converged by re-applying.
BROKEN_CLUSTER_STATES = ("ERROR", "STOPPING", "DEGRADED")

# Regional clusters replicate the node pool across three zones.
REGIONAL_ZONE_COUNT = 3


CheckFn = Callable[[], "CheckResult | tuple[bool, str] | bool"]


@dataclass
class Check:
    """A named validation predicate."""

    name: str
    fn: CheckFn


def is_valid_domain(domain: str) -> bool:
    return bool(_DOMAIN_RE.match(domain or ""))


def _normalize(name: str, value: object) -> CheckResult:
    if isinstance(value, CheckResult):
        return value
    if isinstance(value, tuple):
        ok, reason = value
        return CheckResult(name=name, ok=bool(ok), reason=reason or "")
    return CheckResult(name=name, ok=bool(value),
                       reason="" if value else "check returned false")


def run_checks(
    phase: CheckPhase | str,
    checks: list[Check | CheckFn],
    stage: str = "",
) -> ValidationResult:
    """Run every check, never short-circuiting, and aggregate the results.

    A check that raises is reported as a failed check with the error;
    the remaining checks still run.
    """
    result = ValidationResult(phase=str(phase), stage=stage)
    for i, check in enumerate(checks):
        if isinstance(check, Check):
            name, fn = check.name, check.fn
        else:
            name, fn = getattr(check, "__name__", f"check-{i + 1}"), check
        try:
            outcome = _normalize(name, fn())
        except Exception as e:
            logger.exception("Check %s raised", name)
            outcome = CheckResult.failed(name, f"check raised {type(e).__name__}: {e}")
        if not outcome.ok:
            logger.info("Check failed: %s: %s", outcome.name, outcome.reason)
        result.checks.append(outcome)
    return result


class Preflight:
    """Standard pre- and post-stage checks for one environment."""

    def __init__(self, cloud: CloudClient, graph: ResourceGraph):
        self.cloud = cloud
        self.graph = graph
        self.env = cloud.env

    # ── Entry points ────────────────────────────────────────────

    def run(self, phase: CheckPhase | str, checks: list[Check | CheckFn],
            stage: str = "") -> ValidationResult:
        return run_checks(phase, checks, stage=stage)

    def before(self, stage: Stage) -> ValidationResult:
        checks = self.infra_checks() if stage == Stage.INFRA else self.app_checks()
        return self.run(CheckPhase.PRE, checks, stage=stage.value)

    def before_destroy(self) -> ValidationResult:
        return self.run(CheckPhase.PRE, self.destroy_checks(), stage="destroy")

    def after(self, stage: Stage) -> ValidationResult:
        return self.run(CheckPhase.POST, self.post_checks(stage), stage=stage.value)

    # ── Check lists ─────────────────────────────────────────────

    def tool_checks(self) -> list[Check]:
        return [
            Check(f"tool:{tool}", lambda tool=tool: self.check_tool(tool))
            for tool in self.env.project.required_tools
        ]

    def infra_checks(self) -> list[Check]:
        return [
            *self.tool_checks(),
            Check("authentication", self.check_authentication),
            Check("project", self.check_project),
            Check("apis", self.check_apis),
            Check("machine-type", self.check_machine_type),
            Check("network-conflict", self.check_network_conflict),
            Check("cluster-state", self.check_cluster_state),
            Check("quota", self.check_quota),
        ]

    def app_checks(self) -> list[Check]:
        return [
            *self.tool_checks(),
            Check("authentication", self.check_authentication),
            Check("credentials", self.check_credentials),
            Check("infra-ready", self.check_infra_ready),
            Check("domain", self.check_domain),
            Check("static-ip-conflict", self.check_address_conflict),
            Check("certificate-conflict", self.check_certificate_conflict),
        ]

    def destroy_checks(self) -> list[Check]:
        return [
            *self.tool_checks(),
            Check("authentication", self.check_authentication),
            Check("project", self.check_project),
        ]

    def post_checks(self, stage: Stage) -> list[Check]:
        checks = [
            Check(f"converged:{node.id}", lambda node=node: self.check_converged(node.id))
            for node in self.graph.stage_nodes(stage)
        ]
        if stage == Stage.INFRA:
            checks.append(Check("system-pods", self.check_system_pods))
        return checks

    # ── Shared checks ───────────────────────────────────────────

    def check_tool(self, tool: str) -> CheckResult:
        if self.cloud.registry.tool_available(tool):
            return CheckResult.passed(f"tool:{tool}")
        return CheckResult.failed(f"tool:{tool}", f"'{tool}' not found on PATH")

    def check_authentication(self) -> CheckResult:
        receipt = self.cloud.account("active_account")
        if receipt.ok and receipt.observation.get("account"):
            return CheckResult.passed("authentication", receipt.observation["account"])
        return CheckResult.failed(
            "authentication",
            f"no active gcloud session ({receipt.error or 'no account'}); "
            "run 'gcloud auth login'",
        )

    def check_project(self) -> CheckResult:
        project_id = self.env.project.project_id
        receipt = self.cloud.account("describe_project")
        if receipt.failed:
            return CheckResult.failed("project", f"cannot reach project '{project_id}': {receipt.error}")
        if not receipt.present:
            return CheckResult.failed("project", f"project '{project_id}' not found")
        state = receipt.observation.get("lifecycle_state", "ACTIVE")
        if state != "ACTIVE":
            return CheckResult.failed("project", f"project '{project_id}' is {state}")
        return CheckResult.passed("project", project_id)

    # ── Infra checks ────────────────────────────────────────────

    def _missing_apis(self) -> tuple[list[str] | None, str]:
        receipt = self.cloud.account("list_enabled_apis")
        if receipt.failed:
            return None, receipt.error or "cannot list enabled APIs"
        enabled = set(receipt.observation.get("apis", []))
        return [a for a in self.env.project.required_apis if a not in enabled], ""

    def check_apis(self) -> CheckResult:
        missing, error = self._missing_apis()
        if missing is None:
            return CheckResult.failed("apis", error)
        if not missing:
            return CheckResult.passed("apis", "all required APIs enabled")

        errors = []
        for api in missing:
            logger.info("Enabling missing API %s", api)
            receipt = self.cloud.account("enable_api", api=api)
            if receipt.failed:
                errors.append(f"{api}: {receipt.error}")

        still_missing, error = self._missing_apis()
        if still_missing is None:
            return CheckResult.failed("apis", error)
        if still_missing:
            detail = "; ".join(errors) if errors else "still disabled after enabling"
            return CheckResult.failed(
                "apis", f"required API(s) not enabled: {', '.join(still_missing)} ({detail})",
            )
        return CheckResult.passed("apis", f"enabled {', '.join(missing)}", remediated=True)

    def check_machine_type(self) -> CheckResult:
        machine_type = self.env.environment.sizing.machine_type
        receipt = self.cloud.account(
            "describe_machine_type", machine_type=machine_type, zone=self.env.project.zone,
        )
        if receipt.failed:
            return CheckResult.failed("machine-type", receipt.error or "lookup failed")
        if not receipt.present:
            return CheckResult.failed(
                "machine-type",
                f"machine type '{machine_type}' is not available in {self.env.project.zone}",
            )
        return CheckResult.passed("machine-type", machine_type)

    def check_network_conflict(self) -> CheckResult:
        node = self.graph.get("network")
        receipt = self.cloud.describe(node)
        if receipt.failed:
            return CheckResult.failed("network-conflict", receipt.error or "describe failed")
        if not receipt.present:
            return CheckResult.passed("network-conflict", "network will be created")

        obs = receipt.observation
        problems = []
        wanted = node.spec["subnet_cidr"]
        if obs.get("subnet_cidr") and obs["subnet_cidr"] != wanted:
            problems.append(
                f"subnet {node.spec['subnet']} is bound to {obs['subnet_cidr']}, expected {wanted}"
            )
        for range_name, cidr in node.spec.get("secondary_ranges", {}).items():
            actual = obs.get("secondary_ranges", {}).get(range_name)
            if actual and actual != cidr:
                problems.append(f"secondary range '{range_name}' is {actual}, expected {cidr}")
        if problems:
            return CheckResult.failed("network-conflict", "; ".join(problems))
        return CheckResult.passed("network-conflict", "existing network is compatible")

    def check_cluster_state(self) -> CheckResult:
        receipt = self.cloud.describe(self.graph.get("cluster"))
        if receipt.failed:
            return CheckResult.failed("cluster-state", receipt.error or "describe failed")
        if not receipt.present:
            return CheckResult.passed("cluster-state", "cluster will be created")
        status = receipt.observation.get("status") or "UNKNOWN"
        if status in BROKEN_CLUSTER_STATES:
            return CheckResult.failed(
                "cluster-state",
                f"cluster {self.env.prefix} is {status}; repair or destroy it before applying",
            )
        return CheckResult.passed("cluster-state", f"cluster is {status}")

    def check_quota(self) -> CheckResult:
        cluster = self.cloud.describe(self.graph.get("cluster"))
        if cluster.ok and cluster.present:
            return CheckResult.passed("quota", "cluster exists; quota already committed")

        sizing = self.env.environment.sizing
        machine = self.cloud.account(
            "describe_machine_type", machine_type=sizing.machine_type, zone=self.env.project.zone,
        )
        if not (machine.ok and machine.present):
            return CheckResult.failed("quota", "cannot size quota: machine type lookup failed")

        factor = REGIONAL_ZONE_COUNT if self.env.environment.topology == Topology.REGIONAL else 1
        need_cpus = sizing.max_nodes * int(machine.observation.get("guest_cpus", 0)) * factor
        need_disk = sizing.max_nodes * sizing.disk_size_gb * factor

        quotas = self.cloud.account("describe_quotas", region=self.env.project.region)
        if quotas.failed or not quotas.present:
            return CheckResult.failed("quota", f"cannot read regional quotas: {quotas.error}")
        table = quotas.observation.get("quotas", {})

        problems = []
        for metric, needed in (("CPUS", need_cpus), ("DISKS_TOTAL_GB", need_disk)):
            entry = table.get(metric)
            if entry is None:
                continue
            headroom = entry["limit"] - entry["usage"]
            if headroom < needed:
                problems.append(f"{metric}: need {needed:g}, {headroom:g} available")
        if problems:
            return CheckResult.failed("quota", "insufficient quota: " + "; ".join(problems))
        return CheckResult.passed("quota", f"{need_cpus} CPUs, {need_disk} GB disk available")

    # ── App checks ──────────────────────────────────────────────

    def check_credentials(self) -> CheckResult:
        receipt = self.cloud.connect()
        if receipt.failed:
            return CheckResult.failed(
                "credentials",
                f"cannot fetch credentials for cluster {self.env.prefix}: {receipt.error}",
            )
        return CheckResult.passed("credentials", self.env.kube_context)

    def check_infra_ready(self) -> CheckResult:
        unready = []
        for node in self.graph.stage_nodes(Stage.INFRA):
            receipt, result = self.cloud.check(node)
            if receipt.failed:
                unready.append(f"{node.id} ({receipt.error})")
            elif result is None:
                unready.append(f"{node.id} (absent)")
            elif not result.ready:
                unready.append(f"{node.id} ({result.message})")
        if unready:
            return CheckResult.failed(
                "infra-ready",
                f"infra node(s) not ready: {', '.join(unready)}. "
                f"Run 'rollout deploy {self.env.name} apply-infra' first",
            )
        return CheckResult.passed("infra-ready", "all infra nodes ready")

    def check_domain(self) -> CheckResult:
        domain = self.env.project.domain
        if is_valid_domain(domain):
            return CheckResult.passed("domain", domain)
        return CheckResult.failed("domain", f"'{domain}' is not a valid DNS name")

    def check_address_conflict(self) -> CheckResult:
        node = self.graph.get("static-ip")
        receipt = self.cloud.describe(node)
        if receipt.failed:
            return CheckResult.failed("static-ip-conflict", receipt.error or "describe failed")
        if not receipt.present:
            return CheckResult.passed("static-ip-conflict", "address will be reserved")
        obs = receipt.observation
        if obs.get("address_type", "EXTERNAL") != "EXTERNAL" or not obs.get("global", True):
            return CheckResult.failed(
                "static-ip-conflict",
                f"address {node.resource_name} exists but is not a global external address",
            )
        return CheckResult.passed("static-ip-conflict", f"reusing {obs.get('address')}")

    def check_certificate_conflict(self) -> CheckResult:
        node = self.graph.get("certificate")
        receipt = self.cloud.describe(node)
        if receipt.failed:
            return CheckResult.failed("certificate-conflict", receipt.error or "describe failed")
        if not receipt.present:
            return CheckResult.passed("certificate-conflict", "certificate will be created")
        domains = receipt.observation.get("domains") or []
        if domains and self.env.project.domain not in domains:
            return CheckResult.failed(
                "certificate-conflict",
                f"certificate {node.resource_name} covers {', '.join(domains)}, "
                f"not {self.env.project.domain}",
            )
        return CheckResult.passed("certificate-conflict", "existing certificate matches")

    # ── Post-stage checks ───────────────────────────────────────

    def check_converged(self, node_id: str) -> CheckResult:
        """Advisory: a node still converging is a warning, not a failure."""
        node = self.graph.get(node_id)
        name = f"converged:{node_id}"
        receipt, result = self.cloud.check(node)
        if result is not None and result.ready:
            return CheckResult.passed(name, result.message)
        reason = result.message if result else (receipt.error or "not visible")
        return CheckResult.warn(name, reason)

    def check_system_pods(self) -> CheckResult:
        """Hard check: below the system-pod threshold fails the stage."""
        node = next(n for n in self.graph.stage_nodes(Stage.INFRA)
                    if n.kind == ResourceKind.NODE_POOL)
        receipt = self.cloud.describe(node)
        obs = receipt.observation if receipt.ok and receipt.present else {}
        if "system_pods_total" not in obs:
            return CheckResult.warn(
                "system-pods", obs.get("health_error") or "cluster health not observable yet",
            )
        running, total = int(obs["system_pods_running"]), int(obs["system_pods_total"])
        if system_pods_healthy(running, total):
            return CheckResult.passed("system-pods", f"{running}/{total} running")
        return CheckResult.failed(
            "system-pods",
            f"only {running}/{total} system pods running "
            f"(need {SYSTEM_POD_THRESHOLD_PERCENT}%)",
        )
