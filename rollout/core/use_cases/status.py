"""
Status use case — read-only health of every node, from the cloud.

Nothing here is cached or persisted as state: each invocation describes
every node of the requested stages and evaluates its readiness probe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from rollout.adapters.registry import AdapterRegistry
from rollout.core.config.loader import ConfigError
from rollout.core.models.resource import (
    KUBERNETES_KINDS,
    NodeState,
    ProbeStatus,
    Target,
)
from rollout.core.models.run import DeploymentRun, NodeOutcome, Outcome
from rollout.core.persistence.audit import AuditWriter
from rollout.core.use_cases.session import EXIT_OK, EXIT_VALIDATION, Session, open_session

logger = logging.getLogger(__name__)

_PROBE_STATES = {
    ProbeStatus.READY: NodeState.READY,
    ProbeStatus.PENDING: NodeState.CREATING,
    ProbeStatus.DEGRADED: NodeState.DEGRADED,
}


@dataclass
class StatusResult:
    """Observed health per node."""

    environment: str = ""
    target: str = ""
    nodes: list[NodeOutcome] = field(default_factory=list)
    run: DeploymentRun | None = None
    error: str | None = None
    exit_code: int = 0

    @property
    def all_ready(self) -> bool:
        return bool(self.nodes) and all(n.state == NodeState.READY for n in self.nodes)

    def state_of(self, node_id: str) -> NodeState | None:
        for n in self.nodes:
            if n.node_id == node_id:
                return n.state
        return None

    def to_dict(self) -> dict:
        result: dict = {"environment": self.environment, "target": self.target}
        if self.error:
            result["error"] = self.error
            return result
        result["all_ready"] = self.all_ready
        result["nodes"] = [n.model_dump(mode="json") for n in self.nodes]
        return result


def _observe(session: Session, target: Target) -> list[NodeOutcome]:
    cloud = session.cloud
    stages = target.stages
    nodes = [n for n in session.graph.order_for_apply(target) if n.stage in stages]

    kube_error: str | None = None
    if any(n.kind in KUBERNETES_KINDS for n in nodes):
        connected = cloud.connect()
        if connected.failed:
            kube_error = "cluster absent" if connected.not_found else connected.error

    outcomes = []
    for node in nodes:
        outcome = NodeOutcome(
            node_id=node.id,
            stage=node.stage.value,
            kind=node.kind.value,
            resource_name=node.resource_name,
            action="observed",
        )
        if node.kind in KUBERNETES_KINDS and kube_error:
            outcome.state = NodeState.ABSENT if kube_error == "cluster absent" else NodeState.UNKNOWN
            outcome.message = kube_error
            outcomes.append(outcome)
            continue

        receipt, probe = cloud.check(node)
        if receipt.failed:
            outcome.state = NodeState.UNKNOWN
            outcome.message = receipt.error or "describe failed"
        elif probe is None:
            outcome.state = NodeState.ABSENT
            outcome.message = "not found"
        else:
            outcome.state = _PROBE_STATES[probe.status]
            outcome.message = probe.message
            outcome.details = dict(receipt.observation)
        outcomes.append(outcome)
    return outcomes


def get_status(
    environment: str | None,
    target: str = "all",
    config_path: Path | None = None,
    mock: bool = False,
    registry: AdapterRegistry | None = None,
) -> StatusResult:
    """Describe every node of the target's stages; never mutates.

    The exit code is 1 when any requested node is not ready.
    """
    result = StatusResult(target=target)

    try:
        resolved_target = Target(target)
    except ValueError:
        result.error = f"Unknown status target '{target}'. Choose from: all, infra, app"
        result.exit_code = EXIT_VALIDATION
        return result

    try:
        session = open_session(environment, config_path, mock=mock, registry=registry)
    except ConfigError as e:
        result.error = str(e)
        result.exit_code = EXIT_VALIDATION
        return result

    result.environment = session.env.name
    run = session.new_run("status", resolved_target.value)
    result.run = run

    for outcome in _observe(session, resolved_target):
        run.record_node(outcome)
    result.nodes = list(run.nodes)

    run.finalize(Outcome.SUCCESS if result.all_ready else Outcome.PARTIAL)
    AuditWriter(project_root=session.root).record(run)

    result.exit_code = EXIT_OK if result.all_ready else EXIT_VALIDATION
    logger.info("Status of %s/%s: %d node(s), all ready=%s",
                session.env.name, target, len(result.nodes), result.all_ready)
    return result
