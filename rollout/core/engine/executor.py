"""
Stage executor — apply a stage's nodes in dependency order.

For each node in ``order_for_apply``: describe, then create (absent),
re-apply (updatable and present) or simply wait (present, converging),
and block until the readiness probe reports ready or the node's budget
runs out. Nodes outside the requested stage are only verified.

Failures are recorded per node on the DeploymentRun; dependents of a
failed or unconverged foundational node are reported as blocked while
independent branches carry on.

Flow:
    describe → (create | update | wait) → poll until ready → record outcome
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from rollout.core.engine.cloud import CloudClient
from rollout.core.engine.graph import ResourceGraph
from rollout.core.errors import ApplyFailure, ConvergenceTimeout
from rollout.core.models.resource import NodeState, ProbeStatus, ResourceNode, Target
from rollout.core.models.run import DeploymentRun, NodeOutcome
from rollout.core.reliability.polling import WaitResult, WaitStatus, wait_until

logger = logging.getLogger(__name__)

# Intended actions shown by a plan.
PLAN_CREATE = "create"
PLAN_UPDATE = "update"
PLAN_NONE = "none"
PLAN_WAIT = "wait"
PLAN_UNKNOWN = "unknown"


@dataclass
class PlanStep:
    """Intended action for one node."""

    node_id: str
    stage: str
    kind: str
    resource_name: str
    action: str
    current: str = ""
    verify_only: bool = False
    note: str = ""

    def to_dict(self) -> dict:
        return {
            "node": self.node_id,
            "stage": self.stage,
            "kind": self.kind,
            "resource": self.resource_name,
            "action": self.action,
            "current": self.current,
            "verify_only": self.verify_only,
            "note": self.note,
        }


@dataclass
class Plan:
    """Ordered intended actions for a target, computed without mutation."""

    environment: str
    target: str
    steps: list[PlanStep] = field(default_factory=list)

    @property
    def node_ids(self) -> list[str]:
        return [s.node_id for s in self.steps]

    def touched(self) -> list[PlanStep]:
        """Steps that would mutate something."""
        return [s for s in self.steps if s.action in (PLAN_CREATE, PLAN_UPDATE)]

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for s in self.steps:
            counts[s.action] = counts.get(s.action, 0) + 1
        return counts

    def to_dict(self) -> dict:
        return {
            "environment": self.environment,
            "target": self.target,
            "counts": self.counts(),
            "steps": [s.to_dict() for s in self.steps],
        }


class StageExecutor:
    """Applies stages of the resource graph against the cloud."""

    def __init__(
        self,
        cloud: CloudClient,
        graph: ResourceGraph,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        progress: Callable[[NodeOutcome], None] | None = None,
    ):
        self.cloud = cloud
        self.graph = graph
        self.env = cloud.env
        self._clock = clock
        self._sleep = sleep
        self._progress = progress

    # ── Plan ────────────────────────────────────────────────────

    def plan(self, target: Target) -> Plan:
        """Compute ordering and intended actions without mutating."""
        stages = target.stages
        plan = Plan(environment=self.env.name, target=target.value)

        for node in self.graph.order_for_apply(target):
            verify_only = node.stage not in stages
            receipt, result = self.cloud.check(node)
            step = PlanStep(
                node_id=node.id,
                stage=node.stage.value,
                kind=node.kind.value,
                resource_name=node.resource_name,
                action=PLAN_UNKNOWN,
                verify_only=verify_only,
            )
            if receipt.failed:
                step.current = "unknown"
                step.note = receipt.error or "describe failed"
            elif result is None:
                step.current = NodeState.ABSENT.value
                if verify_only:
                    step.action = PLAN_NONE
                    step.note = f"missing; apply the {node.stage.value} stage first"
                else:
                    step.action = PLAN_CREATE
            elif result.ready:
                step.current = NodeState.READY.value
                step.action = PLAN_UPDATE if node.updatable and not verify_only else PLAN_NONE
            else:
                step.current = result.status.value
                step.action = PLAN_WAIT
                step.note = result.message
            plan.steps.append(step)

        logger.info("Plan for %s/%s: %s", self.env.name, target.value, plan.counts())
        return plan

    # ── Apply ───────────────────────────────────────────────────

    def apply(self, run: DeploymentRun, target: Target) -> None:
        """Apply the target's stage(s), recording every node outcome on ``run``."""
        stages = target.stages
        for node in self.graph.order_for_apply(target):
            blockers = self._blockers(run, node)
            if blockers:
                self._record(run, node, NodeState.BLOCKED, "blocked",
                             f"blocked by {', '.join(blockers)}")
                continue

            if node.stage not in stages:
                self._verify(run, node)
            else:
                self._apply_node(run, node)

    def _blockers(self, run: DeploymentRun, node: ResourceNode) -> list[str]:
        """Dependencies that prevent this node from being touched."""
        blockers = []
        for dep_id in node.depends_on:
            dep = self.graph.get(dep_id)
            state = run.state_of(dep_id)
            if state == NodeState.READY:
                continue
            if state == NodeState.DEGRADED and dep.best_effort:
                continue
            blockers.append(f"{dep_id} ({state.value})")
        return blockers

    def _verify(self, run: DeploymentRun, node: ResourceNode) -> None:
        """Check a dependency from another stage without mutating it."""
        start = self._clock()
        receipt, result = self.cloud.check(node)
        remediation = f"Run 'rollout deploy {self.env.name} apply-{node.stage.value}' first."

        if result is not None and result.ready:
            self._record(run, node, NodeState.READY, "verified", result.message, start)
            return

        if receipt.failed:
            state, message = NodeState.UNKNOWN, f"cannot describe: {receipt.error}"
        elif result is None:
            state, message = NodeState.ABSENT, "not present"
        else:
            state = NodeState.DEGRADED if result.status == ProbeStatus.DEGRADED else NodeState.CREATING
            message = result.message
        self._record(run, node, state, "verified", message, start)
        run.record_failure(ApplyFailure(
            f"{node.stage.value} node '{node.id}' is not ready: {message}",
            node_id=node.id,
            remediation=remediation,
        ))

    def _apply_node(self, run: DeploymentRun, node: ResourceNode) -> None:
        start = self._clock()
        receipt, result = self.cloud.check(node)

        if receipt.failed:
            self._fail(run, node, f"cannot describe {node.resource_name}: {receipt.error}", start)
            return

        if result is not None and result.ready:
            if not node.updatable:
                self._record(run, node, NodeState.READY, "existing", result.message, start)
                return
            update = self.cloud.update(node)
            if update.failed:
                self._fail(run, node, f"update failed: {update.error}", start)
                return
            self._settle(run, node, self._wait(node), "updated", start)
            return

        if result is not None:
            logger.info("%s exists but is converging (%s); waiting", node.id, result.message)
            self._settle(run, node, self._wait(node), "waited", start)
            return

        logger.info("Creating %s (%s)", node.id, node.resource_name)
        created = self.cloud.create(node)
        if created.failed:
            self._fail(run, node, f"create failed: {created.error}", start)
            return
        self._settle(run, node, self._wait(node), "created", start)

    def _wait(self, node: ResourceNode) -> WaitResult:
        timeouts = self.env.timeouts
        return wait_until(
            lambda: self.cloud.poll(node),
            timeout=timeouts.for_kind(node.kind.value),
            interval=timeouts.poll_interval,
            backoff=timeouts.backoff,
            max_interval=timeouts.max_poll_interval,
            clock=self._clock,
            sleep=self._sleep,
            on_poll=lambda r, n: logger.debug("%s poll %d: %s", node.id, n, r.message),
        )

    def _settle(
        self,
        run: DeploymentRun,
        node: ResourceNode,
        waited: WaitResult,
        action: str,
        start: float,
    ) -> None:
        """Turn a wait result into the node's outcome."""
        if waited.status == WaitStatus.READY:
            self._record(run, node, NodeState.READY, action, waited.message, start)
            return

        self._record(run, node, NodeState.DEGRADED, action, waited.message, start)
        budget = self.env.timeouts.for_kind(node.kind.value)

        if node.best_effort:
            if waited.status == WaitStatus.TIMEOUT:
                run.warn(f"{node.id}: not ready after {budget:g}s ({waited.message}); "
                         f"it may still converge, re-check with 'rollout status {self.env.name}'")
            else:
                run.warn(f"{node.id}: {waited.message}")
            return

        if waited.status == WaitStatus.TIMEOUT:
            run.record_failure(ConvergenceTimeout(
                f"{node.id} did not become ready within {budget:g}s: {waited.message}",
                node_id=node.id,
                remediation=f"Wait and re-check with 'rollout status {self.env.name}', "
                f"then re-run 'rollout deploy {self.env.name} apply-{node.stage.value}'.",
            ))
        else:
            run.record_failure(ApplyFailure(
                f"{node.id} is degraded: {waited.message}",
                node_id=node.id,
                remediation="Inspect the resource in the cloud console and repair or destroy it.",
            ))

    def _fail(self, run: DeploymentRun, node: ResourceNode, message: str, start: float) -> None:
        self._record(run, node, NodeState.FAILED, "failed", message, start)
        run.record_failure(ApplyFailure(
            message,
            node_id=node.id,
            remediation=f"Fix the error and re-run 'rollout deploy {self.env.name} "
            f"apply-{node.stage.value}'; existing resources are reused.",
        ))

    def _record(
        self,
        run: DeploymentRun,
        node: ResourceNode,
        state: NodeState,
        action: str,
        message: str,
        start: float | None = None,
    ) -> NodeOutcome:
        duration_ms = int((self._clock() - start) * 1000) if start is not None else 0
        outcome = run.record_node(NodeOutcome(
            node_id=node.id,
            stage=node.stage.value,
            kind=node.kind.value,
            resource_name=node.resource_name,
            state=state,
            action=action,
            message=message,
            duration_ms=max(duration_ms, 0),
        ))
        logger.info("%s: %s (%s) %s", node.id, state.value, action, message)
        if self._progress:
            self._progress(outcome)
        return outcome
