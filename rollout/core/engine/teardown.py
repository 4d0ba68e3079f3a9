"""
Teardown guard — destroy a stage's nodes, dependents first.

Before any delete the guard surveys the destroy order: which in-scope
nodes exist, and which outside dependents are still live. A live
outside dependent blocks its branch (the node it uses plus that node's
own in-scope dependencies), and any blocked branch refuses the whole
destroy before the first delete. State-bearing nodes go through the
data-loss gate once per run.

Protected nodes follow one fixed cycle:
    delete → rejected → clear flag → re-verify → delete once more
A second rejection is fatal for the node.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from rollout.core.engine.cloud import CloudClient
from rollout.core.engine.confirm import Confirm, confirm_data_loss
from rollout.core.engine.graph import DestroyOrder, ResourceGraph
from rollout.core.errors import (
    BlockingDependencyFailure,
    DestroyFailure,
    ProtectedResourceFailure,
)
from rollout.core.models.action import Receipt
from rollout.core.models.resource import (
    KUBERNETES_KINDS,
    NodeState,
    ProbeResult,
    ResourceKind,
    ResourceNode,
    Target,
)
from rollout.core.models.run import DeploymentRun, NodeOutcome
from rollout.core.reliability.polling import WaitStatus, wait_until

logger = logging.getLogger(__name__)

# In-scope states that let a dependency be deleted after its dependent.
_GONE = (NodeState.DELETED, NodeState.ABSENT)


@dataclass
class Survey:
    """Observed state of a destroy order, taken before any delete."""

    order: DestroyOrder
    present: dict[str, bool] = field(default_factory=dict)
    live_dependents: list[str] = field(default_factory=list)
    blocked: dict[str, list[str]] = field(default_factory=dict)

    @property
    def to_delete(self) -> list[ResourceNode]:
        """Present nodes that are not blocked, in destroy order."""
        return [
            n for n in self.order.nodes
            if self.present.get(n.id) and n.id not in self.blocked
        ]

    @property
    def stateful(self) -> list[ResourceNode]:
        return [n for n in self.to_delete if n.stateful]

    @property
    def nothing_to_do(self) -> bool:
        return not self.to_delete and not self.blocked

    def to_dict(self) -> dict:
        return {
            "target": self.order.target.value,
            "order": self.order.ids,
            "present": [nid for nid in self.order.ids if self.present.get(nid)],
            "live_dependents": self.live_dependents,
            "blocked": self.blocked,
        }


class TeardownGuard:
    """Destroys stages of the resource graph."""

    def __init__(
        self,
        cloud: CloudClient,
        graph: ResourceGraph,
        confirm: Confirm,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        progress: Callable[[NodeOutcome], None] | None = None,
    ):
        self.cloud = cloud
        self.graph = graph
        self.env = cloud.env
        self.confirm = confirm
        self._clock = clock
        self._sleep = sleep
        self._progress = progress
        self._cluster_gone: bool | None = None

    # ── Survey ──────────────────────────────────────────────────

    def survey(self, target: Target) -> Survey:
        """Describe every node involved in destroying ``target``."""
        order = self.graph.order_for_destroy(target)
        survey = Survey(order=order)

        for node in order.nodes:
            survey.present[node.id] = self._is_live(node)

        for ext_id in order.dependents:
            if self._is_live(self.graph.get(ext_id)):
                survey.live_dependents.append(ext_id)

        survey.blocked = self.graph.blocked_branches(order, survey.live_dependents)
        logger.info(
            "Destroy survey for %s/%s: %d present, blocked=%s",
            self.env.name, target.value,
            sum(1 for v in survey.present.values() if v), survey.blocked,
        )
        return survey

    def _is_live(self, node: ResourceNode) -> bool:
        """Whether a node exists; unknown counts as live."""
        if node.kind in KUBERNETES_KINDS and self._cluster_unreachable():
            return False
        receipt = self.cloud.describe(node)
        if receipt.failed:
            logger.warning("Cannot confirm %s is gone (%s); treating it as live",
                           node.id, receipt.error)
            return True
        return receipt.present

    def _cluster_unreachable(self) -> bool:
        """True once credentials fail because the cluster no longer exists."""
        if self._cluster_gone is None:
            receipt = self.cloud.connect()
            self._cluster_gone = receipt.failed and receipt.not_found
        return self._cluster_gone

    # ── Destroy ─────────────────────────────────────────────────

    def destroy(self, run: DeploymentRun, target: Target, survey: Survey | None = None) -> bool:
        """Destroy ``target``'s nodes, recording outcomes on ``run``.

        Returns False when the data-loss gate was declined; nothing has
        been deleted in that case. A survey with blocked nodes is
        refused outright, also without deleting anything.
        """
        survey = survey or self.survey(target)
        if survey.blocked:
            self.refuse(run, survey)
            return True

        stateful = survey.stateful
        if stateful and not confirm_data_loss(self.confirm, self.env, stateful):
            logger.info("Data-loss confirmation declined; nothing deleted")
            return False

        scope = set(survey.order.ids)
        for node in survey.order.nodes:
            waiting_on = [
                d for d in self.graph.dependents(node.id)
                if d in scope and run.state_of(d) not in _GONE
            ]
            if waiting_on:
                self._record(run, node, NodeState.BLOCKED, "kept",
                             f"dependent not deleted: {', '.join(waiting_on)}")
                continue

            if not survey.present.get(node.id):
                self._record(run, node, NodeState.ABSENT, "absent", "already absent")
                continue

            self._delete_node(run, node)
        return True

    def refuse(self, run: DeploymentRun, survey: Survey) -> None:
        """Record each blocked node and its BlockingDependencyFailure."""
        logger.info("Destroy of %s refused: %s still in use",
                    self.env.name, ", ".join(survey.blocked))
        for node_id, blockers in survey.blocked.items():
            node = self.graph.get(node_id)
            self._record(run, node, NodeState.BLOCKED, "kept",
                         f"still used by {', '.join(blockers)}")
            run.record_failure(BlockingDependencyFailure(
                f"{node_id} cannot be destroyed while {', '.join(blockers)} still exist",
                node_id=node_id,
                blockers=blockers,
                remediation=f"Destroy the dependents first: "
                f"'rollout destroy {self.env.name} {self._stage_of(blockers)}'.",
            ))

    def _stage_of(self, node_ids: list[str]) -> str:
        stages = {self.graph.get(nid).stage.value for nid in node_ids}
        return stages.pop() if len(stages) == 1 else "all"

    def _delete_node(self, run: DeploymentRun, node: ResourceNode) -> None:
        start = self._clock()
        logger.info("Deleting %s (%s)", node.id, node.resource_name)
        receipt = self.cloud.delete(node)

        if receipt.failed and receipt.deletion_protected and node.protected:
            receipt, note = self._clear_and_retry(node)
            if receipt.failed:
                self._record(run, node, NodeState.FAILED, "failed", receipt.error or "", start)
                message = f"{node.id} is still deletion-protected after one retry: {receipt.error}"
                run.record_failure(ProtectedResourceFailure(
                    f"{message} ({note})" if note else message,
                    node_id=node.id,
                    remediation=self._manual_delete(node),
                ))
                return

        if receipt.failed:
            self._record(run, node, NodeState.FAILED, "failed", receipt.error or "", start)
            run.record_failure(DestroyFailure(
                f"delete {node.resource_name} failed: {receipt.error}",
                node_id=node.id,
                remediation=f"Re-run 'rollout destroy {self.env.name} {node.stage.value}'; "
                f"already deleted resources are skipped.",
            ))
            return

        if receipt.not_found:
            self._record(run, node, NodeState.ABSENT, "absent", "already absent", start)
            return

        self._await_gone(run, node, start)

    def _clear_and_retry(self, node: ResourceNode) -> tuple[Receipt, str]:
        """Clear the protection flag, re-verify it, and delete exactly once more.

        Returns the final delete receipt and what the clear and re-verify
        steps found (empty when the flag was confirmed off).
        """
        logger.warning("%s is deletion-protected; clearing the flag", node.id)
        cleared = self.cloud.update(node, deletion_protection=False)
        if cleared.failed:
            note = f"flag clear failed: {cleared.error}"
        else:
            verify = self.cloud.describe(node)
            if verify.failed:
                note = f"re-verify failed: {verify.error}"
            elif verify.observation.get("deletion_protection"):
                note = "re-verify: deletion protection still enabled"
            else:
                note = ""
        if note:
            logger.warning("%s: %s", node.id, note)
        return self.cloud.delete(node), note

    def _manual_delete(self, node: ResourceNode) -> str:
        if node.kind == ResourceKind.CLUSTER:
            return (
                f"gcloud container clusters update {node.resource_name} "
                f"--no-deletion-protection --{self.env.location_flag}={self.env.location} "
                f"--project={self.env.project.project_id} && "
                f"gcloud container clusters delete {node.resource_name} "
                f"--{self.env.location_flag}={self.env.location} "
                f"--project={self.env.project.project_id}"
            )
        return f"Disable deletion protection on {node.resource_name} in the console, then re-run."

    def _await_gone(self, run: DeploymentRun, node: ResourceNode, start: float) -> None:
        timeouts = self.env.timeouts
        budget = timeouts.for_kind(node.kind.value)

        def gone() -> ProbeResult:
            receipt = self.cloud.describe(node)
            if receipt.ok and not receipt.present:
                return ProbeResult.is_ready("deleted")
            return ProbeResult.pending("still deleting")

        waited = wait_until(
            gone,
            timeout=budget,
            interval=timeouts.poll_interval,
            backoff=timeouts.backoff,
            max_interval=timeouts.max_poll_interval,
            clock=self._clock,
            sleep=self._sleep,
        )
        if waited.status == WaitStatus.READY:
            self._record(run, node, NodeState.DELETED, "deleted", "", start)
            return

        self._record(run, node, NodeState.DELETING, "deleted", waited.message, start)
        run.record_failure(DestroyFailure(
            f"{node.id} still present {budget:g}s after delete",
            node_id=node.id,
            remediation=f"Wait and re-run 'rollout destroy {self.env.name} {node.stage.value}'.",
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
        logger.info("%s: %s %s", node.id, state.value, message)
        if self._progress:
            self._progress(outcome)
        return outcome
