"""
Deploy use case — plan or apply one or both stages of an environment.

    plan-infra | plan-app | plan     → preflight + plan, nothing mutated
    apply-infra | apply-app | apply  → preflight → plan → confirm →
                                       apply stage → post-stage checks
                                       (infra before app for ``apply``)

The plan is written to a disposable run-plan artifact for display and
removed once the apply finishes. Every run ends with one audit entry.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from rollout.adapters.registry import AdapterRegistry
from rollout.core.config.loader import ConfigError
from rollout.core.engine.confirm import Confirm, confirm_deploy, interactive
from rollout.core.engine.executor import Plan, StageExecutor
from rollout.core.engine.preflight import Preflight
from rollout.core.errors import PreflightFailure, RunLockError
from rollout.core.models.resource import Stage, Target
from rollout.core.models.run import DeploymentRun, NodeOutcome, Outcome
from rollout.core.persistence.audit import AuditWriter
from rollout.core.persistence.plan_file import discard_plan, plan_path, save_plan
from rollout.core.reliability.run_lock import RunLock, lock_path
from rollout.core.use_cases.session import (
    EXIT_VALIDATION,
    Session,
    exit_code_for,
    open_session,
)

logger = logging.getLogger(__name__)

# action → (target, mutating)
DEPLOY_ACTIONS: dict[str, tuple[Target, bool]] = {
    "plan-infra": (Target.INFRA, False),
    "apply-infra": (Target.INFRA, True),
    "plan-app": (Target.APP, False),
    "apply-app": (Target.APP, True),
    "plan": (Target.ALL, False),
    "apply": (Target.ALL, True),
}


@dataclass
class DeployResult:
    """Result of a deploy invocation."""

    action: str = ""
    run: DeploymentRun | None = None
    plan: Plan | None = None
    plan_path: Path | None = None
    error: str | None = None
    exit_code: int = 0

    @property
    def outcome(self) -> Outcome | None:
        return self.run.outcome if self.run else None

    def to_dict(self) -> dict:
        result: dict = {"action": self.action, "exit_code": self.exit_code}
        if self.error:
            result["error"] = self.error
            return result
        if self.plan:
            result["plan"] = self.plan.to_dict()
        if self.plan_path:
            result["plan_path"] = str(self.plan_path)
        if self.run:
            result["run"] = self.run.model_dump(mode="json", exclude={"config"})
        return result


def _preflight(run: DeploymentRun, preflight: Preflight, stage: Stage) -> bool:
    validation = preflight.before(stage)
    run.record_validation(validation)
    if validation.passed:
        return True
    run.record_failure(PreflightFailure(validation.failures, phase=stage.value))
    return False


def _post_checks(run: DeploymentRun, preflight: Preflight, stage: Stage) -> None:
    validation = preflight.after(stage)
    run.record_validation(validation)
    if not validation.passed:
        run.record_failure(PreflightFailure(validation.failures, phase=f"{stage.value} post-stage"))


def _summary(plan: Plan) -> str:
    lines = [
        f"  {step.action:<7} {step.node_id} ({step.resource_name})"
        for step in plan.steps if not step.verify_only
    ]
    return "\n".join(lines)


def deploy(
    environment: str | None,
    action: str,
    config_path: Path | None = None,
    mock: bool = False,
    confirm: Confirm = interactive,
    registry: AdapterRegistry | None = None,
    progress: Callable[[NodeOutcome], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> DeployResult:
    """Plan or apply stages of an environment.

    Args:
        environment: Environment name (None = default environment).
        action: One of DEPLOY_ACTIONS.
        config_path: Optional explicit path to rollout.yml.
        mock: Use the simulated cloud.
        confirm: Confirmation gate for apply actions.
        registry: Optional pre-configured adapter registry.
        progress: Called with each node outcome as it is recorded.

    Returns:
        DeployResult with the finished run and its exit code.
    """
    result = DeployResult(action=action)

    if action not in DEPLOY_ACTIONS:
        result.error = (
            f"Unknown deploy action '{action}'. "
            f"Choose from: {', '.join(DEPLOY_ACTIONS)}"
        )
        result.exit_code = EXIT_VALIDATION
        return result
    target, mutating = DEPLOY_ACTIONS[action]

    try:
        session = open_session(environment, config_path, mock=mock, registry=registry)
    except ConfigError as e:
        result.error = str(e)
        result.exit_code = EXIT_VALIDATION
        return result

    run = session.new_run(action, target.value)
    result.run = run
    lock = RunLock(lock_path(session.root, session.env.name), action) if mutating else None

    try:
        if lock:
            lock.acquire()
        _run_deploy(session, run, result, target, mutating, confirm, progress, clock, sleep)
    except RunLockError as e:
        result.error = e.message
        run.record_failure(e)
        run.finalize(Outcome.VALIDATION_FAILED)
    except KeyboardInterrupt:
        logger.warning("Deploy of %s interrupted", session.env.name)
        run.finalize(Outcome.INTERRUPTED)
    finally:
        if lock:
            lock.release()
        if mutating and result.plan_path:
            discard_plan(result.plan_path)
        if not run.finished:
            run.finalize()
        AuditWriter(project_root=session.root).record(run)

    result.exit_code = exit_code_for(run.outcome)
    return result


def _run_deploy(
    session: Session,
    run: DeploymentRun,
    result: DeployResult,
    target: Target,
    mutating: bool,
    confirm: Confirm,
    progress: Callable[[NodeOutcome], None] | None,
    clock: Callable[[], float],
    sleep: Callable[[float], None],
) -> None:
    preflight = Preflight(session.cloud, session.graph)
    executor = StageExecutor(session.cloud, session.graph,
                             clock=clock, sleep=sleep, progress=progress)
    stages = target.stages

    # App checks need infra to be up; when both are planned, only infra is checked now.
    if not _preflight(run, preflight, stages[0]):
        run.finalize(Outcome.VALIDATION_FAILED)
        return

    plan = executor.plan(target)
    result.plan = plan
    result.plan_path = save_plan(
        plan.to_dict(), plan_path(session.root, session.env.name, target.value),
    )

    if not mutating:
        if len(stages) > 1:
            run.warn("app preflight runs once the infra stage is applied")
        run.finalize(Outcome.SUCCESS)
        return

    if not confirm_deploy(confirm, session.env, _summary(plan)):
        logger.info("Deploy of %s cancelled at confirmation", session.env.name)
        run.finalize(Outcome.CANCELLED)
        return

    for i, stage in enumerate(stages):
        if i > 0 and not _preflight(run, preflight, stage):
            break
        executor.apply(run, Target(stage.value))
        _post_checks(run, preflight, stage)
        if run.failures:
            break
