"""
Destroy use case — tear down one or both stages of an environment.

Preflight (tools, auth, project), survey the destroy order, confirm
with the environment's phrase, then hand over to the teardown guard.
A survey with live outside dependents is rejected before the prompt.
Destroying what is already gone is a successful no-op.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from rollout.adapters.registry import AdapterRegistry
from rollout.core.config.loader import ConfigError
from rollout.core.engine.confirm import Confirm, confirm_destroy, interactive
from rollout.core.engine.preflight import Preflight
from rollout.core.engine.teardown import Survey, TeardownGuard
from rollout.core.errors import PreflightFailure, RunLockError
from rollout.core.models.resource import Target
from rollout.core.models.run import DeploymentRun, NodeOutcome, Outcome
from rollout.core.persistence.audit import AuditWriter
from rollout.core.reliability.run_lock import RunLock, lock_path
from rollout.core.use_cases.session import EXIT_VALIDATION, exit_code_for, open_session

logger = logging.getLogger(__name__)


@dataclass
class DestroyResult:
    """Result of a destroy invocation."""

    target: str = ""
    run: DeploymentRun | None = None
    survey: Survey | None = None
    error: str | None = None
    exit_code: int = 0

    @property
    def outcome(self) -> Outcome | None:
        return self.run.outcome if self.run else None

    def to_dict(self) -> dict:
        result: dict = {"target": self.target, "exit_code": self.exit_code}
        if self.error:
            result["error"] = self.error
            return result
        if self.survey:
            result["survey"] = self.survey.to_dict()
        if self.run:
            result["run"] = self.run.model_dump(mode="json", exclude={"config"})
        return result


def destroy(
    environment: str | None,
    target: str = "all",
    config_path: Path | None = None,
    mock: bool = False,
    confirm: Confirm = interactive,
    registry: AdapterRegistry | None = None,
    progress: Callable[[NodeOutcome], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> DestroyResult:
    """Destroy a target (all, infra or app) of an environment.

    Returns:
        DestroyResult with the finished run and its exit code.
    """
    result = DestroyResult(target=target)

    try:
        resolved_target = Target(target)
    except ValueError:
        result.error = f"Unknown destroy target '{target}'. Choose from: all, infra, app"
        result.exit_code = EXIT_VALIDATION
        return result

    try:
        session = open_session(environment, config_path, mock=mock, registry=registry)
    except ConfigError as e:
        result.error = str(e)
        result.exit_code = EXIT_VALIDATION
        return result

    run = session.new_run("destroy", resolved_target.value)
    result.run = run
    lock = RunLock(lock_path(session.root, session.env.name), "destroy")
    guard = TeardownGuard(session.cloud, session.graph, confirm,
                          clock=clock, sleep=sleep, progress=progress)

    try:
        lock.acquire()

        validation = Preflight(session.cloud, session.graph).before_destroy()
        run.record_validation(validation)
        if not validation.passed:
            run.record_failure(PreflightFailure(validation.failures, phase="destroy"))
            run.finalize(Outcome.VALIDATION_FAILED)
        else:
            survey = guard.survey(resolved_target)
            result.survey = survey
            to_delete = survey.to_delete

            if survey.blocked:
                guard.refuse(run, survey)
                run.finalize(Outcome.VALIDATION_FAILED)
            elif to_delete and not confirm_destroy(confirm, session.env,
                                                 resolved_target.value, to_delete):
                logger.info("Destroy of %s cancelled at confirmation", session.env.name)
                run.finalize(Outcome.CANCELLED)
            elif not guard.destroy(run, resolved_target, survey):
                run.finalize(Outcome.CANCELLED)
            else:
                if survey.nothing_to_do:
                    run.warn(f"nothing to destroy for '{resolved_target.value}'")
                run.finalize()
    except RunLockError as e:
        result.error = e.message
        run.record_failure(e)
        run.finalize(Outcome.VALIDATION_FAILED)
    except KeyboardInterrupt:
        logger.warning("Destroy of %s interrupted", session.env.name)
        run.finalize(Outcome.INTERRUPTED)
    finally:
        lock.release()
        if not run.finished:
            run.finalize()
        AuditWriter(project_root=session.root).record(run)

    result.exit_code = exit_code_for(run.outcome)
    return result
