"""
Error taxonomy for deployment runs.

Engine components raise these per node and record them on the
DeploymentRun, so one failing branch never hides another. Each error
carries the node it concerns and a human-actionable next step.
"""

from __future__ import annotations


class RolloutError(Exception):
    """Base class for orchestration failures."""

    kind = "error"

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        remediation: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.remediation = remediation

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "node": self.node_id,
            "message": self.message,
            "remediation": self.remediation,
        }


class PreflightFailure(RolloutError):
    """One or more validation checks failed before any mutation."""

    kind = "preflight"

    def __init__(self, failures: list[str], phase: str = ""):
        count = len(failures)
        label = f"{phase} preflight" if phase else "Preflight"
        super().__init__(
            f"{label} failed with {count} error(s)",
            remediation="Fix the reported checks and re-run; no cloud state was changed.",
        )
        self.failures = list(failures)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["failures"] = self.failures
        return data


class ApplyFailure(RolloutError):
    """A create/update call for a node returned an error."""

    kind = "apply"


class ConvergenceTimeout(RolloutError):
    """A node did not reach ready within its budget."""

    kind = "convergence_timeout"

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        remediation: str = "",
        foundational: bool = True,
    ):
        super().__init__(message, node_id=node_id, remediation=remediation)
        self.foundational = foundational


class ProtectedResourceFailure(RolloutError):
    """Deletion blocked by a protection flag that could not be cleared."""

    kind = "protected_resource"


class BlockingDependencyFailure(RolloutError):
    """Destroy requested for a node that still has live dependents."""

    kind = "blocking_dependency"

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        blockers: list[str] | None = None,
        remediation: str = "",
    ):
        super().__init__(message, node_id=node_id, remediation=remediation)
        self.blockers = list(blockers or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["blockers"] = self.blockers
        return data


class DestroyFailure(RolloutError):
    """A delete call failed for a reason other than deletion protection."""

    kind = "destroy"


class RunLockError(RolloutError):
    """Another run already holds the environment lock."""

    kind = "locked"
