"""
DeploymentRun — the aggregate of one invocation.

A run is created at invocation start, passed explicitly to every
engine component, and finalized when the executor or teardown guard
returns. It is never persisted as authoritative state: node states are
re-derived from the cloud on every run. Only a summary is appended to
the audit ledger.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from rollout.core.models.resource import NodeState


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


def _new_run_id() -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"run_{stamp}_{uuid.uuid4().hex[:6]}"


class Outcome(StrEnum):
    """Overall result of a run."""

    PENDING = "pending"
    SUCCESS = "success"
    VALIDATION_FAILED = "validation-failed"
    APPLY_FAILED = "apply-failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"


class CheckPhase(StrEnum):
    PRE = "pre-stage"
    POST = "post-stage"


# ── Validation ──────────────────────────────────────────────────────


class CheckResult(BaseModel):
    """Result of one named validation check."""

    name: str
    ok: bool
    reason: str = ""
    warning: bool = False           # advisory: reported, never fails the phase
    remediated: bool = False        # a mutating fix was applied and re-checked

    @classmethod
    def passed(cls, name: str, reason: str = "", **kwargs: Any) -> CheckResult:
        return cls(name=name, ok=True, reason=reason, **kwargs)

    @classmethod
    def failed(cls, name: str, reason: str, **kwargs: Any) -> CheckResult:
        return cls(name=name, ok=False, reason=reason, **kwargs)

    @classmethod
    def warn(cls, name: str, reason: str) -> CheckResult:
        return cls(name=name, ok=True, reason=reason, warning=True)


class ValidationResult(BaseModel):
    """Aggregated result of one validation phase."""

    phase: str = ""
    stage: str = ""
    checks: list[CheckResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.ok for c in self.checks)

    @property
    def failures(self) -> list[str]:
        return [f"{c.name}: {c.reason}" for c in self.checks if not c.ok]

    @property
    def warnings(self) -> list[str]:
        return [f"{c.name}: {c.reason}" for c in self.checks if c.warning]

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "stage": self.stage,
            "passed": self.passed,
            "failures": self.failures,
            "warnings": self.warnings,
            "checks": [c.model_dump() for c in self.checks],
        }


# ── Node outcomes ───────────────────────────────────────────────────


class NodeOutcome(BaseModel):
    """What happened to one node during the run."""

    node_id: str
    stage: str
    kind: str
    resource_name: str = ""
    state: NodeState = NodeState.UNKNOWN
    action: str = ""                 # created, updated, existing, waited, verified, deleted, ...
    message: str = ""
    duration_ms: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class FailureRecord(BaseModel):
    """A failure surfaced to the caller with a next step."""

    kind: str
    node: str | None = None
    message: str
    remediation: str = ""
    blockers: list[str] = Field(default_factory=list)


# ── Run aggregate ───────────────────────────────────────────────────


class DeploymentRun(BaseModel):
    """One invocation of deploy, destroy or status."""

    run_id: str = Field(default_factory=_new_run_id)
    environment: str
    action: str
    target: str
    mock: bool = False

    config: dict[str, Any] = Field(default_factory=dict)

    nodes: list[NodeOutcome] = Field(default_factory=list)
    validations: list[ValidationResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    failures: list[FailureRecord] = Field(default_factory=list)

    outcome: Outcome = Outcome.PENDING
    started_at: str = Field(default_factory=_now_iso)
    ended_at: str | None = None

    # ── Recording ───────────────────────────────────────────────

    def record_node(self, outcome: NodeOutcome) -> NodeOutcome:
        """Record (or replace) the outcome for a node."""
        for i, existing in enumerate(self.nodes):
            if existing.node_id == outcome.node_id:
                self.nodes[i] = outcome
                return outcome
        self.nodes.append(outcome)
        return outcome

    def node(self, node_id: str) -> NodeOutcome | None:
        for outcome in self.nodes:
            if outcome.node_id == node_id:
                return outcome
        return None

    def state_of(self, node_id: str) -> NodeState:
        outcome = self.node(node_id)
        return outcome.state if outcome else NodeState.UNKNOWN

    def record_validation(self, result: ValidationResult) -> None:
        self.validations.append(result)
        self.warnings.extend(result.warnings)

    def record_failure(self, error: Exception) -> None:
        """Record a taxonomy error (or any exception) as a failure."""
        to_dict = getattr(error, "to_dict", None)
        if callable(to_dict):
            data = to_dict()
            self.failures.append(FailureRecord(
                kind=data.get("kind", "error"),
                node=data.get("node"),
                message=data.get("message", str(error)),
                remediation=data.get("remediation", ""),
                blockers=data.get("blockers", []),
            ))
        else:
            self.failures.append(FailureRecord(kind="error", message=str(error)))

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    # ── Queries ─────────────────────────────────────────────────

    def count(self, state: NodeState) -> int:
        return sum(1 for n in self.nodes if n.state == state)

    @property
    def finished(self) -> bool:
        return self.ended_at is not None

    def finalize(self, outcome: Outcome | None = None) -> Outcome:
        """Close the run, deriving the outcome from failures if not given."""
        if outcome is None:
            if not self.failures:
                outcome = Outcome.SUCCESS
            elif any(n.state in (NodeState.READY, NodeState.DELETED) for n in self.nodes):
                outcome = Outcome.PARTIAL
            else:
                outcome = Outcome.APPLY_FAILED
        self.outcome = outcome
        self.ended_at = _now_iso()
        return outcome

    def summary(self) -> dict:
        """Compact summary for the audit ledger."""
        counts: dict[str, int] = {}
        for n in self.nodes:
            counts[n.state.value] = counts.get(n.state.value, 0) + 1
        return {
            "run_id": self.run_id,
            "environment": self.environment,
            "action": self.action,
            "target": self.target,
            "outcome": self.outcome.value,
            "mock": self.mock,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "node_states": counts,
            "failures": [f.model_dump() for f in self.failures],
            "warnings": len(self.warnings),
        }
