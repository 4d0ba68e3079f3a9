"""
Domain models — Pydantic types for the rollout orchestrator.

All models are re-exported here for convenient access:

    from rollout.core.models import Action, Receipt, ResourceNode, DeploymentRun
"""

from rollout.core.models.action import Action, Receipt
from rollout.core.models.config import (
    Environment,
    NetworkSettings,
    ProjectSettings,
    ResolvedEnvironment,
    RolloutConfig,
    Sizing,
    Timeouts,
    Topology,
)
from rollout.core.models.resource import (
    NodeState,
    ProbeResult,
    ProbeStatus,
    ResourceKind,
    ResourceNode,
    Stage,
    Target,
)
from rollout.core.models.run import (
    CheckResult,
    DeploymentRun,
    FailureRecord,
    NodeOutcome,
    Outcome,
    ValidationResult,
)

__all__ = [
    # action.py
    "Action",
    "CheckResult",
    # run.py
    "DeploymentRun",
    # config.py
    "Environment",
    "FailureRecord",
    "NetworkSettings",
    "NodeOutcome",
    # resource.py
    "NodeState",
    "Outcome",
    "ProbeResult",
    "ProbeStatus",
    "ProjectSettings",
    "Receipt",
    "ResolvedEnvironment",
    "ResourceKind",
    "ResourceNode",
    "RolloutConfig",
    "Sizing",
    "Stage",
    "Target",
    "Timeouts",
    "Topology",
    "ValidationResult",
]
