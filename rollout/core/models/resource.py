"""
Resource node model — one infrastructure or application unit.

Nodes are static declarations (id, stage, dependencies, desired spec).
Their runtime state is never stored on the node itself: it is
re-derived from the cloud on every run and tracked on the
DeploymentRun.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Stage(StrEnum):
    """A named subset of nodes applied or destroyed together."""

    INFRA = "infra"
    APP = "app"


class Target(StrEnum):
    """What a command operates on: one stage, or both."""

    INFRA = "infra"
    APP = "app"
    ALL = "all"

    @property
    def stages(self) -> tuple[Stage, ...]:
        if self == Target.ALL:
            return (Stage.INFRA, Stage.APP)
        return (Stage(self.value),)


class ResourceKind(StrEnum):
    """Kinds of resources the adapters know how to manage."""

    NETWORK = "network"
    FIREWALL = "firewall"
    ROUTER = "router"
    CLUSTER = "cluster"
    NODE_POOL = "node_pool"
    NAMESPACE = "namespace"
    SECRET = "secret"
    VOLUME_CLAIM = "volume_claim"
    DATABASE = "database"
    WORKLOAD = "workload"
    SERVICE = "service"
    ADDRESS = "address"
    INGRESS = "ingress"
    CERTIFICATE = "certificate"


# Kinds handled by kubectl; everything else goes through gcloud.
KUBERNETES_KINDS = frozenset({
    ResourceKind.NAMESPACE,
    ResourceKind.SECRET,
    ResourceKind.VOLUME_CLAIM,
    ResourceKind.DATABASE,
    ResourceKind.WORKLOAD,
    ResourceKind.SERVICE,
    ResourceKind.INGRESS,
})

# Kinds re-applied on existing resources (kubectl apply is idempotent).
UPDATABLE_KINDS = frozenset({
    ResourceKind.NAMESPACE,
    ResourceKind.DATABASE,
    ResourceKind.WORKLOAD,
    ResourceKind.SERVICE,
    ResourceKind.INGRESS,
})


class NodeState(StrEnum):
    """Observed lifecycle state of a node within a run."""

    ABSENT = "absent"
    CREATING = "creating"
    READY = "ready"
    DEGRADED = "degraded"
    BLOCKED = "blocked"
    FAILED = "failed"
    DELETING = "deleting"
    DELETED = "deleted"
    UNKNOWN = "unknown"


class ProbeStatus(StrEnum):
    """Tri-state readiness verdict."""

    READY = "ready"
    PENDING = "pending"
    DEGRADED = "degraded"


class ProbeResult(BaseModel):
    """Verdict of a readiness probe on one observation."""

    status: ProbeStatus
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return self.status == ProbeStatus.READY

    @classmethod
    def is_ready(cls, message: str = "", **details: Any) -> ProbeResult:
        return cls(status=ProbeStatus.READY, message=message, details=details)

    @classmethod
    def pending(cls, message: str = "", **details: Any) -> ProbeResult:
        return cls(status=ProbeStatus.PENDING, message=message, details=details)

    @classmethod
    def degraded(cls, message: str = "", **details: Any) -> ProbeResult:
        return cls(status=ProbeStatus.DEGRADED, message=message, details=details)


class ResourceNode(BaseModel):
    """A declared infrastructure or application unit.

    ``resource_name`` and ``spec`` come from the catalog, the single
    source of truth for cloud names and desired configuration.
    """

    id: str
    stage: Stage
    kind: ResourceKind
    depends_on: list[str] = Field(default_factory=list)
    resource_name: str = ""
    description: str = ""

    best_effort: bool = False        # convergence failures are warnings
    protected: bool = False          # guarded by a deletion-protection flag
    stateful: bool = False           # destroying it loses data

    spec: dict[str, Any] = Field(default_factory=dict)

    @property
    def adapter(self) -> str:
        return "kubectl" if self.kind in KUBERNETES_KINDS else "gcloud"

    @property
    def updatable(self) -> bool:
        return self.kind in UPDATABLE_KINDS

    @property
    def foundational(self) -> bool:
        return not self.best_effort
