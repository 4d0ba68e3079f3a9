"""
Deployment configuration — loaded from rollout.yml.

The environment table is the only place dev, staging and prod differ:
sizing, topology and protection are data consumed by one code path.
"""

from __future__ import annotations

import ipaddress
import re
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

_QUANTITY_RE = re.compile(r"^\d+(\.\d+)?(m|Ki|Mi|Gi|Ti|k|M|G|T)?$")

DEFAULT_APIS = [
    "container.googleapis.com",
    "compute.googleapis.com",
    "certificatemanager.googleapis.com",
    "iam.googleapis.com",
    "iamcredentials.googleapis.com",
    "cloudresourcemanager.googleapis.com",
]

DEFAULT_TOOLS = ["gcloud", "kubectl", "gke-gcloud-auth-plugin"]


class Topology(StrEnum):
    """Cluster placement. Always explicit, never inferred from node counts."""

    ZONAL = "zonal"
    REGIONAL = "regional"


class ProjectSettings(BaseModel):
    """Project-wide identity and cloud location."""

    name: str = "n8n-platform"
    project_id: str
    region: str = "us-central1"
    zone: str = "us-central1-a"
    cluster_name: str = "n8n-cluster"
    domain: str
    namespace: str = "n8n"
    required_apis: list[str] = Field(default_factory=lambda: list(DEFAULT_APIS))
    required_tools: list[str] = Field(default_factory=lambda: list(DEFAULT_TOOLS))


class NetworkSettings(BaseModel):
    """Subnet and secondary ranges for the VPC."""

    subnet_cidr: str = "10.0.0.0/24"
    pods_cidr: str = "10.2.0.0/16"
    services_cidr: str = "10.1.0.0/16"

    @field_validator("subnet_cidr", "pods_cidr", "services_cidr")
    @classmethod
    def _valid_cidr(cls, value: str) -> str:
        try:
            ipaddress.IPv4Network(value)
        except ValueError as e:
            raise ValueError(f"invalid CIDR range '{value}': {e}") from e
        return value


class Sizing(BaseModel):
    """Resource sizing for one environment, with documented bounds."""

    machine_type: str = "e2-medium"
    min_nodes: int = Field(default=1, ge=0, le=10)
    max_nodes: int = Field(default=2, ge=1, le=10)
    disk_size_gb: int = Field(default=20, ge=20, le=500)

    n8n_replicas: int = Field(default=1, ge=1, le=5)
    postgres_replicas: Literal[1] = 1
    storage_gi: int = Field(default=5, ge=1, le=100)

    n8n_image: str = "n8nio/n8n:latest"
    postgres_image: str = "postgres:15"

    n8n_cpu_request: str = "100m"
    n8n_cpu_limit: str = "300m"
    n8n_memory_request: str = "128Mi"
    n8n_memory_limit: str = "384Mi"
    postgres_cpu_request: str = "50m"
    postgres_cpu_limit: str = "150m"
    postgres_memory_request: str = "64Mi"
    postgres_memory_limit: str = "128Mi"

    @field_validator(
        "n8n_cpu_request", "n8n_cpu_limit", "n8n_memory_request", "n8n_memory_limit",
        "postgres_cpu_request", "postgres_cpu_limit",
        "postgres_memory_request", "postgres_memory_limit",
    )
    @classmethod
    def _valid_quantity(cls, value: str) -> str:
        if not _QUANTITY_RE.match(value):
            raise ValueError(f"invalid Kubernetes quantity '{value}'")
        return value

    @model_validator(mode="after")
    def _node_bounds(self) -> Sizing:
        if self.min_nodes > self.max_nodes:
            raise ValueError(
                f"min_nodes ({self.min_nodes}) exceeds max_nodes ({self.max_nodes})"
            )
        return self


class Environment(BaseModel):
    """A deployment environment profile (dev, staging, prod)."""

    name: str
    description: str = ""
    default: bool = False
    protected: bool = False
    topology: Topology = Topology.ZONAL
    deletion_protection: bool = False
    sizing: Sizing = Field(default_factory=Sizing)


class Timeouts(BaseModel):
    """Convergence budgets per resource kind, in seconds."""

    default: float = 300.0
    cluster: float = 1200.0
    node_pool: float = 1200.0
    database: float = 600.0
    workload: float = 600.0
    ingress: float = 600.0
    certificate: float = 1800.0

    poll_interval: float = Field(default=10.0, ge=0)
    max_poll_interval: float = Field(default=60.0, ge=0)
    backoff: float = Field(default=1.5, ge=1.0)

    def for_kind(self, kind: str) -> float:
        """Budget for a resource kind, falling back to the default."""
        value = getattr(self, kind, None)
        if isinstance(value, (int, float)) and kind not in (
            "poll_interval", "max_poll_interval", "backoff",
        ):
            return float(value)
        return self.default


class RolloutConfig(BaseModel):
    """Root configuration — loaded from rollout.yml."""

    version: int = 1

    project: ProjectSettings
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    environments: list[Environment] = Field(default_factory=list)
    timeouts: Timeouts = Field(default_factory=Timeouts)

    def get_environment(self, name: str) -> Environment | None:
        """Look up an environment by name."""
        for env in self.environments:
            if env.name == name:
                return env
        return None

    def default_environment(self) -> Environment | None:
        """Get the default environment, or the first one."""
        for env in self.environments:
            if env.default:
                return env
        return self.environments[0] if self.environments else None


class ResolvedEnvironment(BaseModel):
    """Configuration for one run: project settings joined with one profile."""

    project: ProjectSettings
    network: NetworkSettings
    environment: Environment
    timeouts: Timeouts

    @property
    def name(self) -> str:
        return self.environment.name

    @property
    def prefix(self) -> str:
        """Naming prefix shared by every cloud resource of the environment."""
        return f"{self.environment.name}-{self.project.cluster_name}"

    @property
    def location(self) -> str:
        if self.environment.topology == Topology.REGIONAL:
            return self.project.region
        return self.project.zone

    @property
    def location_flag(self) -> str:
        if self.environment.topology == Topology.REGIONAL:
            return "region"
        return "zone"

    @property
    def kube_context(self) -> str:
        """Context name written by ``gcloud container clusters get-credentials``."""
        return f"gke_{self.project.project_id}_{self.location}_{self.prefix}"
