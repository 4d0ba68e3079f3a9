"""
Resource catalog — the canonical registry of nodes and their cloud names.

Every component derives resource names from here. Nothing else in the
code base concatenates environment, cluster and suffix strings.
"""

from __future__ import annotations

import logging
from typing import Any

from rollout.core.engine.graph import ResourceGraph
from rollout.core.models.config import ResolvedEnvironment, Topology
from rollout.core.models.resource import ResourceKind, ResourceNode, Stage

logger = logging.getLogger(__name__)

# Google front-end health-check and IAP ranges.
HEALTH_CHECK_RANGES = ["130.211.0.0/22", "35.191.0.0/16"]
IAP_SSH_RANGE = "35.235.240.0/20"

POOL_NAME = "n8n-node-pool"
PODS_RANGE = "pods"
SERVICES_RANGE = "services"


class ResourceNames:
    """Cloud names for one environment, all derived from one prefix."""

    def __init__(self, env: ResolvedEnvironment):
        self.prefix = env.prefix
        self.vpc = f"{self.prefix}-n8n-vpc"
        self.subnet = f"{self.prefix}-n8n-subnet"
        self.router = f"{self.vpc}-router"
        self.nat = f"{self.vpc}-nat"
        self.firewall_rules = [
            f"{self.vpc}-allow-internal",
            f"{self.vpc}-allow-ssh",
            f"{self.vpc}-allow-health-check",
        ]
        self.cluster = self.prefix
        self.node_pool = POOL_NAME
        self.namespace = env.project.namespace
        self.postgres_secret = "postgres-secret"
        self.n8n_secret = "n8n-secrets"
        self.volume_claim = "n8n-claim0"
        self.database = "postgres"
        self.database_service = "postgres-service"
        self.workload = "n8n-deployment"
        self.service = "n8n-service"
        self.static_ip = f"{self.prefix}-n8n-static-ip"
        self.ingress = "n8n-ingress"
        self.certificate = f"{self.prefix}-n8n-ssl-cert"


def _common(env: ResolvedEnvironment) -> dict[str, Any]:
    return {
        "project_id": env.project.project_id,
        "region": env.project.region,
        "location": env.location,
        "location_flag": env.location_flag,
    }


def _kube(env: ResolvedEnvironment, names: ResourceNames) -> dict[str, Any]:
    return {
        "context": env.kube_context,
        "namespace": names.namespace,
    }


def build_nodes(env: ResolvedEnvironment) -> list[ResourceNode]:
    """Declare every resource node for an environment, in declaration order."""
    names = ResourceNames(env)
    sizing = env.environment.sizing
    net = env.network
    common = _common(env)
    kube = _kube(env, names)

    return [
        # ── Infra ───────────────────────────────────────────────
        ResourceNode(
            id="network", stage=Stage.INFRA, kind=ResourceKind.NETWORK,
            resource_name=names.vpc,
            description="VPC network and subnet with pod/service ranges",
            spec={
                **common,
                "subnet": names.subnet,
                "subnet_cidr": net.subnet_cidr,
                "secondary_ranges": {
                    PODS_RANGE: net.pods_cidr,
                    SERVICES_RANGE: net.services_cidr,
                },
            },
        ),
        ResourceNode(
            id="firewall", stage=Stage.INFRA, kind=ResourceKind.FIREWALL,
            depends_on=["network"],
            resource_name=names.firewall_rules[0],
            description="Internal, SSH and health-check firewall rules",
            spec={
                **common,
                "network": names.vpc,
                "rules": [
                    {
                        "name": names.firewall_rules[0],
                        "allow": "tcp,udp,icmp",
                        "source_ranges": [net.subnet_cidr, net.pods_cidr, net.services_cidr],
                    },
                    {
                        "name": names.firewall_rules[1],
                        "allow": "tcp:22",
                        "source_ranges": [IAP_SSH_RANGE],
                    },
                    {
                        "name": names.firewall_rules[2],
                        "allow": "tcp",
                        "source_ranges": list(HEALTH_CHECK_RANGES),
                    },
                ],
            },
        ),
        ResourceNode(
            id="router", stage=Stage.INFRA, kind=ResourceKind.ROUTER,
            depends_on=["network"],
            resource_name=names.router,
            description="Cloud Router with NAT for private nodes",
            spec={**common, "network": names.vpc, "nat": names.nat},
        ),
        ResourceNode(
            id="cluster", stage=Stage.INFRA, kind=ResourceKind.CLUSTER,
            depends_on=["network", "router"],
            resource_name=names.cluster,
            description=f"GKE cluster ({env.environment.topology.value})",
            protected=True,
            spec={
                **common,
                "network": names.vpc,
                "subnet": names.subnet,
                "pods_range": PODS_RANGE,
                "services_range": SERVICES_RANGE,
                "regional": env.environment.topology == Topology.REGIONAL,
                "deletion_protection": env.environment.deletion_protection,
            },
        ),
        ResourceNode(
            id="node-pool", stage=Stage.INFRA, kind=ResourceKind.NODE_POOL,
            depends_on=["cluster"],
            resource_name=names.node_pool,
            description="Autoscaling node pool",
            spec={
                **common,
                "cluster": names.cluster,
                "machine_type": sizing.machine_type,
                "min_nodes": sizing.min_nodes,
                "max_nodes": sizing.max_nodes,
                "disk_size_gb": sizing.disk_size_gb,
                "context": env.kube_context,
            },
        ),
        # ── App ─────────────────────────────────────────────────
        ResourceNode(
            id="namespace", stage=Stage.APP, kind=ResourceKind.NAMESPACE,
            depends_on=["node-pool"],
            resource_name=names.namespace,
            spec={**kube, "environment": env.name},
        ),
        ResourceNode(
            id="secrets", stage=Stage.APP, kind=ResourceKind.SECRET,
            depends_on=["namespace"],
            resource_name=names.n8n_secret,
            description="PostgreSQL and n8n credentials",
            spec={
                **kube,
                "postgres_secret": names.postgres_secret,
                "n8n_secret": names.n8n_secret,
                "database_host": names.database_service,
            },
        ),
        ResourceNode(
            id="storage", stage=Stage.APP, kind=ResourceKind.VOLUME_CLAIM,
            depends_on=["namespace"],
            resource_name=names.volume_claim,
            description="n8n data volume",
            stateful=True,
            spec={**kube, "storage_gi": sizing.storage_gi},
        ),
        ResourceNode(
            id="database", stage=Stage.APP, kind=ResourceKind.DATABASE,
            depends_on=["secrets"],
            resource_name=names.database,
            description="PostgreSQL StatefulSet and service",
            stateful=True,
            spec={
                **kube,
                "service": names.database_service,
                "secret": names.postgres_secret,
                "image": sizing.postgres_image,
                "replicas": sizing.postgres_replicas,
                "storage_gi": sizing.storage_gi,
                "resources": {
                    "requests": {
                        "cpu": sizing.postgres_cpu_request,
                        "memory": sizing.postgres_memory_request,
                    },
                    "limits": {
                        "cpu": sizing.postgres_cpu_limit,
                        "memory": sizing.postgres_memory_limit,
                    },
                },
            },
        ),
        ResourceNode(
            id="workload", stage=Stage.APP, kind=ResourceKind.WORKLOAD,
            depends_on=["database", "secrets", "storage"],
            resource_name=names.workload,
            description="n8n deployment",
            spec={
                **kube,
                "image": sizing.n8n_image,
                "replicas": sizing.n8n_replicas,
                "secret": names.n8n_secret,
                "volume_claim": names.volume_claim,
                "domain": env.project.domain,
                "resources": {
                    "requests": {
                        "cpu": sizing.n8n_cpu_request,
                        "memory": sizing.n8n_memory_request,
                    },
                    "limits": {
                        "cpu": sizing.n8n_cpu_limit,
                        "memory": sizing.n8n_memory_limit,
                    },
                },
            },
        ),
        ResourceNode(
            id="service", stage=Stage.APP, kind=ResourceKind.SERVICE,
            depends_on=["workload"],
            resource_name=names.service,
            spec={**kube, "port": 80, "target_port": 5678},
        ),
        ResourceNode(
            id="static-ip", stage=Stage.APP, kind=ResourceKind.ADDRESS,
            depends_on=["network"],
            resource_name=names.static_ip,
            description="Global static IP for the load balancer",
            spec={**common},
        ),
        ResourceNode(
            id="ingress", stage=Stage.APP, kind=ResourceKind.INGRESS,
            depends_on=["service", "static-ip"],
            resource_name=names.ingress,
            best_effort=True,
            spec={
                **kube,
                "service": names.service,
                "static_ip": names.static_ip,
                "certificate": names.certificate,
                "domain": env.project.domain,
            },
        ),
        ResourceNode(
            id="certificate", stage=Stage.APP, kind=ResourceKind.CERTIFICATE,
            depends_on=["static-ip", "ingress"],
            resource_name=names.certificate,
            description="Google-managed SSL certificate",
            best_effort=True,
            spec={**common, "domains": [env.project.domain]},
        ),
    ]


def build_graph(env: ResolvedEnvironment) -> ResourceGraph:
    """Build and validate the resource graph for an environment."""
    graph = ResourceGraph(build_nodes(env))
    logger.debug("Resource graph for %s: %d nodes", env.name, len(graph))
    return graph
