"""
Kubernetes manifests for the n8n application stage.

Each builder takes the node params (resource name plus catalog spec)
and returns a list of manifest dicts ready for ``yaml.safe_dump_all``.
"""

from __future__ import annotations

import json
import secrets
from typing import Any

import yaml

MANAGED_BY = "rollout"
N8N_PORT = 5678
POSTGRES_PORT = 5432
POSTGRES_DB = "n8n"
POSTGRES_USER = "n8n"


def _labels(app: str) -> dict[str, str]:
    return {
        "app": app,
        "app.kubernetes.io/managed-by": MANAGED_BY,
    }


def _meta(name: str, app: str, p: dict, **extra: Any) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "name": name,
        "namespace": p["namespace"],
        "labels": _labels(app),
    }
    meta.update(extra)
    return meta


def dump(manifests: list[dict]) -> str:
    """Serialize manifests as a multi-document YAML stream."""
    return yaml.safe_dump_all(manifests, sort_keys=False)


def generate_password(length: int = 24) -> str:
    return secrets.token_urlsafe(length)


# ── Namespace ───────────────────────────────────────────────────────


def namespace(p: dict) -> list[dict]:
    return [{
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": p["name"],
            "labels": {
                "app.kubernetes.io/managed-by": MANAGED_BY,
                "environment": p.get("environment", ""),
            },
        },
    }]


# ── Secrets ─────────────────────────────────────────────────────────


def secrets_pair(p: dict, db_password: str | None = None) -> list[dict]:
    """PostgreSQL and n8n secrets sharing one database password.

    ``db_password`` reuses an existing password so a partially created
    pair stays consistent.
    """
    db_password = db_password or generate_password()
    postgres = {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": _meta(p["postgres_secret"], "postgres", p),
        "stringData": {
            "POSTGRES_DB": POSTGRES_DB,
            "POSTGRES_USER": POSTGRES_USER,
            "POSTGRES_PASSWORD": db_password,
        },
    }
    n8n = {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": _meta(p["n8n_secret"], "n8n", p),
        "stringData": {
            "N8N_BASIC_AUTH_USER": "admin",
            "N8N_BASIC_AUTH_PASSWORD": generate_password(16),
            "N8N_ENCRYPTION_KEY": generate_password(32),
            "DB_POSTGRESDB_HOST": p["database_host"],
            "DB_POSTGRESDB_PORT": str(POSTGRES_PORT),
            "DB_POSTGRESDB_DATABASE": POSTGRES_DB,
            "DB_POSTGRESDB_USER": POSTGRES_USER,
            "DB_POSTGRESDB_PASSWORD": db_password,
        },
    }
    return [postgres, n8n]


# ── Storage ─────────────────────────────────────────────────────────


def volume_claim(p: dict) -> list[dict]:
    return [{
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": _meta(p["name"], "n8n", p),
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": f"{p['storage_gi']}Gi"}},
        },
    }]


# ── PostgreSQL ──────────────────────────────────────────────────────


def database(p: dict) -> list[dict]:
    name = p["name"]
    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _meta(p["service"], name, p),
        "spec": {
            "clusterIP": "None",
            "selector": {"app": name},
            "ports": [{"name": "postgres", "port": POSTGRES_PORT}],
        },
    }
    statefulset = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _meta(name, name, p),
        "spec": {
            "serviceName": p["service"],
            "replicas": p["replicas"],
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": _labels(name)},
                "spec": {
                    "containers": [{
                        "name": name,
                        "image": p["image"],
                        "ports": [{"containerPort": POSTGRES_PORT}],
                        "envFrom": [{"secretRef": {"name": p["secret"]}}],
                        "env": [{"name": "PGDATA", "value": "/var/lib/postgresql/data/pgdata"}],
                        "resources": p["resources"],
                        "readinessProbe": {
                            "exec": {"command": ["pg_isready", "-U", POSTGRES_USER]},
                            "initialDelaySeconds": 10,
                            "periodSeconds": 10,
                        },
                        "volumeMounts": [{
                            "name": "postgres-data",
                            "mountPath": "/var/lib/postgresql/data",
                        }],
                    }],
                },
            },
            "volumeClaimTemplates": [{
                "metadata": {"name": "postgres-data"},
                "spec": {
                    "accessModes": ["ReadWriteOnce"],
                    "resources": {"requests": {"storage": f"{p['storage_gi']}Gi"}},
                },
            }],
        },
    }
    return [service, statefulset]


# ── n8n ─────────────────────────────────────────────────────────────


def workload(p: dict) -> list[dict]:
    name = p["name"]
    domain = p.get("domain", "")
    return [{
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _meta(name, "n8n", p),
        "spec": {
            "replicas": p["replicas"],
            "selector": {"matchLabels": {"app": "n8n"}},
            # A ReadWriteOnce volume cannot be mounted by two pods during a rollout.
            "strategy": {"type": "Recreate"},
            "template": {
                "metadata": {"labels": _labels("n8n")},
                "spec": {
                    "securityContext": {"fsGroup": 1000},
                    "containers": [{
                        "name": "n8n",
                        "image": p["image"],
                        "ports": [{"containerPort": N8N_PORT}],
                        "envFrom": [{"secretRef": {"name": p["secret"]}}],
                        "env": [
                            {"name": "DB_TYPE", "value": "postgresdb"},
                            {"name": "N8N_BASIC_AUTH_ACTIVE", "value": "true"},
                            {"name": "N8N_HOST", "value": domain},
                            {"name": "N8N_PORT", "value": str(N8N_PORT)},
                            {"name": "N8N_PROTOCOL", "value": "https"},
                            {"name": "WEBHOOK_URL", "value": f"https://{domain}/"},
                        ],
                        "resources": p["resources"],
                        "readinessProbe": {
                            "httpGet": {"path": "/healthz", "port": N8N_PORT},
                            "initialDelaySeconds": 15,
                            "periodSeconds": 10,
                        },
                        "volumeMounts": [{
                            "name": "n8n-data",
                            "mountPath": "/home/node/.n8n",
                        }],
                    }],
                    "volumes": [{
                        "name": "n8n-data",
                        "persistentVolumeClaim": {"claimName": p["volume_claim"]},
                    }],
                },
            },
        },
    }]


def service(p: dict) -> list[dict]:
    return [{
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _meta(
            p["name"], "n8n", p,
            annotations={"cloud.google.com/neg": json.dumps({"ingress": True})},
        ),
        "spec": {
            "type": "ClusterIP",
            "selector": {"app": "n8n"},
            "ports": [{"port": p["port"], "targetPort": p["target_port"], "protocol": "TCP"}],
        },
    }]


def ingress(p: dict) -> list[dict]:
    return [{
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": _meta(
            p["name"], "n8n", p,
            annotations={
                "kubernetes.io/ingress.class": "gce",
                "kubernetes.io/ingress.global-static-ip-name": p["static_ip"],
                "ingress.gcp.kubernetes.io/pre-shared-cert": p["certificate"],
            },
        ),
        "spec": {
            "rules": [{
                "host": p["domain"],
                "http": {"paths": [{
                    "path": "/",
                    "pathType": "Prefix",
                    "backend": {"service": {"name": p["service"], "port": {"number": 80}}},
                }]},
            }],
        },
    }]


BUILDERS = {
    "namespace": namespace,
    "volume_claim": volume_claim,
    "database": database,
    "workload": workload,
    "service": service,
    "ingress": ingress,
}
