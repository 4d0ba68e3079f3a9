"""
kubectl adapter — application resources inside the GKE cluster.

Every call pins the kubeconfig context written by
``gcloud container clusters get-credentials`` so a stray current
context can never receive the manifests. Creates and updates go
through ``kubectl apply -f -``; secrets use ``kubectl create`` so an
existing secret is never overwritten.
"""

from __future__ import annotations

import base64
import logging
from typing import Any

from rollout.adapters.base import CommandAdapter, ExecutionContext
from rollout.adapters.cloud import manifests
from rollout.adapters.shell.command import CommandResult
from rollout.core.models.action import (
    NODE_VERBS,
    REASON_ALREADY_EXISTS,
    REASON_NOT_FOUND,
    Receipt,
)

logger = logging.getLogger(__name__)

# Resource type passed to ``kubectl get`` per node kind.
_GET_TYPES = {
    "namespace": "namespace",
    "secret": "secret",
    "volume_claim": "persistentvolumeclaim",
    "database": "statefulset",
    "workload": "deployment",
    "service": "service",
    "ingress": "ingress",
}

ACCOUNT_VERBS = ("health",)


def classify_error(text: str) -> str | None:
    """Map kubectl error text to a receipt reason."""
    lowered = (text or "").lower()
    if "alreadyexists" in lowered or "already exists" in lowered:
        return REASON_ALREADY_EXISTS
    if "notfound" in lowered or "not found" in lowered:
        return REASON_NOT_FOUND
    return None


class KubectlAdapter(CommandAdapter):
    """Drive the application stage through kubectl.

    Action params:
        name (str): Resource name.
        context (str): Kubeconfig context to target.
        namespace (str): Namespace for namespaced kinds.
        Plus the node spec from the resource catalog.
    """

    tool = "kubectl"
    classify = staticmethod(classify_error)

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        action = context.action
        if not context.params.get("context"):
            return False, "Missing required param: 'context'"
        if action.node_id is None:
            if action.verb not in ACCOUNT_VERBS:
                return False, f"Unknown kubectl verb: {action.verb}"
            return True, ""
        if action.kind not in _GET_TYPES:
            return False, f"kubectl cannot manage a {action.kind or 'resource'}"
        if action.verb not in NODE_VERBS:
            return False, f"Unknown verb: {action.verb}"
        if not context.params.get("name"):
            return False, "Missing required param: 'name'"
        return True, ""

    def dispatch(self, context: ExecutionContext, p: dict[str, Any]) -> Receipt:
        verb, kind = context.action.verb, context.action.kind
        if verb == "health":
            return self._health(p)
        if verb == "describe":
            return self._describe(kind, p)
        if verb == "delete":
            return self._delete(kind, p)
        if kind == "secret":
            return self._create_secrets(p)
        return self._apply(p, manifests.BUILDERS[kind](p))

    # ── Plumbing ────────────────────────────────────────────────

    def _kubectl(self, p: dict, *args: str, input_text: str | None = None) -> CommandResult:
        cmd = ["kubectl", f"--context={p['context']}", *args]
        return self._run(cmd, input_text=input_text, timeout=self._timeout)

    def _get(self, p: dict, kind: str, name: str, namespaced: bool = True) -> tuple[Receipt | None, dict]:
        args = ["get", kind, name, "-o", "json"]
        if namespaced:
            args += ["-n", p["namespace"]]
        result = self._kubectl(p, *args)
        if result.ok:
            return None, result.json() or {}
        reason = classify_error(result.error)
        if reason == REASON_NOT_FOUND:
            return self._absent(), {}
        return self._fail(result.error, reason=reason), {}

    # ── Describe ────────────────────────────────────────────────

    def _describe(self, kind: str, p: dict) -> Receipt:
        if kind == "secret":
            return self._describe_secrets(p)

        early, data = self._get(p, _GET_TYPES[kind], p["name"],
                                namespaced=kind != "namespace")
        if early:
            return early

        status = data.get("status", {}) or {}
        spec = data.get("spec", {}) or {}
        if kind in ("namespace", "volume_claim"):
            observation = {"phase": status.get("phase", "")}
        elif kind in ("database", "workload"):
            observation = {
                "desired": int(spec.get("replicas", 1)),
                "ready": int(status.get("readyReplicas", 0) or 0),
            }
        elif kind == "service":
            observation = {"cluster_ip": spec.get("clusterIP"), "type": spec.get("type")}
        else:
            ingress = (status.get("loadBalancer", {}) or {}).get("ingress", []) or []
            observation = {"ip": ingress[0].get("ip") if ingress else None}

        return self._observed(observation)

    def _describe_secrets(self, p: dict) -> Receipt:
        found = []
        for name in (p["postgres_secret"], p["n8n_secret"]):
            early, _ = self._get(p, "secret", name)
            if early and early.failed:
                return early
            if early is None:
                found.append(name)
        if len(found) < 2:
            return self._absent(metadata={"found": found})
        return self._observed({"secrets": found})

    # ── Create / update ─────────────────────────────────────────

    def _apply(self, p: dict, docs: list[dict]) -> Receipt:
        result = self._kubectl(p, "apply", "-f", "-", input_text=manifests.dump(docs))
        if result.ok:
            return self._ok(result.stdout, metadata={"documents": len(docs)})
        return self._fail(result.error, reason=classify_error(result.error))

    def _create_secrets(self, p: dict) -> Receipt:
        """Create whichever secret is missing, never touching an existing one."""
        early, existing = self._get(p, "secret", p["postgres_secret"])
        if early and early.failed:
            return early
        password = None
        if existing:
            encoded = existing.get("data", {}).get("POSTGRES_PASSWORD")
            if encoded:
                password = base64.b64decode(encoded).decode("utf-8")

        created = []
        for doc in manifests.secrets_pair(p, db_password=password):
            result = self._kubectl(p, "create", "-f", "-", input_text=manifests.dump([doc]))
            if result.ok:
                created.append(doc["metadata"]["name"])
                continue
            if classify_error(result.error) != REASON_ALREADY_EXISTS:
                return self._fail(result.error, reason=classify_error(result.error))
        return self._ok(f"created: {', '.join(created) or 'none'}")

    # ── Delete ──────────────────────────────────────────────────

    def _delete(self, kind: str, p: dict) -> Receipt:
        if kind == "namespace":
            targets = [["namespace", p["name"]]]
        elif kind == "secret":
            targets = [["secret", p["postgres_secret"], "-n", p["namespace"]],
                       ["secret", p["n8n_secret"], "-n", p["namespace"]]]
        elif kind == "database":
            targets = [["statefulset", p["name"], "-n", p["namespace"]],
                       ["service", p["service"], "-n", p["namespace"]],
                       ["persistentvolumeclaim", "-l", f"app={p['name']}", "-n", p["namespace"]]]
        else:
            targets = [[_GET_TYPES[kind], p["name"], "-n", p["namespace"]]]

        for target in targets:
            result = self._kubectl(p, "delete", *target, "--ignore-not-found")
            if not result.ok:
                return self._fail(result.error, reason=classify_error(result.error))
        return self._ok(f"deleted {p['name']}")

    # ── Cluster health ──────────────────────────────────────────

    def _health(self, p: dict) -> Receipt:
        nodes = self._kubectl(p, "get", "nodes", "-o", "json")
        if not nodes.ok:
            return self._fail(nodes.error)
        pods = self._kubectl(p, "get", "pods", "-n", "kube-system", "-o", "json")
        if not pods.ok:
            return self._fail(pods.error)

        node_items = (nodes.json() or {}).get("items", [])
        ready = 0
        for item in node_items:
            conditions = item.get("status", {}).get("conditions", [])
            if any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions):
                ready += 1

        pod_items = (pods.json() or {}).get("items", [])
        running = sum(1 for pod in pod_items if pod.get("status", {}).get("phase") == "Running")

        return self._observed({
            "nodes_total": len(node_items),
            "nodes_ready": ready,
            "system_pods_total": len(pod_items),
            "system_pods_running": running,
        })
