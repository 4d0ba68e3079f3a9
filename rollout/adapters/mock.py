"""
Mock adapter — a simulated cloud for tests and ``--mock`` runs.

Answers every gcloud and kubectl verb from an in-memory model of the
project: resources appear on create, converge after a configurable
number of describes, resist deletion while their protection flag is
set, and disappear on delete. Knobs inject the failures the engine
has to handle. The model can be persisted to JSON so successive CLI
invocations see the same simulated cloud.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from rollout.adapters.base import Adapter, ExecutionContext
from rollout.core.models.action import (
    REASON_DELETION_PROTECTED,
    REASON_NOT_FOUND,
    Receipt,
)
from rollout.core.models.config import DEFAULT_APIS, DEFAULT_TOOLS

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = Path(".state") / "mock_cloud.json"

MOCK_ADDRESS = "34.120.0.10"

_KUBERNETES_KINDS = {
    "namespace", "secret", "volume_claim", "database", "workload", "service", "ingress",
}


class MockAdapter(Adapter):
    """Simulated cloud answering every adapter verb.

    Knobs (all optional, settable after construction):
        converge_after: describes needed before a new resource is ready.
        fail_create / fail_delete: node ids whose calls fail.
        never_ready: node ids that stay pending forever.
        sticky_protection: node ids whose protection flag cannot be cleared.
        observations: node id -> fields overriding the simulated view.
        missing_apis / fail_enable: API names not enabled / not enableable.
        account: active principal, or None for an unauthenticated session.
        tools: binaries that resolve.
        quotas: metric -> {"limit", "usage"}.
        machine_types: machine type -> guest CPUs.
        system_pods: (running, total) in kube-system.
    """

    def __init__(
        self,
        adapter_name: str = "mock",
        available: bool = True,
        state_path: Path | None = None,
        converge_after: int = 0,
    ):
        self._name = adapter_name
        self._available = available
        self._state_path = state_path
        self._call_log: list[ExecutionContext] = []

        self.converge_after = converge_after
        self.fail_create: set[str] = set()
        self.fail_delete: set[str] = set()
        self.never_ready: set[str] = set()
        self.sticky_protection: set[str] = set()
        self.observations: dict[str, dict[str, Any]] = {}
        self.missing_apis: set[str] = set()
        self.fail_enable: set[str] = set()
        self.account: str | None = "deployer@example.com"
        self.project_exists = True
        self.tools: set[str] = set(DEFAULT_TOOLS)
        self.quotas: dict[str, dict[str, float]] = {
            "CPUS": {"limit": 24.0, "usage": 0.0},
            "DISKS_TOTAL_GB": {"limit": 4096.0, "usage": 0.0},
        }
        self.machine_types: dict[str, int] = {
            "e2-small": 2, "e2-medium": 2, "e2-standard-2": 2, "e2-standard-4": 4,
        }
        self.system_pods: tuple[int, int] = (10, 10)
        self.node_count = 1

        self.resources: dict[str, dict[str, Any]] = {}
        self.enabled_apis: set[str] = set(DEFAULT_APIS)
        self._load()

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_log(self) -> list[ExecutionContext]:
        """All execution contexts this mock has received."""
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def calls(self, verb: str | None = None, node_id: str | None = None) -> list[ExecutionContext]:
        """Logged calls filtered by verb and/or node id."""
        return [
            c for c in self._call_log
            if (verb is None or c.action.verb == verb)
            and (node_id is None or c.action.node_id == node_id)
        ]

    def is_available(self) -> bool:
        return self._available

    def tool_available(self, tool: str) -> bool:
        return tool in self.tools

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        return True, ""

    # ── Seeding ─────────────────────────────────────────────────

    def seed(
        self,
        node_id: str,
        kind: str,
        params: dict[str, Any] | None = None,
        protected: bool = False,
        **observation: Any,
    ) -> None:
        """Put a converged resource into the simulated cloud."""
        self.resources[node_id] = {
            "kind": kind,
            "params": dict(params or {}),
            "polls_left": 0,
            "protected": protected,
        }
        if observation:
            self.observations.setdefault(node_id, {}).update(observation)
        self._save()

    def exists(self, node_id: str) -> bool:
        return node_id in self.resources

    def reset(self) -> None:
        """Clear call log and simulated resources."""
        self._call_log.clear()
        self.resources.clear()
        self._save()

    # ── Dispatch ────────────────────────────────────────────────

    def execute(self, context: ExecutionContext) -> Receipt:
        self._call_log.append(context)
        action = context.action
        node_id = action.node_id

        if node_id is None:
            handler = getattr(self, f"_account_{action.verb}", None)
            if handler is None:
                return self._failure(action.id, f"[mock] unknown verb {action.verb}")
            return handler(action.id, context.params)

        if action.kind in _KUBERNETES_KINDS and action.verb != "describe":
            if not self._cluster_reachable():
                return self._failure(
                    action.id,
                    "Unable to connect to the server: cluster endpoint not reachable",
                )

        if action.verb == "describe":
            return self._describe(action.id, node_id, action.kind)
        if action.verb == "create":
            return self._create(action.id, node_id, action.kind, context.params)
        if action.verb == "update":
            return self._update(action.id, node_id, context.params)
        if action.verb == "delete":
            return self._delete(action.id, node_id)
        return self._failure(action.id, f"[mock] unknown verb {action.verb}")

    def _success(self, action_id: str, output: str = "", **kwargs: Any) -> Receipt:
        return Receipt.success(adapter=self._name, action_id=action_id, output=output,
                               metadata={"mock": True}, **kwargs)

    def _failure(self, action_id: str, error: str, **kwargs: Any) -> Receipt:
        return Receipt.failure(adapter=self._name, action_id=action_id, error=error,
                               metadata={"mock": True}, **kwargs)

    def _cluster_reachable(self) -> bool:
        pool = self.resources.get("node-pool")
        return pool is not None and pool["polls_left"] <= 0 and "node-pool" not in self.never_ready

    # ── Node verbs ──────────────────────────────────────────────

    def _describe(self, action_id: str, node_id: str, kind: str) -> Receipt:
        res = self.resources.get(node_id)
        if res is None:
            return Receipt.absent(adapter=self._name, action_id=action_id,
                                  metadata={"mock": True})
        converged = res["polls_left"] <= 0 and node_id not in self.never_ready
        if res["polls_left"] > 0:
            res["polls_left"] -= 1
            self._save()
        observation = self._observation(node_id, res, converged)
        observation.update(self.observations.get(node_id, {}))
        return Receipt.observed(adapter=self._name, action_id=action_id,
                                observation=observation, metadata={"mock": True})

    def _create(self, action_id: str, node_id: str, kind: str, params: dict) -> Receipt:
        if node_id in self.fail_create:
            return self._failure(action_id, f"[mock] create {node_id} rejected by the API")
        if node_id in self.resources:
            return self._success(action_id, f"[mock] {node_id} already exists")
        self.resources[node_id] = {
            "kind": kind,
            "params": dict(params),
            "polls_left": self.converge_after,
            "protected": bool(params.get("deletion_protection", False)),
        }
        self._save()
        return self._success(action_id, f"[mock] created {params.get('name', node_id)}")

    def _update(self, action_id: str, node_id: str, params: dict) -> Receipt:
        res = self.resources.get(node_id)
        if res is None:
            return self._failure(action_id, f"[mock] {node_id} not found",
                                 reason=REASON_NOT_FOUND)
        if "deletion_protection" in params and node_id not in self.sticky_protection:
            res["protected"] = bool(params["deletion_protection"])
        res["params"].update({k: v for k, v in params.items() if k != "deletion_protection"})
        self._save()
        return self._success(action_id, f"[mock] updated {node_id}")

    def _delete(self, action_id: str, node_id: str) -> Receipt:
        if node_id in self.fail_delete:
            return self._failure(action_id, f"[mock] delete {node_id} failed")
        res = self.resources.get(node_id)
        if res is None:
            return self._success(action_id, f"[mock] {node_id} already gone",
                                 reason=REASON_NOT_FOUND)
        if res.get("protected"):
            return self._failure(
                action_id,
                f"[mock] Cannot delete {node_id}: deletion protection is enabled",
                reason=REASON_DELETION_PROTECTED,
            )
        del self.resources[node_id]
        self._save()
        return self._success(action_id, f"[mock] deleted {node_id}")

    def _observation(self, node_id: str, res: dict, converged: bool) -> dict[str, Any]:
        kind, p = res["kind"], res["params"]
        if kind == "network":
            return {
                "exists": True,
                "subnet_cidr": p.get("subnet_cidr") if converged else None,
                "secondary_ranges": dict(p.get("secondary_ranges", {})),
            }
        if kind == "firewall":
            rules = [r["name"] for r in p.get("rules", [])]
            return {"rules": rules if converged else rules[:1]}
        if kind == "router":
            return {"nat": p.get("nat") if converged else None}
        if kind == "cluster":
            return {
                "status": "RUNNING" if converged else "PROVISIONING",
                "deletion_protection": bool(res.get("protected")),
            }
        if kind == "node_pool":
            cluster = self.resources.get("cluster")
            cluster_ready = (cluster is not None and cluster["polls_left"] <= 0
                             and "cluster" not in self.never_ready)
            cluster_status = "RUNNING" if cluster_ready else "PROVISIONING"
            return {
                "cluster_status": cluster_status,
                "pool_status": "RUNNING" if converged else "PROVISIONING",
                "machine_type": p.get("machine_type"),
            }
        if kind == "namespace":
            return {"phase": "Active"}
        if kind == "secret":
            return {"secrets": [p.get("postgres_secret"), p.get("n8n_secret")]}
        if kind == "volume_claim":
            return {"phase": "Bound" if converged else "Pending"}
        if kind in ("database", "workload"):
            desired = int(p.get("replicas", 1))
            return {"desired": desired, "ready": desired if converged else 0}
        if kind == "service":
            return {"cluster_ip": "10.1.0.10", "type": "ClusterIP"}
        if kind == "address":
            return {"address": MOCK_ADDRESS, "address_type": "EXTERNAL",
                    "status": "RESERVED", "global": True}
        if kind == "ingress":
            return {"ip": MOCK_ADDRESS if converged else None}
        if kind == "certificate":
            return {"status": "ACTIVE" if converged else "PROVISIONING",
                    "domains": list(p.get("domains", []))}
        return {}

    # ── Account verbs ───────────────────────────────────────────

    def _account_active_account(self, action_id: str, params: dict) -> Receipt:
        if not self.account:
            return self._failure(action_id, "No active gcloud account")
        return Receipt.observed(adapter=self._name, action_id=action_id,
                                observation={"account": self.account})

    def _account_describe_project(self, action_id: str, params: dict) -> Receipt:
        if not self.project_exists:
            return Receipt.absent(adapter=self._name, action_id=action_id)
        return Receipt.observed(adapter=self._name, action_id=action_id, observation={
            "project_id": params.get("project_id", ""),
            "lifecycle_state": "ACTIVE",
        })

    def _account_list_enabled_apis(self, action_id: str, params: dict) -> Receipt:
        apis = sorted(self.enabled_apis - self.missing_apis)
        return Receipt.observed(adapter=self._name, action_id=action_id,
                                observation={"apis": apis})

    def _account_enable_api(self, action_id: str, params: dict) -> Receipt:
        api = params.get("api", "")
        if api in self.fail_enable:
            return self._failure(action_id, f"[mock] permission denied enabling {api}")
        self.missing_apis.discard(api)
        self.enabled_apis.add(api)
        self._save()
        return self._success(action_id, f"[mock] enabled {api}")

    def _account_describe_machine_type(self, action_id: str, params: dict) -> Receipt:
        machine_type = params.get("machine_type", "")
        if machine_type not in self.machine_types:
            return Receipt.absent(adapter=self._name, action_id=action_id)
        return Receipt.observed(adapter=self._name, action_id=action_id, observation={
            "name": machine_type,
            "guest_cpus": self.machine_types[machine_type],
            "memory_mb": 4096,
        })

    def _account_describe_quotas(self, action_id: str, params: dict) -> Receipt:
        return Receipt.observed(adapter=self._name, action_id=action_id,
                                observation={"quotas": json.loads(json.dumps(self.quotas))})

    def _account_connect(self, action_id: str, params: dict) -> Receipt:
        if "cluster" not in self.resources:
            return self._failure(action_id, f"[mock] cluster {params.get('cluster')} not found",
                                 reason=REASON_NOT_FOUND)
        return self._success(action_id, "[mock] kubeconfig entry generated")

    def _account_health(self, action_id: str, params: dict) -> Receipt:
        if not self._cluster_reachable():
            return self._failure(action_id, "Unable to connect to the server")
        running, total = self.system_pods
        return Receipt.observed(adapter=self._name, action_id=action_id, observation={
            "nodes_total": self.node_count,
            "nodes_ready": self.node_count,
            "system_pods_total": total,
            "system_pods_running": running,
        })

    # ── Persistence ─────────────────────────────────────────────

    def _load(self) -> None:
        if self._state_path is None or not self._state_path.is_file():
            return
        try:
            data = json.loads(self._state_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable mock cloud state %s: %s", self._state_path, e)
            return
        self.resources = data.get("resources", {})
        self.enabled_apis = set(data.get("enabled_apis", DEFAULT_APIS))
        logger.debug("Loaded mock cloud with %d resource(s)", len(self.resources))

    def _save(self) -> None:
        if self._state_path is None:
            return
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "resources": self.resources,
            "enabled_apis": sorted(self.enabled_apis),
        }
        self._state_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
