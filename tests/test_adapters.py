"""
Tests for adapter protocol, registry, mock, and the gcloud/kubectl bindings.
"""

import base64
import json
import sys
from pathlib import Path

from rollout.adapters.base import Adapter, ExecutionContext
from rollout.adapters.cloud.gcloud import DEFAULT_POOL_DELETE_TIMEOUT, GcloudAdapter
from rollout.adapters.cloud.gcloud import classify_error as gcloud_error
from rollout.adapters.cloud.kubectl import KubectlAdapter
from rollout.adapters.cloud.kubectl import classify_error as kubectl_error
from rollout.adapters.mock import MockAdapter
from rollout.adapters.registry import AdapterRegistry
from rollout.adapters.shell.command import CommandResult, run_command
from rollout.core.models.action import (
    REASON_ALREADY_EXISTS,
    REASON_DELETION_PROTECTED,
    REASON_NOT_FOUND,
    Action,
    Receipt,
)


class FakeRunner:
    """Stands in for run_command; answers by substring of the command line."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: list[tuple[list[str], str | None]] = []
        self.timeouts: list[float] = []

    def __call__(self, args, input_text=None, timeout=300.0, cwd=None) -> CommandResult:
        self.calls.append((args, input_text))
        self.timeouts.append(timeout)
        line = " ".join(args)
        for needle, code, stdout, stderr in self.responses:
            if needle in line:
                return CommandResult(args=args, returncode=code, stdout=stdout, stderr=stderr)
        return CommandResult(args=args, returncode=0)

    @property
    def lines(self) -> list[str]:
        return [" ".join(args) for args, _ in self.calls]


def _ctx(adapter: str, verb: str, node_id=None, kind="", **params) -> ExecutionContext:
    action = Action(id=f"{node_id or 'account'}:{verb}:1", adapter=adapter, verb=verb,
                    node_id=node_id, kind=kind, params=params)
    return ExecutionContext(action=action, params=params)


CLUSTER = {"name": "dev-n8n-cluster", "location": "us-central1-a", "location_flag": "zone"}
KUBE = {"name": "n8n", "context": "gke_p1_us-central1-a_dev-n8n-cluster", "namespace": "n8n"}


# ── Shell runner ────────────────────────────────────────────────────


class TestRunCommand:
    def test_success(self):
        result = run_command([sys.executable, "-c", "print('hello')"])
        assert result.ok
        assert result.stdout == "hello"
        assert result.duration_ms >= 0

    def test_stdin(self):
        result = run_command(
            [sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"],
            input_text="kind: namespace",
        )
        assert result.stdout == "KIND: NAMESPACE"

    def test_failure_keeps_stderr(self):
        result = run_command([sys.executable, "-c", "import sys; sys.exit('boom')"])
        assert not result.ok
        assert result.error == "boom"

    def test_missing_binary(self):
        result = run_command(["definitely-not-a-real-binary-xyz"])
        assert result.returncode == 127
        assert "Cannot execute" in result.error

    def test_timeout(self):
        result = run_command([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2)
        assert result.timed_out
        assert result.returncode == 124
        assert result.error.startswith("Command timed out")


class TestCommandResult:
    def test_json(self):
        assert CommandResult(args=[], returncode=0, stdout='{"a": 1}').json() == {"a": 1}
        assert CommandResult(args=[], returncode=0, stdout="  ").json() is None

    def test_error_fallbacks(self):
        assert CommandResult(args=["x"], returncode=3, stdout="out").error == "out"
        assert CommandResult(args=["x"], returncode=3).error == "Command exited with code 3"


class TestClassifyError:
    def test_gcloud(self):
        assert gcloud_error("ERROR: (gcloud) NOT_FOUND: cluster not found") == REASON_NOT_FOUND
        assert gcloud_error("The resource 'x' already exists") == REASON_ALREADY_EXISTS
        assert gcloud_error(
            "Cannot delete cluster while deletion_protection is enabled"
        ) == REASON_DELETION_PROTECTED
        assert gcloud_error("PERMISSION_DENIED") is None
        assert gcloud_error("") is None

    def test_kubectl(self):
        assert kubectl_error('Error from server (NotFound): namespaces "n8n" not found') == REASON_NOT_FOUND
        assert kubectl_error("Error from server (AlreadyExists): secrets") == REASON_ALREADY_EXISTS
        assert kubectl_error("connection refused") is None


# ── gcloud ──────────────────────────────────────────────────────────


class TestGcloudAdapter:
    def test_validate(self):
        adapter = GcloudAdapter("p1", runner=FakeRunner())
        assert adapter.validate(_ctx("gcloud", "describe", "cluster", "cluster", **CLUSTER))[0]
        ok, error = adapter.validate(_ctx("gcloud", "describe", "cluster", "cluster"))
        assert not ok and "name" in error
        ok, error = adapter.validate(_ctx("gcloud", "create", "namespace", "namespace", name="n8n"))
        assert not ok and "cannot create" in error
        assert not adapter.validate(_ctx("gcloud", "format_disk"))[0]
        assert adapter.validate(_ctx("gcloud", "active_account"))[0]

    def test_describe_cluster(self):
        runner = FakeRunner([
            ("clusters describe", 0, json.dumps({"status": "RUNNING", "deletionProtection": True,
                                                 "nodePools": [{"name": "pool"}]}), ""),
        ])
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "describe", "cluster", "cluster", **CLUSTER))
        assert receipt.ok and receipt.present
        assert receipt.observation["status"] == "RUNNING"
        assert receipt.observation["deletion_protection"] is True
        assert receipt.observation["node_pools"] == ["pool"]

        args = runner.calls[0][0]
        assert "--zone=us-central1-a" in args
        assert "--project=p1" in args
        assert "--format=json" in args

    def test_describe_absent(self):
        runner = FakeRunner([("describe", 1, "", "ERROR: (gcloud) NOT_FOUND: not found")])
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "describe", "cluster", "cluster", **CLUSTER))
        assert receipt.ok
        assert not receipt.present

    def test_describe_error_is_failure(self):
        runner = FakeRunner([("describe", 1, "", "PERMISSION_DENIED")])
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "describe", "cluster", "cluster", **CLUSTER))
        assert receipt.failed
        assert receipt.error == "PERMISSION_DENIED"

    def test_create_cluster_flags(self):
        runner = FakeRunner()
        params = dict(CLUSTER, network="vpc", subnet="subnet", pods_range="pods",
                      services_range="services", deletion_protection=True)
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "create", "cluster", "cluster", **params))
        assert receipt.ok
        args = runner.calls[0][0]
        assert "--deletion-protection" in args
        assert "--async" in args
        assert "--enable-private-nodes" in args
        assert not any(a.startswith("--format") for a in args)

    def test_node_pool_waits_for_default_pool_removal(self):
        runner = FakeRunner()
        params = dict(CLUSTER, name="n8n-node-pool", cluster="dev-n8n-cluster",
                      machine_type="e2-standard-2", disk_size_gb=50, min_nodes=1, max_nodes=3)
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "create", "node-pool", "node_pool", **params))
        assert receipt.ok
        assert len(runner.calls) == 2
        # Blocking delete first, so the two cluster operations never overlap.
        assert "node-pools delete default-pool" in runner.lines[0]
        assert "--async" not in runner.calls[0][0]
        assert runner.timeouts[0] == DEFAULT_POOL_DELETE_TIMEOUT
        assert "node-pools create n8n-node-pool" in runner.lines[1]
        assert "--async" in runner.calls[1][0]

    def test_node_pool_create_when_default_pool_gone(self):
        runner = FakeRunner([("delete default-pool", 1, "", "ERROR: NOT_FOUND: 404")])
        params = dict(CLUSTER, name="n8n-node-pool", cluster="dev-n8n-cluster",
                      machine_type="e2-standard-2", disk_size_gb=50, min_nodes=1, max_nodes=3)
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "create", "node-pool", "node_pool", **params))
        assert receipt.ok
        assert "node-pools create" in runner.lines[-1]

    def test_default_pool_removal_failure_stops_create(self):
        runner = FakeRunner([
            ("delete default-pool", 1, "", "FAILED_PRECONDITION: operation in progress"),
        ])
        params = dict(CLUSTER, name="n8n-node-pool", cluster="dev-n8n-cluster",
                      machine_type="e2-standard-2", disk_size_gb=50, min_nodes=1, max_nodes=3)
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "create", "node-pool", "node_pool", **params))
        assert receipt.failed
        assert "default-pool" in receipt.error
        assert len(runner.calls) == 1

    def test_create_tolerates_already_exists(self):
        runner = FakeRunner([("clusters create", 1, "", "ALREADY_EXISTS: already exists")])
        params = dict(CLUSTER, network="vpc", subnet="subnet", pods_range="pods",
                      services_range="services")
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "create", "cluster", "cluster", **params))
        assert receipt.ok
        assert receipt.reason == REASON_ALREADY_EXISTS

    def test_create_network_then_subnet(self):
        runner = FakeRunner()
        receipt = GcloudAdapter("p1", runner).execute(_ctx(
            "gcloud", "create", "network", "network", name="vpc", subnet="subnet",
            region="us-central1", subnet_cidr="10.0.0.0/24",
            secondary_ranges={"pods": "10.4.0.0/14"},
        ))
        assert receipt.ok
        assert len(runner.calls) == 2
        assert "networks create vpc" in runner.lines[0]
        assert "--secondary-range=pods=10.4.0.0/14" in runner.calls[1][0]

    def test_delete_protected_cluster(self):
        runner = FakeRunner([
            ("clusters delete", 1, "", "Cannot delete: deletion protection is enabled"),
        ])
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "delete", "cluster", "cluster", **CLUSTER))
        assert receipt.failed
        assert receipt.deletion_protected

    def test_delete_tolerates_not_found(self):
        runner = FakeRunner([("routers delete", 1, "", "was not found")])
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "delete", "router", "router", name="r", region="us-central1"))
        assert receipt.ok
        assert receipt.not_found

    def test_clear_protection(self):
        runner = FakeRunner()
        GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "update", "cluster", "cluster", deletion_protection=False, **CLUSTER))
        assert "--no-deletion-protection" in runner.calls[0][0]

    def test_active_account(self):
        runner = FakeRunner([("auth list", 0, "me@example.com\n", "")])
        receipt = GcloudAdapter("p1", runner).execute(_ctx("gcloud", "active_account"))
        assert receipt.observation == {"account": "me@example.com"}

    def test_no_active_account(self):
        runner = FakeRunner([("auth list", 0, "", "")])
        receipt = GcloudAdapter("p1", runner).execute(_ctx("gcloud", "active_account"))
        assert receipt.failed

    def test_quotas(self):
        body = {"quotas": [{"metric": "CPUS", "limit": 24, "usage": 4}, {"limit": 1}]}
        runner = FakeRunner([("regions describe", 0, json.dumps(body), "")])
        receipt = GcloudAdapter("p1", runner).execute(
            _ctx("gcloud", "describe_quotas", region="us-central1"))
        assert receipt.observation["quotas"] == {"CPUS": {"limit": 24.0, "usage": 4.0}}

    def test_malformed_params(self):
        receipt = GcloudAdapter("p1", FakeRunner()).execute(
            _ctx("gcloud", "describe", "router", "router", name="r"))
        assert receipt.failed
        assert "Malformed" in receipt.error


# ── kubectl ─────────────────────────────────────────────────────────


class TestKubectlAdapter:
    def test_validate_requires_context(self):
        adapter = KubectlAdapter(FakeRunner())
        ok, error = adapter.validate(_ctx("kubectl", "describe", "workload", "workload", name="n8n"))
        assert not ok and "context" in error
        ok, _ = adapter.validate(_ctx("kubectl", "describe", "cluster", "cluster", **KUBE))
        assert not ok
        assert adapter.validate(_ctx("kubectl", "describe", "workload", "workload", **KUBE))[0]

    def test_describe_workload(self):
        body = {"spec": {"replicas": 2}, "status": {"readyReplicas": 1}}
        runner = FakeRunner([("get deployment", 0, json.dumps(body), "")])
        receipt = KubectlAdapter(runner).execute(
            _ctx("kubectl", "describe", "workload", "workload", **KUBE))
        assert receipt.observation == {"desired": 2, "ready": 1}
        args = runner.calls[0][0]
        assert args[1] == f"--context={KUBE['context']}"
        assert args[-2:] == ["-n", "n8n"]

    def test_describe_absent(self):
        runner = FakeRunner([("get", 1, "", 'Error from server (NotFound): not found')])
        receipt = KubectlAdapter(runner).execute(
            _ctx("kubectl", "describe", "namespace", "namespace", **KUBE))
        assert receipt.ok
        assert not receipt.present

    def test_apply_namespace(self):
        runner = FakeRunner()
        receipt = KubectlAdapter(runner).execute(
            _ctx("kubectl", "create", "namespace", "namespace", environment="dev", **KUBE))
        assert receipt.ok
        args, stdin = runner.calls[0]
        assert args[2:] == ["apply", "-f", "-"]
        assert "kind: Namespace" in stdin

    def test_secrets_reuse_existing_password(self):
        existing = {"data": {"POSTGRES_PASSWORD": base64.b64encode(b"s3cret").decode()}}
        runner = FakeRunner([
            ("get secret postgres-secret", 0, json.dumps(existing), ""),
            ("create", 0, "", ""),
        ])
        params = dict(KUBE, postgres_secret="postgres-secret", n8n_secret="n8n-secret",
                      database_host="postgres")
        receipt = KubectlAdapter(runner).execute(
            _ctx("kubectl", "create", "secrets", "secret", **params))
        assert receipt.ok
        stdins = [stdin for _, stdin in runner.calls if stdin]
        assert len(stdins) == 2
        assert all("s3cret" in s for s in stdins)

    def test_existing_secret_is_not_overwritten(self):
        runner = FakeRunner([
            ("get secret", 1, "", "NotFound"),
        ])
        calls = []

        def create_runner(args, input_text=None, timeout=300.0, cwd=None):
            calls.append(args)
            if "create" in args and input_text and "postgres-secret" in input_text:
                return CommandResult(args=args, returncode=1,
                                     stderr="Error from server (AlreadyExists)")
            return runner(args, input_text=input_text, timeout=timeout)

        params = dict(KUBE, postgres_secret="postgres-secret", n8n_secret="n8n-secret",
                      database_host="postgres")
        receipt = KubectlAdapter(create_runner).execute(
            _ctx("kubectl", "create", "secrets", "secret", **params))
        assert receipt.ok
        assert receipt.output == "created: n8n-secret"
        assert not any("apply" in a for a in calls)

    def test_delete_database_removes_claims(self):
        runner = FakeRunner()
        receipt = KubectlAdapter(runner).execute(_ctx(
            "kubectl", "delete", "database", "database", service="postgres", **KUBE))
        assert receipt.ok
        assert len(runner.calls) == 3
        assert all("--ignore-not-found" in args for args, _ in runner.calls)
        assert "persistentvolumeclaim" in runner.lines[2]

    def test_health(self):
        nodes = {"items": [
            {"status": {"conditions": [{"type": "Ready", "status": "True"}]}},
            {"status": {"conditions": [{"type": "Ready", "status": "False"}]}},
        ]}
        pods = {"items": [{"status": {"phase": "Running"}}] * 4 + [{"status": {"phase": "Pending"}}]}
        runner = FakeRunner([
            ("get nodes", 0, json.dumps(nodes), ""),
            ("get pods", 0, json.dumps(pods), ""),
        ])
        receipt = KubectlAdapter(runner).execute(_ctx("kubectl", "health", context="ctx"))
        assert receipt.observation == {
            "nodes_total": 2, "nodes_ready": 1,
            "system_pods_total": 5, "system_pods_running": 4,
        }


# ── Registry ────────────────────────────────────────────────────────


class _Raising(Adapter):
    @property
    def name(self) -> str:
        return "raising"

    def is_available(self) -> bool:
        return True

    def validate(self, context):
        return True, ""

    def execute(self, context):
        raise RuntimeError("exploded")


class _Strict(_Raising):
    @property
    def name(self) -> str:
        return "strict"

    def validate(self, context):
        return False, "nope"


class TestRegistry:
    def test_unregistered_adapter(self):
        receipt = AdapterRegistry().call("gcloud", "describe", "network", kind="network")
        assert receipt.failed
        assert "No adapter registered" in receipt.error

    def test_validation_failure(self):
        registry = AdapterRegistry()
        registry.register(_Strict())
        receipt = registry.call("strict", "describe")
        assert receipt.error == "Validation failed: nope"

    def test_raising_adapter_becomes_failure(self):
        registry = AdapterRegistry()
        registry.register(_Raising())
        receipt = registry.call("raising", "describe")
        assert receipt.failed
        assert "exploded" in receipt.error

    def test_mock_mode_routes_everything(self):
        mock = MockAdapter()
        registry = AdapterRegistry(mock_mode=True)
        registry.set_mock_mode(True, mock)
        receipt = registry.call("gcloud", "active_account")
        assert receipt.observation["account"] == "deployer@example.com"
        assert mock.call_count == 1

    def test_mock_mode_without_adapter(self):
        receipt = AdapterRegistry(mock_mode=True).call("gcloud", "active_account")
        assert "without a mock adapter" in receipt.error

    def test_action_ids_unique(self):
        registry = AdapterRegistry()
        a = registry.new_action("gcloud", "describe", node_id="network")
        b = registry.new_action("gcloud", "describe", node_id="network")
        assert a.id != b.id
        assert a.id.startswith("network:describe:")

    def test_tool_lookup_follows_mock_mode(self, monkeypatch):
        monkeypatch.setattr("rollout.adapters.registry.tool_available", lambda tool: False)
        mock = MockAdapter()
        mock.tools.discard("kubectl")
        registry = AdapterRegistry()
        assert not registry.tool_available("gcloud")
        registry.set_mock_mode(True, mock)
        assert registry.tool_available("gcloud")
        assert not registry.tool_available("kubectl")

    def test_command_adapter_availability(self, monkeypatch):
        monkeypatch.setattr("rollout.adapters.base.tool_available", lambda tool: tool == "kubectl")
        assert KubectlAdapter().is_available()
        assert not GcloudAdapter("p1").is_available()
        assert GcloudAdapter("p1").name == "gcloud"


# ── Mock cloud ──────────────────────────────────────────────────────


class TestMockAdapter:
    def _call(self, mock, verb, node_id=None, kind="", **params) -> Receipt:
        return mock.execute(_ctx("mock", verb, node_id, kind, **params))

    def test_lifecycle(self):
        mock = MockAdapter()
        assert not self._call(mock, "describe", "network", "network").present
        assert self._call(mock, "create", "network", "network", subnet_cidr="10.0.0.0/24").ok
        obs = self._call(mock, "describe", "network", "network").observation
        assert obs["subnet_cidr"] == "10.0.0.0/24"
        assert self._call(mock, "delete", "network", "network").ok
        assert not mock.exists("network")
        assert self._call(mock, "delete", "network", "network").not_found

    def test_converges_after_polls(self):
        mock = MockAdapter(converge_after=2)
        self._call(mock, "create", "cluster", "cluster")
        statuses = [self._call(mock, "describe", "cluster", "cluster").observation["status"]
                    for _ in range(3)]
        assert statuses == ["PROVISIONING", "PROVISIONING", "RUNNING"]

    def test_protection(self):
        mock = MockAdapter()
        self._call(mock, "create", "cluster", "cluster", deletion_protection=True)
        assert self._call(mock, "delete", "cluster", "cluster").deletion_protected
        self._call(mock, "update", "cluster", "cluster", deletion_protection=False)
        assert self._call(mock, "delete", "cluster", "cluster").ok

    def test_kubernetes_needs_reachable_cluster(self):
        mock = MockAdapter()
        receipt = self._call(mock, "create", "namespace", "namespace")
        assert receipt.failed
        assert "Unable to connect" in receipt.error
        mock.seed("node-pool", "node_pool")
        assert self._call(mock, "create", "namespace", "namespace").ok

    def test_connect_without_cluster(self):
        assert self._call(MockAdapter(), "connect").not_found

    def test_state_persists(self, tmp_path: Path):
        path = tmp_path / ".state" / "mock_cloud.json"
        first = MockAdapter(state_path=path)
        self._call(first, "create", "router", "router", nat="dev-nat")
        self._call(first, "enable_api", api="extra.googleapis.com")

        second = MockAdapter(state_path=path)
        assert second.exists("router")
        assert "extra.googleapis.com" in second.enabled_apis
        assert self._call(second, "describe", "router", "router").observation["nat"] == "dev-nat"

    def test_corrupt_state_ignored(self, tmp_path: Path):
        path = tmp_path / "mock_cloud.json"
        path.write_text("{not json")
        assert MockAdapter(state_path=path).resources == {}

    def test_reset(self):
        mock = MockAdapter()
        mock.seed("network", "network")
        self._call(mock, "describe", "network", "network")
        mock.reset()
        assert mock.call_count == 0
        assert mock.resources == {}
