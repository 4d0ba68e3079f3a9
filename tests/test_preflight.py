"""
Tests for the preflight validator — aggregation and the standard checks.
"""

from rollout.core.config.loader import load_config, resolve_environment
from rollout.core.engine.catalog import build_graph
from rollout.core.engine.cloud import CloudClient
from rollout.core.engine.preflight import Check, Preflight, is_valid_domain, run_checks
from rollout.core.models.resource import Stage, Target
from rollout.core.models.run import CheckResult


def _by_name(validation, name: str) -> CheckResult:
    return next(c for c in validation.checks if c.name == name)


# ── Aggregation ─────────────────────────────────────────────────────


class TestRunChecks:
    def test_every_check_runs(self):
        ran = []

        def make(i, ok):
            def fn():
                ran.append(i)
                return ok, "" if ok else f"reason {i}"
            return Check(f"c{i}", fn)

        result = run_checks("pre-stage", [make(1, False), make(2, False),
                                          make(3, True), make(4, False)])
        assert ran == [1, 2, 3, 4]
        assert not result.passed
        assert result.failures == ["c1: reason 1", "c2: reason 2", "c4: reason 4"]

    def test_raising_check_is_a_failure(self):
        def boom():
            raise RuntimeError("kaboom")

        result = run_checks("pre-stage", [Check("boom", boom), Check("fine", lambda: True)])
        assert len(result.checks) == 2
        assert result.failures == ["boom: check raised RuntimeError: kaboom"]
        assert result.checks[1].ok

    def test_plain_callables_named_after_function(self):
        def has_tool():
            return False

        result = run_checks("pre-stage", [has_tool])
        assert result.failures == ["has_tool: check returned false"]

    def test_warnings_do_not_fail(self):
        result = run_checks("post-stage", [lambda: CheckResult.warn("slow", "still going")])
        assert result.passed
        assert result.warnings == ["slow: still going"]

    def test_empty_list_passes(self):
        assert run_checks("pre-stage", []).passed


class TestDomain:
    def test_valid(self):
        assert is_valid_domain("n8n.example.com")
        assert is_valid_domain("a-b.c.example.io")

    def test_invalid(self):
        assert not is_valid_domain("")
        assert not is_valid_domain("localhost")
        assert not is_valid_domain("-bad.example.com")
        assert not is_valid_domain("has space.example.com")
        assert not is_valid_domain("UPPER.example.com")


# ── Infra preflight ─────────────────────────────────────────────────


class TestInfraPreflight:
    def test_clean_project_passes(self, cloud, graph):
        result = Preflight(cloud, graph).before(Stage.INFRA)
        assert result.passed, result.failures
        assert result.stage == "infra"

    def test_all_failures_reported(self, cloud, graph, mock):
        mock.account = None
        mock.tools = {"gcloud"}
        mock.machine_types = {}
        result = Preflight(cloud, graph).before(Stage.INFRA)
        names = [f.split(":")[0] for f in result.failures]
        assert "authentication" in names
        assert "tool" in names
        assert "machine-type" in names
        assert "quota" in names
        assert len(result.failures) == 5

    def test_missing_api_is_enabled(self, cloud, graph, mock):
        mock.missing_apis = {"iam.googleapis.com"}
        result = Preflight(cloud, graph).before(Stage.INFRA)
        apis = _by_name(result, "apis")
        assert apis.ok
        assert apis.remediated
        assert "iam.googleapis.com" in apis.reason
        assert len(mock.calls("enable_api")) == 1

    def test_api_that_cannot_be_enabled(self, cloud, graph, mock):
        mock.missing_apis = {"iam.googleapis.com"}
        mock.fail_enable = {"iam.googleapis.com"}
        result = Preflight(cloud, graph).before(Stage.INFRA)
        apis = _by_name(result, "apis")
        assert not apis.ok
        assert "iam.googleapis.com" in apis.reason
        assert "permission denied" in apis.reason

    def test_insufficient_quota(self, cloud, graph, mock):
        mock.quotas["CPUS"] = {"limit": 8.0, "usage": 6.0}
        result = Preflight(cloud, graph).before(Stage.INFRA)
        quota = _by_name(result, "quota")
        assert not quota.ok
        assert "CPUS: need 4, 2 available" in quota.reason

    def test_regional_quota_is_tripled(self, registry, prod_env, mock):
        mock.quotas["CPUS"] = {"limit": 12.0, "usage": 0.0}
        preflight = Preflight(CloudClient(registry, prod_env), build_graph(prod_env))
        quota = preflight.check_quota()
        assert not quota.ok
        assert "need 18" in quota.reason

    def test_quota_skipped_for_existing_cluster(self, cloud, graph, mock):
        mock.seed("cluster", "cluster")
        mock.quotas["CPUS"] = {"limit": 0.0, "usage": 0.0}
        assert Preflight(cloud, graph).check_quota().ok

    def test_broken_cluster_fails(self, cloud, graph, mock):
        mock.seed("cluster", "cluster", status="ERROR")
        result = Preflight(cloud, graph).before(Stage.INFRA)
        state = _by_name(result, "cluster-state")
        assert not state.ok
        assert "ERROR" in state.reason

    def test_network_cidr_conflict(self, cloud, graph, mock):
        mock.seed("network", "network", params={"subnet_cidr": "10.9.0.0/24"})
        check = Preflight(cloud, graph).check_network_conflict()
        assert not check.ok
        assert "10.9.0.0/24" in check.reason

    def test_existing_compatible_network(self, cloud, graph, mock):
        spec = graph.get("network").spec
        mock.seed("network", "network", params=dict(spec))
        assert Preflight(cloud, graph).check_network_conflict().ok

    def test_no_mutation_besides_api_enable(self, cloud, graph, mock):
        Preflight(cloud, graph).before(Stage.INFRA)
        verbs = {c.action.verb for c in mock.call_log}
        assert not verbs & {"create", "update", "delete"}


# ── App preflight ───────────────────────────────────────────────────


class TestAppPreflight:
    def test_fails_before_infra(self, cloud, graph):
        result = Preflight(cloud, graph).before(Stage.APP)
        infra = _by_name(result, "infra-ready")
        assert not infra.ok
        assert "network (absent)" in infra.reason
        assert "rollout deploy dev apply-infra" in infra.reason
        assert not _by_name(result, "credentials").ok

    def test_passes_after_infra(self, cloud, graph, apply_target):
        apply_target(Target.INFRA)
        result = Preflight(cloud, graph).before(Stage.APP)
        assert result.passed, result.failures

    def test_names_unready_infra_node(self, cloud, graph, mock, apply_target):
        apply_target(Target.INFRA)
        mock.observations["node-pool"] = {"pool_status": "RECONCILING"}
        infra = Preflight(cloud, graph).check_infra_ready()
        assert not infra.ok
        assert "node-pool" in infra.reason
        assert "network" not in infra.reason.split("Run")[0]

    def test_invalid_domain(self, config_file, registry):
        config = load_config(config_file, environ={"ROLLOUT_DOMAIN": "not_a_domain"})
        env = resolve_environment(config, "dev")
        check = Preflight(CloudClient(registry, env), build_graph(env)).check_domain()
        assert not check.ok
        assert "not_a_domain" in check.reason

    def test_static_ip_conflict(self, cloud, graph, mock):
        mock.seed("static-ip", "address", address_type="INTERNAL")
        assert not Preflight(cloud, graph).check_address_conflict().ok

    def test_certificate_for_other_domain(self, cloud, graph, mock):
        mock.seed("certificate", "certificate", domains=["other.example.com"])
        check = Preflight(cloud, graph).check_certificate_conflict()
        assert not check.ok
        assert "other.example.com" in check.reason


# ── Destroy and post-stage checks ───────────────────────────────────


class TestDestroyPreflight:
    def test_unauthenticated(self, cloud, graph, mock):
        mock.account = None
        result = Preflight(cloud, graph).before_destroy()
        assert not result.passed
        assert result.stage == "destroy"

    def test_missing_project(self, cloud, graph, mock):
        mock.project_exists = False
        result = Preflight(cloud, graph).before_destroy()
        assert "project: project 'test-project' not found" in result.failures


class TestPostStageChecks:
    def test_converged_infra_passes(self, cloud, graph, apply_target):
        apply_target(Target.INFRA)
        result = Preflight(cloud, graph).after(Stage.INFRA)
        assert result.passed
        assert result.phase == "post-stage"
        assert _by_name(result, "system-pods").ok

    def test_low_system_pods_fails(self, cloud, graph, mock, apply_target):
        apply_target(Target.INFRA)
        mock.system_pods = (7, 10)
        result = Preflight(cloud, graph).after(Stage.INFRA)
        assert result.failures == ["system-pods: only 7/10 system pods running (need 80%)"]

    def test_unconverged_node_is_a_warning(self, cloud, graph, mock, apply_target):
        apply_target(Target.INFRA)
        mock.observations["router"] = {"nat": None}
        result = Preflight(cloud, graph).after(Stage.INFRA)
        assert result.passed
        assert any(w.startswith("converged:router") for w in result.warnings)
