"""
Tests for the CLI entrypoint.
"""

import json
import os
from pathlib import Path

import pytest
from click.testing import CliRunner

from rollout.core.config.loader import ENV_OVERRIDES
from rollout.core.use_cases.deploy import DEPLOY_ACTIONS
from rollout.main import cli


@pytest.fixture(autouse=True)
def _no_overrides(monkeypatch):
    for var in ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def rollout(config_file: Path):
    """Invoke the CLI against the test config, quietly."""
    runner = CliRunner()

    def _invoke(*args: str):
        return runner.invoke(cli, ["--quiet", "--config", str(config_file), *args])

    return _invoke


def _json(result) -> dict:
    return json.loads(result.stdout)


class TestCliBasics:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("deploy", "destroy", "status", "config", "history"):
            assert command in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_deploy_help_lists_actions(self):
        result = CliRunner().invoke(cli, ["deploy", "--help"], terminal_width=200)
        assert "plan-infra" in result.output
        assert "apply-app" in result.output

    def test_deploy_choices_follow_use_case(self):
        action = next(p for p in cli.commands["deploy"].params if p.name == "action")
        assert list(action.type.choices) == list(DEPLOY_ACTIONS)

    def test_unknown_action_is_usage_error(self, rollout):
        result = rollout("deploy", "dev", "launch", "--mock")
        assert result.exit_code == 2


# ── config check ────────────────────────────────────────────────────


class TestConfigCommand:
    def test_valid(self, rollout):
        result = rollout("config", "check")
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output
        assert "dev (zonal, default)" in result.output
        assert "prod (regional, protected)" in result.output

    def test_json(self, rollout):
        result = rollout("config", "check", "--json")
        assert result.exit_code == 0
        data = _json(result)
        assert data["valid"] is True
        assert data["project_id"] == "test-project"

    def test_invalid(self, tmp_path: Path):
        path = tmp_path / "rollout.yml"
        path.write_text("project:\n  project_id: p1\n")
        result = CliRunner().invoke(cli, ["--config", str(path), "config", "check"])
        assert result.exit_code == 1
        assert "Configuration errors" in result.output

    def test_no_config(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = CliRunner().invoke(cli, ["config", "check"])
        assert result.exit_code == 1
        assert "No rollout.yml found" in result.output


# ── deploy ──────────────────────────────────────────────────────────


class TestDeployCommand:
    def test_plan_infra(self, rollout, config_file: Path):
        result = rollout("deploy", "dev", "plan-infra", "--mock", "--json")
        assert result.exit_code == 0, result.output
        data = _json(result)
        assert [s["action"] for s in data["plan"]["steps"]] == ["create"] * 5
        assert Path(data["plan_path"]).is_file()
        assert data["run"]["outcome"] == "success"

    def test_json_without_yes_denies(self, rollout, config_file: Path):
        result = rollout("deploy", "dev", "apply-infra", "--mock", "--json")
        assert result.exit_code == 0
        assert _json(result)["run"]["outcome"] == "cancelled"
        state = config_file.parent / ".state" / "mock_cloud.json"
        assert not state.exists() or json.loads(state.read_text())["resources"] == {}

    def test_apply_infra_text(self, rollout, config_file: Path):
        result = rollout("deploy", "dev", "apply-infra", "--mock", "--yes")
        assert result.exit_code == 0, result.output
        assert "apply-infra dev: success" in result.output
        assert not (config_file.parent / ".state" / "plans" / "dev-infra.plan.json").exists()

    def test_apply_app_before_infra(self, rollout):
        result = rollout("deploy", "dev", "apply-app", "--mock", "--yes")
        assert result.exit_code == 1
        assert "network (absent)" in result.output
        assert "apply-infra" in result.output

    def test_unknown_environment(self, rollout):
        result = rollout("deploy", "qa", "plan", "--mock", "--json")
        assert result.exit_code == 1
        assert "Unknown environment 'qa'" in _json(result)["error"]

    def test_locked_environment(self, rollout, config_file: Path):
        lock = config_file.parent / ".state" / "locks" / "dev.lock"
        lock.parent.mkdir(parents=True)
        lock.write_text(json.dumps({"pid": os.getpid(), "action": "apply"}))
        result = rollout("deploy", "dev", "apply-infra", "--mock", "--yes", "--json")
        assert result.exit_code == 1
        assert "holds" in _json(result)["error"]
        assert lock.exists()


# ── status / destroy / history ──────────────────────────────────────


class TestStatusAndDestroy:
    def test_status_of_empty_environment(self, rollout):
        result = rollout("status", "dev", "--infra", "--mock")
        assert result.exit_code == 1
        assert "Not ready: network, firewall, router, cluster, node-pool" in result.output

    def test_status_after_apply(self, rollout):
        rollout("deploy", "dev", "apply-infra", "--mock", "--yes")
        result = rollout("status", "dev", "--infra", "--mock", "--json")
        assert result.exit_code == 0
        data = _json(result)
        assert data["all_ready"] is True
        assert [n["node_id"] for n in data["nodes"]] == [
            "network", "firewall", "router", "cluster", "node-pool",
        ]

    def test_destroy_target_option(self, rollout):
        rollout("deploy", "dev", "apply-infra", "--mock", "--yes")
        result = rollout("destroy", "dev", "--target", "infra", "--mock", "--yes", "--json")
        assert result.exit_code == 0, result.output
        data = _json(result)
        assert data["target"] == "infra"
        assert data["run"]["outcome"] == "success"

    def test_destroy_declined_without_yes(self, rollout):
        rollout("deploy", "dev", "apply-infra", "--mock", "--yes")
        result = rollout("destroy", "dev", "infra", "--mock", "--json")
        assert result.exit_code == 0
        assert _json(result)["run"]["outcome"] == "cancelled"
        status = rollout("status", "dev", "--infra", "--mock")
        assert status.exit_code == 0

    def test_history(self, rollout):
        rollout("deploy", "dev", "plan-infra", "--mock")
        rollout("status", "dev", "--mock")
        result = rollout("history", "--json")
        assert result.exit_code == 0
        actions = [e["action"] for e in _json(result)["entries"]]
        assert actions == ["plan-infra", "status"]

        text = rollout("history", "--env", "prod")
        assert "No runs recorded yet." in text.output
