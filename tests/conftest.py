"""
Shared test fixtures and configuration.
"""

import textwrap
from pathlib import Path

import pytest

from rollout.adapters.mock import MockAdapter
from rollout.adapters.registry import AdapterRegistry
from rollout.core.config.loader import load_config, resolve_environment
from rollout.core.engine.catalog import build_graph
from rollout.core.engine.cloud import CloudClient
from rollout.core.engine.executor import StageExecutor
from rollout.core.models.resource import Target
from rollout.core.models.run import DeploymentRun

CONFIG = textwrap.dedent("""\
    version: 1
    project:
      project_id: test-project
      region: us-central1
      zone: us-central1-a
      domain: n8n.example.com
    environments:
      - name: dev
        default: true
        topology: zonal
        sizing:
          machine_type: e2-medium
          min_nodes: 1
          max_nodes: 2
      - name: prod
        protected: true
        topology: regional
        deletion_protection: true
        sizing:
          machine_type: e2-standard-2
          max_nodes: 3
    timeouts:
      default: 5
      cluster: 5
      node_pool: 5
      database: 5
      workload: 5
      ingress: 5
      certificate: 5
      poll_interval: 1
      max_poll_interval: 2
      backoff: 1.0
""")


class FakeClock:
    """Monotonic clock whose sleep advances time instead of blocking."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """A rollout.yml with short timeouts in a temporary project root."""
    path = tmp_path / "rollout.yml"
    path.write_text(CONFIG)
    return path


@pytest.fixture
def env(config_file: Path):
    return resolve_environment(load_config(config_file, environ={}), "dev")


@pytest.fixture
def prod_env(config_file: Path):
    return resolve_environment(load_config(config_file, environ={}), "prod")


@pytest.fixture
def graph(env):
    return build_graph(env)


@pytest.fixture
def mock() -> MockAdapter:
    """In-memory simulated cloud (not persisted)."""
    return MockAdapter()


@pytest.fixture
def registry(mock: MockAdapter) -> AdapterRegistry:
    registry = AdapterRegistry(mock_mode=True)
    registry.set_mock_mode(True, mock)
    return registry


@pytest.fixture
def cloud(registry: AdapterRegistry, env) -> CloudClient:
    return CloudClient(registry, env)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor(cloud, graph, clock) -> StageExecutor:
    return StageExecutor(cloud, graph, clock=clock, sleep=clock.sleep)


@pytest.fixture
def apply_target(executor, env):
    """Apply a target against the simulated cloud and return the run."""

    def _apply(target: Target) -> DeploymentRun:
        run = DeploymentRun(environment=env.name, action=f"apply-{target.value}",
                            target=target.value, mock=True)
        executor.apply(run, target)
        run.finalize()
        return run

    return _apply
