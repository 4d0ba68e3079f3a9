"""
Session — everything one command needs about its environment.

Loads rollout.yml, resolves the environment, builds the resource graph
and wires the adapter registry (real tools or the simulated cloud).
Also maps run outcomes to process exit codes, shared by every use case.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from rollout.adapters.registry import AdapterRegistry
from rollout.core.config.loader import (
    ConfigError,
    find_config_file,
    load_config,
    project_root,
    resolve_environment,
)
from rollout.core.engine.catalog import build_graph
from rollout.core.engine.cloud import CloudClient
from rollout.core.engine.graph import ResourceGraph
from rollout.core.models.config import ResolvedEnvironment
from rollout.core.models.run import DeploymentRun, Outcome
from rollout.core.observability.logging_config import bind_run

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_FAILED = 2
EXIT_PARTIAL = 3
EXIT_INTERRUPTED = 130

_EXIT_CODES = {
    Outcome.SUCCESS: EXIT_OK,
    Outcome.CANCELLED: EXIT_OK,
    Outcome.VALIDATION_FAILED: EXIT_VALIDATION,
    Outcome.APPLY_FAILED: EXIT_FAILED,
    Outcome.PARTIAL: EXIT_PARTIAL,
    Outcome.INTERRUPTED: EXIT_INTERRUPTED,
}


def exit_code_for(outcome: Outcome) -> int:
    return _EXIT_CODES.get(outcome, EXIT_FAILED)


@dataclass
class Session:
    """Resolved environment plus the collaborators that act on it."""

    config_path: Path
    root: Path
    env: ResolvedEnvironment
    graph: ResourceGraph
    registry: AdapterRegistry
    cloud: CloudClient
    mock: bool = False

    def new_run(self, action: str, target: str) -> DeploymentRun:
        run = DeploymentRun(
            environment=self.env.name,
            action=action,
            target=target,
            mock=self.mock,
            config={
                "project_id": self.env.project.project_id,
                "cluster": self.env.prefix,
                "location": self.env.location,
                "topology": self.env.environment.topology.value,
            },
        )
        bind_run(run.run_id)
        return run


def build_registry(root: Path, env: ResolvedEnvironment, mock: bool = False) -> AdapterRegistry:
    """Registry with the real gcloud/kubectl adapters, or the simulated cloud."""
    registry = AdapterRegistry(mock_mode=mock, project_root=str(root), environment=env.name)
    if mock:
        from rollout.adapters.mock import DEFAULT_STATE_FILE, MockAdapter

        registry.set_mock_mode(True, MockAdapter(state_path=root / DEFAULT_STATE_FILE))
        return registry

    from rollout.adapters.cloud.gcloud import GcloudAdapter
    from rollout.adapters.cloud.kubectl import KubectlAdapter

    registry.register(GcloudAdapter(project_id=env.project.project_id))
    registry.register(KubectlAdapter())
    return registry


def open_session(
    environment: str | None,
    config_path: Path | None = None,
    mock: bool = False,
    registry: AdapterRegistry | None = None,
) -> Session:
    """Load config and wire collaborators for one environment.

    Args:
        environment: Environment name; None selects the default one.
        config_path: Explicit rollout.yml; searched upward when None.
        mock: Use the simulated cloud instead of gcloud/kubectl.
        registry: Pre-configured registry (tests).

    Raises:
        ConfigError: Missing or invalid config, or unknown environment.
    """
    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        raise ConfigError("No rollout.yml found. Create one, or pass --config.")

    config = load_config(config_path)
    if environment is None:
        default = config.default_environment()
        if default is None:
            raise ConfigError("No environment given and none is marked default.")
        environment = default.name

    env = resolve_environment(config, environment)
    root = project_root(config_path)
    graph = build_graph(env)

    if registry is None:
        registry = build_registry(root, env, mock=mock)
    logger.debug("Session for %s at %s (mock=%s)", env.name, root, registry.mock_mode)

    return Session(
        config_path=config_path,
        root=root,
        env=env,
        graph=graph,
        registry=registry,
        cloud=CloudClient(registry, env),
        mock=registry.mock_mode,
    )
