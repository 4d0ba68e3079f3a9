"""
Config check use case — validate rollout.yml and report issues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from rollout.core.config.loader import (
    ConfigError,
    find_config_file,
    load_config,
    resolve_environment,
)
from rollout.core.engine.catalog import build_graph
from rollout.core.engine.preflight import is_valid_domain
from rollout.core.models.config import RolloutConfig, Topology


@dataclass
class ConfigCheckResult:
    """Result of configuration validation."""

    valid: bool = False
    config: RolloutConfig | None = None
    config_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "project_id": self.config.project.project_id if self.config else None,
            "environments": [
                {
                    "name": e.name,
                    "default": e.default,
                    "protected": e.protected,
                    "topology": e.topology.value,
                }
                for e in self.config.environments
            ] if self.config else [],
        }


def check_config(config_path: Path | None = None) -> ConfigCheckResult:
    """Validate deployment configuration and report issues.

    Args:
        config_path: Optional explicit path to rollout.yml.

    Returns:
        ConfigCheckResult with validation status and any issues.
    """
    result = ConfigCheckResult()

    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        result.errors.append("No rollout.yml found.")
        return result
    result.config_path = config_path

    # Load and validate
    try:
        config = load_config(config_path)
        result.config = config
    except ConfigError as e:
        result.errors.append(str(e))
        return result

    if not config.environments:
        result.errors.append("No environments defined. Add at least 'dev'.")

    if not is_valid_domain(config.project.domain):
        result.errors.append(f"project.domain '{config.project.domain}' is not a valid DNS name")

    defaults = [e for e in config.environments if e.default]
    if config.environments and not defaults:
        result.warnings.append(
            f"No default environment; '{config.environments[0].name}' will be used "
            "when none is given."
        )
    if len(defaults) > 1:
        result.warnings.append(
            f"Multiple default environments: {', '.join(e.name for e in defaults)}. "
            "Only the first will be used."
        )

    # Every environment must produce a valid resource graph
    for env in config.environments:
        try:
            build_graph(resolve_environment(config, env.name))
        except ConfigError as e:
            result.errors.append(f"Environment '{env.name}': {e}")

        if env.protected and not env.deletion_protection:
            result.warnings.append(
                f"Environment '{env.name}' is protected but its cluster has no "
                "deletion protection."
            )
        if env.topology == Topology.ZONAL and not config.project.zone.startswith(
            f"{config.project.region}-"
        ):
            result.warnings.append(
                f"Environment '{env.name}' is zonal but zone '{config.project.zone}' "
                f"is not in region '{config.project.region}'."
            )
        if env.topology == Topology.ZONAL and env.sizing.max_nodes > 3:
            result.warnings.append(
                f"Environment '{env.name}' scales to {env.sizing.max_nodes} nodes in a "
                "single zone; consider topology: regional."
            )

    result.valid = len(result.errors) == 0
    return result
