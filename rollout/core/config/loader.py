"""
Configuration loader — reads rollout.yml into domain models.

This is the primary entry point for loading deployment configuration.
It reads YAML, applies environment variable overrides, validates
against Pydantic schemas, and returns typed domain objects.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from rollout.core.models.config import ResolvedEnvironment, RolloutConfig

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "rollout.yml"

# Environment variables that override project settings after the file is read.
ENV_OVERRIDES = {
    "ROLLOUT_PROJECT_ID": "project_id",
    "ROLLOUT_REGION": "region",
    "ROLLOUT_ZONE": "zone",
    "ROLLOUT_DOMAIN": "domain",
}


class ConfigError(Exception):
    """Raised when deployment configuration is invalid or missing."""


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for rollout.yml starting from the given directory, walking up.

    This allows running commands from subdirectories and still finding
    the project root.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to rollout.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
    return "; ".join(parts)


def apply_env_overrides(data: dict, environ: dict[str, str] | None = None) -> list[str]:
    """Apply ROLLOUT_* overrides onto the raw ``project`` mapping.

    Returns the names of the variables that were applied.
    """
    environ = os.environ if environ is None else environ
    project = data.setdefault("project", {})
    if not isinstance(project, dict):
        raise ConfigError("'project' must be a mapping")

    applied = []
    for var, key in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            project[key] = value
            applied.append(var)
            logger.debug("Config override %s -> project.%s", var, key)
    return applied


def load_config(
    path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> RolloutConfig:
    """Load and validate deployment configuration.

    Args:
        path: Explicit path to rollout.yml. If None, searches upward.
        environ: Environment mapping for overrides (default: os.environ).

    Returns:
        Validated RolloutConfig model.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigError(
            f"No {CONFIG_FILE} found. "
            "Create one in the project root, or specify --config."
        )

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading rollout config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    apply_env_overrides(data, environ)

    try:
        config = RolloutConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid rollout configuration: {_format_validation_error(e)}") from e

    names = [env.name for env in config.environments]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate environment name(s): {', '.join(duplicates)}")

    logger.info(
        "Loaded config for project '%s' with %d environment(s)",
        config.project.project_id, len(config.environments),
    )
    return config


def resolve_environment(config: RolloutConfig, name: str) -> ResolvedEnvironment:
    """Join project settings with one environment profile.

    Raises:
        ConfigError: If the environment is not declared.
    """
    env = config.get_environment(name)
    if env is None:
        known = ", ".join(e.name for e in config.environments) or "none"
        raise ConfigError(f"Unknown environment '{name}' (declared: {known})")

    return ResolvedEnvironment(
        project=config.project,
        network=config.network,
        environment=env,
        timeouts=config.timeouts,
    )


def project_root(config_path: Path) -> Path:
    """Get the project root directory from a config file path."""
    return config_path.parent.resolve()
