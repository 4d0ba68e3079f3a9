"""
Run-plan artifact — the intended actions between plan and apply.

Stored as JSON in .state/plans/<env>-<target>.plan.json. Writes are
atomic (write to temp file, then rename). The artifact is disposable:
it is shown for confirmation and deleted once the apply finishes, and
nothing reads it back as a description of cloud state.
"""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_PLAN_DIR = Path(".state") / "plans"


def plan_path(project_root: Path, environment: str, target: str) -> Path:
    """Get the plan artifact path for an environment and target."""
    return project_root / DEFAULT_PLAN_DIR / f"{environment}-{target}.plan.json"


def save_plan(plan: dict[str, Any], path: Path) -> Path:
    """Save a plan to a JSON file (atomic write)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(plan, indent=2, ensure_ascii=False) + "\n"

    _fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".plan_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with open(_fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp.replace(path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
    logger.debug("Plan saved to %s", path)
    return path


def load_plan(path: Path) -> dict[str, Any] | None:
    """Load a plan artifact, or None if it is missing or unreadable."""
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable plan %s: %s", path, e)
        return None


def discard_plan(path: Path) -> bool:
    """Delete a plan artifact. Returns True if a file was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.debug("Plan discarded: %s", path)
    return True
