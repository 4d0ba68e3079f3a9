"""
Audit ledger — one NDJSON line per finished run.

Backs ``rollout history``. Node states always come from the cloud;
the ledger is never read to decide what to deploy or destroy.
Entries are only ever appended.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from rollout.core.models.run import DeploymentRun

logger = logging.getLogger(__name__)

# Default audit location (relative to project root)
DEFAULT_AUDIT_DIR = ".state"
DEFAULT_AUDIT_FILE = "audit.ndjson"


class AuditEntry(BaseModel):
    """A single audit log entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    action: str = ""               # apply-infra, plan, destroy, status, ...
    environment: str = ""
    target: str = ""

    # Results
    outcome: str = ""              # success, partial, apply-failed, ...
    mock: bool = False
    nodes_total: int = 0
    node_states: dict[str, int] = Field(default_factory=dict)
    duration_ms: int = 0

    # Errors (if any)
    errors: list[str] = Field(default_factory=list)
    warnings: int = 0

    # Project, cluster, location and topology the run targeted
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_run(cls, run: DeploymentRun) -> AuditEntry:
        """Summarize a finished run."""
        duration_ms = 0
        if run.ended_at:
            start = datetime.fromisoformat(run.started_at)
            end = datetime.fromisoformat(run.ended_at)
            duration_ms = int((end - start).total_seconds() * 1000)

        return cls(
            run_id=run.run_id,
            action=run.action,
            environment=run.environment,
            target=run.target,
            outcome=run.outcome.value,
            mock=run.mock,
            nodes_total=len(run.nodes),
            node_states=run.summary()["node_states"],
            duration_ms=duration_ms,
            errors=[
                f"{f.node}: {f.message}" if f.node else f.message
                for f in run.failures
            ],
            warnings=len(run.warnings),
            context=dict(run.config),
        )


class AuditWriter:
    """Appends run summaries to ``.state/audit.ndjson`` and reads them back."""

    def __init__(self, path: Path | None = None, project_root: Path | None = None):
        root = project_root if project_root is not None else Path(".")
        self._path = path if path is not None else root / DEFAULT_AUDIT_DIR / DEFAULT_AUDIT_FILE

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        """Append one entry. A ledger that cannot be written is logged, not fatal."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False)
        try:
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.error("Failed to write audit entry for %s: %s", entry.run_id, e)
            return
        logger.debug("Audit entry written: %s %s (%s)", entry.action, entry.environment, entry.run_id)

    def record(self, run: DeploymentRun) -> AuditEntry:
        """Write the summary of a finished run."""
        entry = AuditEntry.from_run(run)
        self.write(entry)
        return entry

    def entries(self) -> Iterator[AuditEntry]:
        """Stream entries oldest first, skipping lines that do not parse."""
        if not self._path.is_file():
            return
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        yield AuditEntry.model_validate_json(line)
                    except ValidationError as e:
                        logger.warning("Skipping corrupt audit entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read audit ledger %s: %s", self._path, e)

    def read_all(self) -> list[AuditEntry]:
        return list(self.entries())

    def read_recent(self, n: int = 20, environment: str | None = None) -> list[AuditEntry]:
        """The last ``n`` entries, oldest first, optionally for one environment."""
        if n <= 0:
            return []
        recent: deque[AuditEntry] = deque(maxlen=n)
        for entry in self.entries():
            if environment is None or entry.environment == environment:
                recent.append(entry)
        return list(recent)
