"""
History use case — recent runs from the audit ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from rollout.core.config.loader import find_config_file, project_root
from rollout.core.persistence.audit import AuditEntry, AuditWriter


@dataclass
class HistoryResult:
    entries: list[AuditEntry] = field(default_factory=list)
    ledger: Path | None = None

    def to_dict(self) -> dict:
        return {
            "ledger": str(self.ledger) if self.ledger else None,
            "entries": [e.model_dump(mode="json") for e in self.entries],
        }


def get_history(
    limit: int = 20,
    config_path: Path | None = None,
    environment: str | None = None,
) -> HistoryResult:
    """Most recent audit entries, oldest first, optionally for one environment."""
    if config_path is None:
        config_path = find_config_file()
    root = project_root(config_path) if config_path else Path.cwd()

    writer = AuditWriter(project_root=root)
    return HistoryResult(entries=writer.read_recent(limit, environment), ledger=writer.path)
