"""
Run lock — one mutating run per environment at a time.

The owner's pid is written to a temp file beside the lock and published
with a hard link, which fails when the lock already exists, so a lock
file is never seen half-written. A lock whose pid is no longer alive is
stale and is reclaimed; a live one rejects the new run. An unreadable
lock younger than UNREADABLE_GRACE seconds counts as live.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from datetime import UTC, datetime
from pathlib import Path

from rollout.core.errors import RunLockError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_DIR = Path(".state") / "locks"
UNREADABLE_GRACE = 10.0  # seconds


def lock_path(project_root: Path, environment: str) -> Path:
    return project_root / DEFAULT_LOCK_DIR / f"{environment}.lock"


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    return True


class RunLock:
    """Exclusive per-environment lock, usable as a context manager."""

    def __init__(self, path: Path, action: str = ""):
        self._path = path
        self._action = action
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def owner(self) -> dict | None:
        """Contents of the current lock file, if any."""
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            return {}

    def acquire(self) -> None:
        """Take the lock, reclaiming a stale one.

        Raises:
            RunLockError: If a live process holds the lock.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({
            "pid": os.getpid(),
            "action": self._action,
            "acquired_at": datetime.now(UTC).isoformat(),
        })

        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            for _ in range(2):
                try:
                    os.link(tmp, self._path)
                except FileExistsError:
                    self._reclaim_if_stale()
                    continue
                self._held = True
                logger.debug("Acquired run lock %s", self._path)
                return
        finally:
            os.unlink(tmp)

        raise RunLockError(f"Could not acquire run lock {self._path}")

    def _reclaim_if_stale(self) -> None:
        owner = self.owner()
        if owner is None:
            return
        pid = int(owner.get("pid", 0) or 0)
        if not owner and self._age() < UNREADABLE_GRACE:
            raise RunLockError(
                f"Unreadable run lock {self._path} was written moments ago",
                remediation="Another run is starting on this environment. Retry shortly.",
            )
        if _pid_alive(pid):
            raise RunLockError(
                f"Another run ({owner.get('action') or 'unknown'}, pid {pid}) "
                f"holds {self._path}",
                remediation="Wait for it to finish. Concurrent runs on one "
                "environment are not supported.",
            )
        logger.warning("Reclaiming stale run lock %s (pid %s)", self._path, pid)
        self._path.unlink(missing_ok=True)

    def _age(self) -> float:
        try:
            return time.time() - self._path.stat().st_mtime
        except FileNotFoundError:
            return UNREADABLE_GRACE

    def release(self) -> None:
        if not self._held:
            return
        self._path.unlink(missing_ok=True)
        self._held = False
        logger.debug("Released run lock %s", self._path)

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
