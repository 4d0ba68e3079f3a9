"""
Shell command runner — the subprocess boundary for tool adapters.

gcloud and kubectl adapters build argument lists and run them through
``run_command``. It never raises: timeouts and launch errors come back
as a CommandResult with a non-zero return code.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Captured result of one external command."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return " ".join(self.args)

    @property
    def error(self) -> str:
        """Best human-readable error text."""
        if self.timed_out:
            return f"Command timed out: {self.command}"
        return self.stderr or self.stdout or f"Command exited with code {self.returncode}"

    def json(self) -> Any:
        """Parse stdout as JSON. Empty output parses as None."""
        text = self.stdout.strip()
        if not text:
            return None
        return json.loads(text)


def tool_available(tool: str) -> bool:
    """Check whether an executable resolves on PATH."""
    return shutil.which(tool) is not None


def run_command(
    args: list[str],
    input_text: str | None = None,
    timeout: float = 300.0,
    cwd: str | None = None,
) -> CommandResult:
    """Run a command without a shell and capture its output.

    Args:
        args: Program and arguments.
        input_text: Optional text fed on stdin (e.g. manifests for kubectl apply).
        timeout: Wall-clock limit in seconds.
        cwd: Working directory.
    """
    logger.debug("Executing: %s", " ".join(args))
    start = time.monotonic()

    try:
        proc = subprocess.run(
            args,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            args=args,
            returncode=124,
            duration_ms=int((time.monotonic() - start) * 1000),
            timed_out=True,
        )
    except OSError as e:
        return CommandResult(
            args=args,
            returncode=127,
            stderr=f"Cannot execute {args[0]}: {e}",
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    result = CommandResult(
        args=args,
        returncode=proc.returncode,
        stdout=proc.stdout.strip(),
        stderr=proc.stderr.strip(),
        duration_ms=int((time.monotonic() - start) * 1000),
    )
    if not result.ok:
        logger.debug("Command failed (%d): %s", result.returncode, result.stderr)
    return result
