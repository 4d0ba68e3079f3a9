"""
Logging configuration — set up once by the CLI entrypoint.

Logs go to stderr; user-facing output goes through click on stdout.
Console level: CLI flag, then ROLLOUT_LOG_LEVEL, then WARNING.
ROLLOUT_LOG_FILE adds a file handler (own level via
ROLLOUT_LOG_FILE_LEVEL) whose lines carry the active run id, so a
log file can be matched against the audit ledger.
"""

from __future__ import annotations

import contextvars
import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass

LEVEL_ENV = "ROLLOUT_LOG_LEVEL"
FILE_ENV = "ROLLOUT_LOG_FILE"
FILE_LEVEL_ENV = "ROLLOUT_LOG_FILE_LEVEL"

# Console format per threshold: (format, datefmt)
_CONSOLE_FORMATS: dict[int, tuple[str, str | None]] = {
    logging.DEBUG: ("%(asctime)s %(levelname)-5s %(name)s:%(lineno)d %(message)s", "%H:%M:%S"),
    logging.INFO: ("%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
    logging.WARNING: ("%(message)s", None),
}

_FILE_FORMAT = "%(asctime)s %(levelname)-5s [%(run_id)s] %(name)s:%(lineno)d %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Library loggers held at WARNING below DEBUG
_NOISY_LOGGERS = ("urllib3", "google", "kubernetes")

_current_run: contextvars.ContextVar[str] = contextvars.ContextVar("rollout_run", default="-")


class RunTagFilter(logging.Filter):
    """Stamp each record with the run id bound for the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _current_run.get()
        return True


def bind_run(run_id: str) -> None:
    """Tag subsequent log records with ``run_id``."""
    _current_run.set(run_id)


@dataclass
class LogSettings:
    level: str = "WARNING"
    log_file: str | None = None
    log_file_level: str | None = None

    @classmethod
    def from_environ(
        cls,
        cli_level: str | None,
        environ: Mapping[str, str] | None = None,
    ) -> LogSettings:
        environ = os.environ if environ is None else environ
        return cls(
            level=resolve_level(cli_level, environ),
            log_file=environ.get(FILE_ENV) or None,
            log_file_level=environ.get(FILE_LEVEL_ENV) or None,
        )


def resolve_level(
    cli_level: str | None,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Pick the console level: CLI flag, then env var, then WARNING."""
    if cli_level:
        return cli_level
    environ = os.environ if environ is None else environ
    return environ.get(LEVEL_ENV) or "WARNING"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Configure Python logging for the entire process.

    Args:
        level: Console level name. Unknown names fall back to WARNING.
        log_file: Optional path to a log file.
        log_file_level: Level for the log file; defaults to ``level``.
        quiet_third_party: Hold library loggers at WARNING unless the
            console is at DEBUG.
    """
    console_level = _parse_level(level)
    threshold = max(t for t in _CONSOLE_FORMATS if t <= max(console_level, logging.DEBUG))
    fmt, datefmt = _CONSOLE_FORMATS[threshold]

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    handlers: list[logging.Handler] = [console]

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.addFilter(RunTagFilter())
        fh.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
        handlers.append(fh)

    root = logging.getLogger()
    root.handlers[:] = handlers
    # Root passes whatever the most verbose handler wants
    root.setLevel(min(h.level for h in handlers))

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    numeric = getattr(logging, level.upper(), None) if level else None
    return numeric if isinstance(numeric, int) else logging.WARNING
