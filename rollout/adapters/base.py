"""
Adapter base — the contract between the engine and the cloud tools.

The engine reaches gcloud and kubectl only through adapters looked up in
the registry. ``CommandAdapter`` holds the plumbing both CLI adapters
share: an injectable command runner, the per-call action id and
timeout, and receipt helpers.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from rollout.adapters.shell.command import CommandResult, run_command, tool_available
from rollout.core.models.action import Action, Receipt

logger = logging.getLogger(__name__)

Runner = Callable[..., CommandResult]


class ExecutionContext(BaseModel):
    """One action plus what the adapter needs to carry it out."""

    action: Action
    project_root: str = "."
    environment: str = "dev"
    timeout: float = 300.0           # wall-clock limit for one tool call
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def node_id(self) -> str | None:
        return self.action.node_id

    @property
    def verb(self) -> str:
        return self.action.verb


class Adapter(ABC):
    """A binding to one external tool.

    ``execute`` never raises: every outcome, including a crash of the
    tool, comes back as a Receipt.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry key ('gcloud', 'kubectl', 'mock')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the underlying tool can be used right now. Never raises."""

    @abstractmethod
    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        """(is_valid, error_message); the message is empty when valid."""

    @abstractmethod
    def execute(self, context: ExecutionContext) -> Receipt:
        """Carry out the action; failures are receipts with status 'failed'."""

    def tool_available(self, tool: str) -> bool:
        """Whether an external binary resolves. Overridden by simulated tools."""
        return tool_available(tool)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class CommandAdapter(Adapter):
    """Adapter backed by one CLI binary.

    Subclasses set ``tool`` and ``classify`` (error text to receipt
    reason) and implement ``dispatch``. Malformed tool output or params
    surface as a failed receipt instead of an exception.
    """

    tool: str = ""
    classify: Callable[[str], str | None] = staticmethod(lambda text: None)

    def __init__(self, runner: Runner = run_command):
        self._run = runner
        self._action_id = ""
        self._timeout = 300.0

    @property
    def name(self) -> str:
        return self.tool

    def is_available(self) -> bool:
        return self.tool_available(self.tool)

    def execute(self, context: ExecutionContext) -> Receipt:
        self._action_id = context.action.id
        self._timeout = context.timeout
        try:
            return self.dispatch(context, dict(context.params))
        except (KeyError, TypeError, ValueError) as e:
            logger.debug("%s %s: %s", self.tool, context.verb, e, exc_info=True)
            return self._fail(f"Malformed {self.tool} response or params: {e}")

    @abstractmethod
    def dispatch(self, context: ExecutionContext, params: dict[str, Any]) -> Receipt:
        """Route one action to its handler."""

    # ── Receipts for the action in flight ───────────────────────

    def _ok(self, output: str = "", **kwargs: Any) -> Receipt:
        return Receipt.success(adapter=self.name, action_id=self._action_id,
                               output=output, **kwargs)

    def _fail(self, error: str, reason: str | None = None, **kwargs: Any) -> Receipt:
        return Receipt.failure(adapter=self.name, action_id=self._action_id,
                               error=error, reason=reason, **kwargs)

    def _observed(self, observation: dict[str, Any], **kwargs: Any) -> Receipt:
        return Receipt.observed(adapter=self.name, action_id=self._action_id,
                                observation=observation, **kwargs)

    def _absent(self, **kwargs: Any) -> Receipt:
        return Receipt.absent(adapter=self.name, action_id=self._action_id, **kwargs)

    def _from_result(self, result: CommandResult, tolerate: tuple[str, ...] = ()) -> Receipt:
        """Receipt for a mutating command.

        Reasons in ``tolerate`` count as success (already exists on
        create, not found on delete).
        """
        meta = {"command": result.command, "return_code": result.returncode}
        if result.ok:
            return self._ok(result.stdout, metadata=meta)
        reason = self.classify(result.error)
        if reason and reason in tolerate:
            return self._ok(result.error, reason=reason, metadata=meta)
        return self._fail(result.error, reason=reason, metadata=meta)
