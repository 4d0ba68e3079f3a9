"""
Action and Receipt models — the execution contract.

Actions represent requested cloud operations. Receipts represent results.
This is the fundamental I/O contract between the engine and adapters:
the engine sends Actions, adapters return Receipts. Never exceptions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


# Verbs every resource adapter understands.
NODE_VERBS = ("describe", "create", "update", "delete")

# Receipt reasons adapters classify raw tool errors into.
REASON_NOT_FOUND = "not_found"
REASON_DELETION_PROTECTED = "deletion_protected"
REASON_ALREADY_EXISTS = "already_exists"


class Action(BaseModel):
    """A requested operation to be executed by an adapter.

    Node actions carry the node id, its kind and the desired spec
    (resource names, sizing) in ``params``. Account-level actions
    (active account, enabled APIs, quotas) have no node id.
    """

    id: str                         # unique action identifier
    adapter: str                    # which adapter handles this
    verb: str                       # describe, create, update, delete, ...
    node_id: str | None = None      # target resource node (None = account-level)
    kind: str = ""                  # resource kind of the node
    params: dict[str, Any] = Field(default_factory=dict)


class Receipt(BaseModel):
    """Result of an adapter execution.

    The adapter NEVER raises — failures are captured here. Describe
    receipts carry the normalized external view of the resource in
    ``observation``; ``present`` is False when the resource does not exist.
    """

    adapter: str
    action_id: str
    status: Literal["ok", "failed"] = "ok"

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    output: str = ""
    error: str | None = None
    reason: str | None = None        # not_found, deletion_protected, already_exists

    present: bool = True
    observation: dict[str, Any] = Field(default_factory=dict)

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the action succeeded."""
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        """Whether the action failed."""
        return self.status == "failed"

    @property
    def not_found(self) -> bool:
        return self.reason == REASON_NOT_FOUND

    @property
    def deletion_protected(self) -> bool:
        return self.reason == REASON_DELETION_PROTECTED

    @classmethod
    def success(
        cls,
        adapter: str,
        action_id: str,
        output: str = "",
        **kwargs: Any,
    ) -> Receipt:
        """Create a success receipt."""
        return cls(
            adapter=adapter,
            action_id=action_id,
            status="ok",
            output=output,
            **kwargs,
        )

    @classmethod
    def observed(
        cls,
        adapter: str,
        action_id: str,
        observation: dict[str, Any],
        **kwargs: Any,
    ) -> Receipt:
        """Create a describe receipt for a resource that exists."""
        return cls(
            adapter=adapter,
            action_id=action_id,
            status="ok",
            present=True,
            observation=observation,
            **kwargs,
        )

    @classmethod
    def absent(
        cls,
        adapter: str,
        action_id: str,
        **kwargs: Any,
    ) -> Receipt:
        """Create a describe receipt for a resource that does not exist."""
        return cls(
            adapter=adapter,
            action_id=action_id,
            status="ok",
            present=False,
            reason=REASON_NOT_FOUND,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        adapter: str,
        action_id: str,
        error: str,
        **kwargs: Any,
    ) -> Receipt:
        """Create a failure receipt."""
        return cls(
            adapter=adapter,
            action_id=action_id,
            status="failed",
            error=error,
            **kwargs,
        )
