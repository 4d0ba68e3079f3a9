"""
Adapter registry — the one path from the engine to gcloud and kubectl.

Actions are built here (with readable, unique ids), validated by the
adapter they name, executed, and timed. In mock mode every action goes
to the simulated cloud regardless of the adapter it names.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from rollout.adapters.base import Adapter, ExecutionContext
from rollout.adapters.shell.command import tool_available
from rollout.core.models.action import Action, Receipt

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Holds the tool adapters for one environment and dispatches actions."""

    def __init__(
        self,
        mock_mode: bool = False,
        project_root: str = ".",
        environment: str = "dev",
    ):
        self._adapters: dict[str, Adapter] = {}
        self._mock_mode = mock_mode
        self._mock_adapter: Adapter | None = None
        self.project_root = project_root
        self.environment = environment
        self._counter = 0

    @property
    def mock_mode(self) -> bool:
        return self._mock_mode

    @property
    def mock_adapter(self) -> Adapter | None:
        return self._mock_adapter

    def set_mock_mode(self, enabled: bool, mock_adapter: Adapter | None = None) -> None:
        """Route every action to ``mock_adapter`` while enabled."""
        self._mock_mode = enabled
        self._mock_adapter = mock_adapter

    def register(self, adapter: Adapter) -> None:
        if adapter.name in self._adapters:
            logger.warning("Overwriting existing adapter: %s", adapter.name)
        self._adapters[adapter.name] = adapter
        logger.debug("Registered adapter: %s", adapter.name)

    def get(self, name: str) -> Adapter | None:
        return self._adapters.get(name)

    def tool_available(self, tool: str) -> bool:
        """Whether an external binary resolves (simulated in mock mode)."""
        if self._mock_mode and self._mock_adapter:
            return self._mock_adapter.tool_available(tool)
        return tool_available(tool)

    # ── Actions ─────────────────────────────────────────────────

    def new_action(
        self,
        adapter: str,
        verb: str,
        node_id: str | None = None,
        kind: str = "",
        params: dict[str, Any] | None = None,
    ) -> Action:
        """Action with an id like ``cluster:create:7``."""
        self._counter += 1
        return Action(
            id=f"{node_id or 'account'}:{verb}:{self._counter}",
            adapter=adapter,
            verb=verb,
            node_id=node_id,
            kind=kind,
            params=dict(params or {}),
        )

    def call(
        self,
        adapter: str,
        verb: str,
        node_id: str | None = None,
        kind: str = "",
        params: dict[str, Any] | None = None,
        timeout: float = 300.0,
    ) -> Receipt:
        """Build and execute an action in one step."""
        action = self.new_action(adapter, verb, node_id=node_id, kind=kind, params=params)
        return self.execute_action(action, timeout=timeout)

    def execute_action(self, action: Action, timeout: float = 300.0) -> Receipt:
        """Validate and execute ``action``. Never raises."""
        start = time.monotonic()
        adapter, error = self._resolve(action)
        if adapter is None:
            return Receipt.failure(adapter=action.adapter, action_id=action.id, error=error)

        context = ExecutionContext(
            action=action,
            project_root=self.project_root,
            environment=self.environment,
            timeout=timeout,
            params=action.params,
        )
        try:
            valid, reason = adapter.validate(context)
            error = "" if valid else f"Validation failed: {reason}"
        except Exception as e:
            error = f"Validation error: {e}"
        if error:
            return Receipt.failure(adapter=action.adapter, action_id=action.id, error=error)

        try:
            receipt = adapter.execute(context)
        except Exception as e:
            logger.error("Adapter %s raised during %s: %s", adapter.name, action.id, e)
            receipt = Receipt.failure(adapter=action.adapter, action_id=action.id,
                                      error=f"Unexpected error: {e}")

        receipt.duration_ms = int((time.monotonic() - start) * 1000)
        logger.debug(
            "%s %s %s -> %s%s",
            action.adapter, action.verb, action.node_id or "",
            receipt.status, f" ({receipt.reason})" if receipt.reason else "",
        )
        return receipt

    def _resolve(self, action: Action) -> tuple[Adapter | None, str]:
        if self._mock_mode:
            if self._mock_adapter is None:
                return None, "Mock mode enabled without a mock adapter"
            return self._mock_adapter, ""
        adapter = self._adapters.get(action.adapter)
        if adapter is None:
            return None, f"No adapter registered for '{action.adapter}'"
        return adapter, ""
