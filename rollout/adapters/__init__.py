"""Adapters — tool bindings for gcloud, kubectl and the simulated cloud.

Public re-exports for convenient access.
"""

from rollout.adapters.base import Adapter, ExecutionContext
from rollout.adapters.mock import MockAdapter
from rollout.adapters.registry import AdapterRegistry

__all__ = [
    "Adapter",
    "AdapterRegistry",
    "ExecutionContext",
    "MockAdapter",
]
