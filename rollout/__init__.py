"""GKE rollout — staged deployment orchestrator for the n8n platform."""

__version__ = "0.1.0"
