"""Static configuration for the content orchestrator."""

from .settings import OrchestratorSettings, get_settings

__all__ = ["OrchestratorSettings", "get_settings"]
