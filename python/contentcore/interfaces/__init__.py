"""Protocols for the collaborators the orchestrator consumes."""

from .backends import (
    GenerationBackend,
    OptimizationBackend,
    ResearchBackend,
    ValidationBackend,
)
from .event_bus import EventType, IEventBus

__all__ = [
    "EventType",
    "GenerationBackend",
    "IEventBus",
    "OptimizationBackend",
    "ResearchBackend",
    "ValidationBackend",
]
