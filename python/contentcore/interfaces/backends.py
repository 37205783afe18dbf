"""Interfaces for the stage backends the pipeline consumes.

Backends are supplied by the host. Each returns a plain mapping; the
executor normalizes payload shapes and converts failures into stage errors.
Backends signal problems by raising ``ProviderError`` or
``InvalidOutputError``; any other exception is treated as a provider error.
"""

from typing import Any, Dict, Optional, Protocol, runtime_checkable

from contentcore.models.request import ContentRequest


@runtime_checkable
class ResearchBackend(Protocol):
    async def research(self, request: ContentRequest) -> Dict[str, Any]:
        """Return ``{"sources": [...], "enriched_content": ...}``."""
        ...


@runtime_checkable
class GenerationBackend(Protocol):
    async def generate(
        self,
        request: ContentRequest,
        research_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Return ``{"content": str | {"selected": str, ...}, "metadata": {...}}``.

        ``metadata.cache_hit`` marks responses served from a cache.
        """
        ...


@runtime_checkable
class OptimizationBackend(Protocol):
    async def optimize(self, content: str, request: ContentRequest) -> Dict[str, Any]:
        """Return ``{"optimized_content": str, "changes": [...], "confidence": float}``."""
        ...


@runtime_checkable
class ValidationBackend(Protocol):
    async def validate(self, content: str, context: Dict[str, Any]) -> Dict[str, Any]:
        """Return ``{"overall_score": float in 0..1, "details": {...}}``."""
        ...
