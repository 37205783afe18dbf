"""Interface for progress notifications.

The pipeline and router publish to a bus handed to them at construction,
so hosts can observe progress without a process-wide emitter.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol


class EventType(Enum):
    """Notification points emitted by the orchestrator."""
    # Pipeline lifecycle
    PLAN_STARTED = "plan_started"
    STAGE_SETTLED = "stage_settled"
    PLAN_COMPLETED = "plan_completed"
    PLAN_FAILED = "plan_failed"
    QUALITY_WARNING = "quality_warning"
    # Routing
    STRATEGY_SELECTED = "strategy_selected"
    STRATEGY_FALLBACK = "strategy_fallback"
    PROCESSING_COMPLETED = "processing_completed"
    ROLLOUT_WARNING = "rollout_warning"


class IEventBus(Protocol):
    """Interface for publish-subscribe event messaging."""

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: Optional[str] = None
    ) -> None:
        """Publish an event to the bus.

        Args:
            event_type: Type of event
            data: Event data/payload
            source: Optional source identifier
        """
        ...

    async def subscribe(
        self,
        event_type: EventType,
        handler: Callable[[Dict[str, Any]], Awaitable[None]]
    ) -> str:
        """Subscribe to events of a type.

        Returns:
            Subscription ID for later unsubscribe
        """
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        ...
