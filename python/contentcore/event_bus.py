"""Lightweight in-memory event bus satisfying the IEventBus protocol.

Handed to the pipeline and router at construction. Subscriber failures are
logged and never reach the publisher.
"""

import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from contentcore.interfaces.event_bus import EventType

logger = logging.getLogger(__name__)


class InMemoryEventBus:
    """Simple async event bus for single-process use."""

    def __init__(self) -> None:
        self._subscribers: Dict[EventType, Dict[str, Callable]] = {}

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: Optional[str] = None,
    ) -> None:
        if source:
            data = {**data, "_source": source}
        # Copy so handlers may unsubscribe while being notified.
        handlers = list(self._subscribers.get(event_type, {}).values())
        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
            except Exception:
                logger.exception("Event handler failed for %s", event_type.value)

    async def subscribe(
        self,
        event_type: EventType,
        handler: Callable[[Dict[str, Any]], Awaitable[None]],
    ) -> str:
        sub_id = uuid.uuid4().hex[:12]
        self._subscribers.setdefault(event_type, {})[sub_id] = handler
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        for handlers in self._subscribers.values():
            handlers.pop(subscription_id, None)

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers.get(event_type, {}))


async def emit(
    bus: Optional[Any],
    event_type: EventType,
    data: Dict[str, Any],
    source: Optional[str] = None,
) -> None:
    """Publish when a bus is configured; a missing bus disables notifications."""
    if bus is None:
        return
    try:
        await bus.publish(event_type, data, source=source)
    except Exception:
        logger.exception("Event bus publish failed for %s", event_type.value)
