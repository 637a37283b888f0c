# matrix_system/events/event_bus.py
"""
In-process async event bus for consumed Matrix events.
"""
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class MatrixEvents:
    """Event names consumed by the engine."""
    MEMBER_CREATED = "member.created"
    SUBSCRIPTION_CHANGED = "subscription.changed"
    SUPPORT_ACTION_RECORDED = "support_action.recorded"
    COMMISSION_TRIGGER = "commission.trigger"


class EventBus:
    """Publish/subscribe with per-handler error isolation."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, eventName: str, handler: Handler) -> None:
        if handler not in self._handlers[eventName]:
            self._handlers[eventName].append(handler)

    def unsubscribe(self, eventName: str, handler: Handler) -> None:
        if handler in self._handlers[eventName]:
            self._handlers[eventName].remove(handler)

    def clear(self) -> None:
        self._handlers.clear()

    async def emit(self, eventName: str, data: Dict[str, Any]) -> List[Any]:
        """
        Deliver an event to every subscribed handler.

        A failing handler is logged and does not affect the others.

        Returns:
            Handler results in subscription order (None for failed handlers)
        """
        handlers = list(self._handlers.get(eventName, []))
        if not handlers:
            logger.warning(f"No handlers for event {eventName}")
            return []

        results = []
        for handler in handlers:
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    result = await result
                results.append(result)
            except Exception as e:
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)} failed "
                    f"for {eventName}: {e}",
                    exc_info=True
                )
                results.append(None)

        return results


eventBus = EventBus()
