"""In-process event bus connecting the watcher feed, orchestrator and clients."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from companion.core.events import EventContext, EventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventType, EventContext], Awaitable[object]]


class EventBus:
    """Simple async event bus.

    Unlike a request dispatcher, `emit` is fire-to-all: an event with no
    subscribers is fine, and a failing handler is logged without affecting the
    other handlers or the emitter.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}

    def subscribe(self, event: EventType, handler: EventHandler) -> Callable[[], None]:
        """Subscribe a handler to an event. Returns a callable that unsubscribes it."""
        self._handlers.setdefault(event, []).append(handler)
        logger.debug("Subscribed handler for event: %s (total: %d)", event, len(self._handlers[event]))

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def clear(self) -> None:
        """Clear all registered handlers (primarily for tests)."""
        self._handlers.clear()

    def handler_count(self, event: EventType) -> int:
        return len(self._handlers.get(event, []))

    async def emit(self, event: EventType, context: EventContext) -> int:
        """Emit an event to all handlers. Returns the number of handlers that succeeded."""
        handlers = list(self._handlers.get(event, []))
        if not handlers:
            logger.debug("No handler registered for event: %s", event)
            return 0

        results = await asyncio.gather(*(handler(event, context) for handler in handlers), return_exceptions=True)

        succeeded = 0
        for i, result in enumerate(results):
            if isinstance(result, BaseException):
                logger.error("Handler %d failed for event %s: %s", i, event, result, exc_info=result)
            else:
                succeeded += 1
        return succeeded
