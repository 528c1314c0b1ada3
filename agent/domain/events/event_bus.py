from typing import Any, Awaitable, Callable, Dict, List, Union
from enum import Enum
import inspect

import structlog

from domain.models.events import EventData

logger = structlog.get_logger(__name__)

EventHandler = Callable[[EventData], Union[None, Awaitable[None]]]


def _event_key(event_type: Union[str, Enum]) -> str:
    return event_type.value if isinstance(event_type, Enum) else str(event_type)


class EventBus:
    """In-process publish/subscribe registry shared by the engine and its managers"""

    def __init__(self):
        self.event_handlers: Dict[str, List[EventHandler]] = {}

    def register_event_handler(self, event_type: Union[str, Enum], handler: EventHandler) -> None:
        """Subscribe a handler; plain callables and coroutine functions are accepted"""

        key = _event_key(event_type)
        if key not in self.event_handlers:
            self.event_handlers[key] = []
        self.event_handlers[key].append(handler)

    def unregister_event_handler(self, event_type: Union[str, Enum], handler: EventHandler) -> bool:
        handlers = self.event_handlers.get(_event_key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handler_count(self, event_type: Union[str, Enum]) -> int:
        return len(self.event_handlers.get(_event_key(event_type), []))

    async def trigger_event(self, event: EventData) -> int:
        """Deliver an event to every handler registered for its type.

        Handlers run one after another in registration order. A failing
        handler is logged and skipped. Returns the number of handlers that
        completed.
        """

        key = _event_key(event.type)
        handlers = list(self.event_handlers.get(key, []))
        delivered = 0

        for handler in handlers:
            try:
                result: Any = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error("Error in event handler",
                           event_type=key,
                           source_manager_id=event.source_manager_id,
                           error=str(e))

        return delivered
