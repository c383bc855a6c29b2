"""
Event Relay
===========

A small publish/subscribe channel shared by the transport and the session
manager. Publishers emit on a typed topic; handlers receive the event name
(for example "server-ready") and a payload dict.

Handlers run synchronously on the emitting thread. A failing handler is
logged and does not prevent delivery to the remaining handlers.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], None]


class EventTopic(str, Enum):
    STATUS = "status"
    ERROR = "error"
    INPUT_REQUEST = "input_request"


class EventChannel:
    """Topic-keyed observer registry."""

    def __init__(self):
        self._handlers: Dict[EventTopic, List[EventHandler]] = {}

    def on(self, topic: EventTopic, handler: EventHandler) -> None:
        """Register a handler. Registering the same handler twice is a no-op."""
        topic = EventTopic(topic)
        handlers = self._handlers.setdefault(topic, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, topic: EventTopic, handler: EventHandler) -> None:
        """Remove a handler previously passed to on(); unknown handlers are ignored."""
        handlers = self._handlers.get(EventTopic(topic), [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, topic: EventTopic) -> int:
        return len(self._handlers.get(EventTopic(topic), []))

    def emit(
        self, topic: EventTopic, data: Dict[str, Any], event: Optional[str] = None
    ) -> None:
        """
        Deliver an event to every handler on a topic.

        Args:
            topic: Topic to publish on
            data: Payload handed to each handler
            event: Event name; defaults to the payload's "status" or the topic
        """
        topic = EventTopic(topic)
        name = event or data.get("status") or topic.value
        # Copy: handlers may unsubscribe while we iterate
        for handler in list(self._handlers.get(topic, [])):
            try:
                handler(name, data)
            except Exception as e:
                logger.warning(f"Event handler for '{topic.value}' failed: {e}")

    def clear(self) -> None:
        self._handlers.clear()


def make_events() -> EventChannel:
    return EventChannel()
