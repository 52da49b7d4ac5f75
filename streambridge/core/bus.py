"""Typed publish/subscribe bus.

Subscribers register for one topic (an :class:`EventType` or a lifecycle
name such as ``"connected"``) or for every topic with ``"*"``.

Topic subscribers are called as ``handler(payload)``; wildcard subscribers
as ``handler(topic, payload)``. Handlers may be plain functions or
coroutines. Delivery is in publish order for a given publisher; nothing is
promised across publishers.
"""

from __future__ import annotations

import inspect
from enum import Enum
from typing import Any, Callable

from loguru import logger

WILDCARD = "*"

# Lifecycle topics
CONNECTED = "connected"
DISCONNECTED = "disconnected"
ERROR = "error"
TOOL_START = "tool_start"
TOOL_END = "tool_end"
# Every frame as read off either socket, before translation
WIRE = "wire"

LIFECYCLE_TOPICS = (CONNECTED, DISCONNECTED, ERROR, TOOL_START, TOOL_END)

Handler = Callable[..., Any]


def topic_name(topic: str | Enum) -> str:
    return topic.value if isinstance(topic, Enum) else str(topic)


class EventBus:
    """In-process event bus owned by a single bridge session."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, topic: str | Enum, handler: Handler) -> Handler:
        self._handlers.setdefault(topic_name(topic), []).append(handler)
        return handler

    def unsubscribe(self, topic: str | Enum, handler: Handler) -> None:
        handlers = self._handlers.get(topic_name(topic), [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, topic: str | Enum) -> list[Handler]:
        return list(self._handlers.get(topic_name(topic), []))

    async def publish(self, topic: str | Enum, payload: Any = None) -> None:
        """Deliver ``payload`` to topic subscribers, then to wildcard subscribers.

        A failing handler is logged and skipped; it never affects the
        publisher or the other handlers.
        """
        name = topic_name(topic)
        for handler in self.handlers(name):
            await self._call(handler, name, payload)
        if name != WILDCARD:
            for handler in self.handlers(WILDCARD):
                await self._call(handler, name, payload, name)

    @staticmethod
    async def _call(handler: Handler, name: str, payload: Any, *prefix: str) -> None:
        try:
            result = handler(*prefix, payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"'{name}' handler error: {e}")
