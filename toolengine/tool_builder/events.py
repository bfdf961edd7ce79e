"""
Tool mutation events.

Every successful Store write publishes one ToolMutated; the instance cache and the
response cache both subscribe, so a mutation path cannot evict one and forget the other.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolMutated:
    tenant_id: str
    tool_id: str
    action: str  # created | updated | deleted


Handler = Callable[[ToolMutated], Awaitable[None]]


class ToolEventBus:
    """In-process fan-out. publish() returns only after every handler has finished."""

    def __init__(self):
        self._handlers: List[Handler] = []

    def subscribe(self, handler: Handler) -> Handler:
        self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish(self, event: ToolMutated) -> None:
        logger.debug(f"[TOOLS] {event.action} {event.tenant_id}/{event.tool_id} -> {len(self._handlers)} handler(s)")
        for handler in list(self._handlers):
            await handler(event)
