"""Named events the agent loop emits to the presentation layer."""

import logging
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class Event(str, Enum):
    TEXT = "text"  # (text: str) one complete assistant text fragment
    DELTA = "delta"  # (delta: str) incremental text while streaming
    TOOL_USE = "tool_use"  # (name: str, arguments: dict)
    TOOL_RESULT = "tool_result"  # (name: str, result: str)
    USAGE = "usage"  # (usage: Usage)


class EventBus:
    """Zero or more handlers per event kind, called in subscription order.

    Handler exceptions propagate to the emitter.
    """

    def __init__(self):
        self._handlers: dict[Event, list[Callable]] = {kind: [] for kind in Event}

    def subscribe(self, kind: Event | str, handler: Callable) -> Callable[[], None]:
        """Register handler for kind. Returns a function that unsubscribes it."""
        kind = Event(kind)
        self._handlers[kind].append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers[kind].remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def has_subscribers(self, kind: Event | str) -> bool:
        return bool(self._handlers[Event(kind)])

    def emit(self, kind: Event | str, *args) -> None:
        kind = Event(kind)
        for handler in list(self._handlers[kind]):
            logger.debug("emit %s -> %r", kind.value, handler)
            handler(*args)
