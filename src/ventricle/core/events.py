"""
Event Bus: in-process pub/sub between the registry and notification sinks.

The registry only knows a single ``on_new_pulse_item`` callback. The daemon
points that callback at the bus, and each sink (log line, webhook) subscribes
on its own, so one failing sink never starves the others.
"""

import logging
from collections import defaultdict
from typing import Callable, DefaultDict, List

logger = logging.getLogger("ventricle.events")

NEW_PULSE_ITEM = "new_pulse_item"


class EventBus:
    """Synchronous fan-out of keyword events to subscribed handlers."""

    def __init__(self):
        self._handlers: DefaultDict[str, List[Callable]] = defaultdict(list)

    def on(self, event_type: str, handler: Callable):
        self._handlers[event_type].append(handler)

    def off(self, event_type: str, handler: Callable):
        """Unsubscribe; unknown handlers are ignored."""
        if handler in self._handlers.get(event_type, ()):
            self._handlers[event_type].remove(handler)

    def emit(self, event_type: str, **kwargs) -> int:
        """Call every handler in subscription order. Returns how many succeeded."""
        delivered = 0
        for handler in list(self._handlers.get(event_type, ())):
            try:
                handler(**kwargs)
                delivered += 1
            except Exception as e:
                logger.error(f"Event handler error ({event_type}): {e}", exc_info=True)
        return delivered
