"""Lifecycle notifications for the resilience engine.

Instead of an ambient event emitter, the engine owns an EventBus and
delivers typed events to explicit subscribers. A failing subscriber is
logged and skipped; it never breaks the operation that emitted the event.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Notifications emitted by the engine."""
    RESISTANCE = "resistance"              # resist() succeeded
    RESISTANCE_ERROR = "resistance-error"  # resist() failed
    MEMORY_PRESSURE = "memory-pressure"    # advisory, from the monitor


@dataclass
class ResistanceEvent:
    """A single notification."""
    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


EventHandler = Callable[[ResistanceEvent], Any]


class EventBus:
    """Synchronous publish/subscribe channel.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(EventType.RESISTANCE, print)
        bus.emit(EventType.RESISTANCE, {"strategy": "balanced"})
        unsubscribe()
    """

    def __init__(self):
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._history_size = 50
        self._history: list[ResistanceEvent] = []

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler. Returns a function that removes it again."""
        event_type = EventType(event_type)
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return unsubscribe

    def unsubscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        handlers = self._handlers.get(EventType(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event_type: EventType | str, payload: dict[str, Any] | None = None) -> ResistanceEvent:
        """Deliver an event to every subscriber of its type."""
        event = ResistanceEvent(event_type=EventType(event_type), payload=payload or {})

        self._history.append(event)
        if len(self._history) > self._history_size:
            self._history.pop(0)

        for handler in list(self._handlers.get(event.event_type, [])):
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler failed for {event.event_type.value}")

        return event

    def subscriber_count(self, event_type: EventType | str) -> int:
        return len(self._handlers.get(EventType(event_type), []))

    @property
    def history(self) -> list[ResistanceEvent]:
        """Recently emitted events, oldest first."""
        return list(self._history)

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()
