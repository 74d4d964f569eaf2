"""
EVENT SYSTEM - How the engine tells the rest of the system what happened

Hypothesis transitions, handoff changes, dispatched work and closed positions
are published on a single bus. The scheduler subscribes while a tick runs to
forward them as notifications; tests and the CLI may listen too without the
publishers knowing.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from loguru import logger

from core.clock import utcnow


class EventType(str, Enum):
    """All system event types."""

    # === DAEMON ===
    DAEMON_STARTED = "daemon_started"
    DAEMON_STOPPED = "daemon_stopped"
    SYSTEM_ERROR = "system_error"

    # === HYPOTHESIS ===
    HYPOTHESIS_CREATED = "hypothesis_created"
    HYPOTHESIS_TRANSITIONED = "hypothesis_transitioned"
    EVIDENCE_ADDED = "evidence_added"
    LEARNING_RECORDED = "learning_recorded"

    # === HANDOFFS ===
    HANDOFF_CREATED = "handoff_created"
    HANDOFF_STARTED = "handoff_started"
    HANDOFF_COMPLETED = "handoff_completed"
    HANDOFF_FAILED = "handoff_failed"

    # === SCHEDULER ===
    STRATEGIC_OVERRIDE = "strategic_override"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"

    # === POSITIONS ===
    POSITION_CLOSED = "position_closed"


@dataclass
class Event:
    """Something that happened, with a Markdown line fit for a notification."""
    event_type: EventType
    source: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


EventHandler = Callable[[Event], None]


class EventBus:
    """
    Process-wide publish/subscribe.

    Handlers run synchronously in subscription order. A failing handler is
    logged and never reaches the publisher or the other handlers.
    """

    _instance: Optional['EventBus'] = None

    def __new__(cls):
        """Singleton pattern - only one event bus exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self, history_size: int = 1000):
        if self._initialized:
            return
        self._handlers: List[EventHandler] = []
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._initialized = True

    def subscribe_all(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe_all(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def publish(self, event: Event) -> None:
        self._history.append(event)
        logger.debug(f"[{event.source}] {event.event_type.value}")
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler failed on {event.event_type.value}: {e}")

    def get_recent_events(
        self,
        event_type: Optional[EventType] = None,
        limit: int = 100
    ) -> List[Event]:
        """Most recent events, oldest first, optionally of one type."""
        events = [e for e in self._history if event_type is None or e.event_type == event_type]
        return events[-limit:]

    def clear_history(self) -> None:
        """Clear event history (useful for testing)."""
        self._history.clear()


def get_event_bus() -> EventBus:
    """Get the singleton EventBus instance."""
    return EventBus()


def emit(event_type: EventType, source: str, message: str, **data) -> Event:
    """Publish an event carrying a human-readable message."""
    event = Event(event_type=event_type, source=source, message=message, data=data)
    get_event_bus().publish(event)
    return event
