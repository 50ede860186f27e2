"""
Event Bus
=========

Per-conversation publish/subscribe channel for live activity events.

Subscribers register a sink for one conversation id and receive every event
published against that id from then on. Delivery is synchronous and in
publish order. There is no backlog: an event published while nobody is
listening is dropped. Durable replay comes from the activity messages the
orchestrator writes to the store, not from the bus.

Heartbeats are the subscriber's business (see agentmafia.web.stream).

Usage:
    from agentmafia.events import event_bus, EventType

    unsubscribe = event_bus.subscribe(conversation_id, lambda e: print(e.to_dict()))
    event_bus.publish(conversation_id, EventType.TASK_START, {"task": "..."})
    unsubscribe()
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of activity events."""
    # Transport
    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"

    # Run lifecycle
    TASK_START = "task_start"
    TASK_COMPLETE = "task_complete"
    TASK_STOPPED = "task_stopped"
    TASK_ERROR = "task_error"
    TASK_TURN_LIMIT = "task_turn_limit"

    # Agent lifecycle
    AGENT_START = "agent_start"
    AGENT_MESSAGE = "agent_message"
    AGENT_DONE = "agent_done"
    AGENT_ERROR = "agent_error"
    AGENT_WARNING = "agent_warning"

    # Tool interactions
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"

    # Human interaction
    ESCALATION = "escalation"
    ESCALATION_ANSWERED = "escalation_answered"

    # Visual routing
    VISUAL_ANALYSIS = "visual_analysis"

    PROGRESS_UPDATE = "progress_update"


# Events that only make sense on a live connection and are never persisted
TRANSIENT_EVENTS = frozenset({EventType.CONNECTED, EventType.HEARTBEAT})


@dataclass
class Event:
    """A single published event."""
    conversation_id: str
    event_type: str
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "conversation_id": self.conversation_id,
            "event_type": self.event_type,
            "data": self.data,
            "timestamp": self.timestamp,
        }


Sink = Callable[[Event], None]


class EventBus:
    """
    In-process pub/sub keyed by conversation id.

    The subscriber table is guarded by a lock so sinks can be added and
    removed from any thread. Publishing iterates over a snapshot taken under
    the lock, so a sink that unsubscribes during delivery does not disturb
    the others.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Sink]] = {}
        self._lock = threading.Lock()

    def subscribe(self, conversation_id: str, sink: Sink) -> Callable[[], None]:
        """Register a sink. Returns a callable that removes it again."""
        with self._lock:
            self._subscribers.setdefault(conversation_id, []).append(sink)

        def unsubscribe() -> None:
            self._remove(conversation_id, sink)

        return unsubscribe

    def _remove(self, conversation_id: str, sink: Sink) -> None:
        with self._lock:
            sinks = self._subscribers.get(conversation_id)
            if not sinks:
                return
            try:
                sinks.remove(sink)
            except ValueError:
                return
            if not sinks:
                del self._subscribers[conversation_id]

    def publish(
        self,
        conversation_id: str,
        event_type: Union[EventType, str],
        data: Optional[dict[str, Any]] = None,
    ) -> Event:
        """
        Deliver an event to every current subscriber of the conversation.

        A sink that raises is logged and dropped; the remaining sinks still
        receive the event.
        """
        name = event_type.value if isinstance(event_type, EventType) else event_type
        event = Event(conversation_id=conversation_id, event_type=name, data=dict(data or {}))

        with self._lock:
            sinks = list(self._subscribers.get(conversation_id, ()))

        for sink in sinks:
            try:
                sink(event)
            except Exception:
                logger.exception("Event sink failed for conversation %s; unsubscribing", conversation_id)
                self._remove(conversation_id, sink)
        return event

    def subscriber_count(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(conversation_id, ()))

    def clear(self, conversation_id: str) -> None:
        """Drop every subscriber of a conversation (used on delete)."""
        with self._lock:
            self._subscribers.pop(conversation_id, None)


# Process-wide bus shared by the orchestrator and the transports
event_bus = EventBus()
