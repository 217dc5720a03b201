"""
Event Bus
Delivers domain events to the push layer (websocket/REST consumers)
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

# Event names seen by subscribers
TELEMETRY = 'telemetry'
MACHINE_EVALUATION = 'machine_evaluation'
COMMAND_ACK = 'commandAck'
COMMAND_TIMEOUT = 'commandTimeout'
STATUS = 'status'
MACHINE_STATE_UPDATE = 'machine_state_update'
INITIAL_STATES = 'initial_states'
ALERT = 'alert'

EventCallback = Callable[[str, Dict[str, Any]], None]


@dataclass
class DomainEvent:
    """One emitted event"""
    name: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)


class EventBus:
    """
    Fan-out of domain events to registered subscribers

    A subscriber receives an `initial_states` snapshot as soon as it
    subscribes, then every event emitted afterwards. A failing subscriber is
    logged and skipped; it never affects the emitter or other subscribers.
    """

    def __init__(self, snapshot_provider: Optional[Callable[[], Dict[str, Any]]] = None,
                 history_size: int = 500):
        """
        Initialize event bus

        Args:
            snapshot_provider: Returns the current machine states for `initial_states`
            history_size: Number of recent events kept for inspection
        """
        self.snapshot_provider = snapshot_provider
        self._subscribers: Dict[str, EventCallback] = {}
        self._lock = threading.Lock()
        self._recent: Deque[DomainEvent] = deque(maxlen=history_size)

    def subscribe(self, subscriber_id: str, callback: EventCallback):
        """
        Register a subscriber and send it the current machine states

        Args:
            subscriber_id: Identifier of the consumer (e.g. a socket id)
            callback: Function(event_name, payload)
        """
        with self._lock:
            self._subscribers[subscriber_id] = callback

        logger.info(f"Subscriber {subscriber_id} connected")

        if self.snapshot_provider is not None:
            self._deliver(subscriber_id, callback, INITIAL_STATES, self.snapshot_provider())

    def unsubscribe(self, subscriber_id: str):
        with self._lock:
            self._subscribers.pop(subscriber_id, None)
        logger.info(f"Subscriber {subscriber_id} disconnected")

    def emit(self, name: str, payload: Dict[str, Any]):
        """Send an event to every subscriber"""
        event = DomainEvent(name=name, payload=payload)
        with self._lock:
            self._recent.append(event)
            subscribers = list(self._subscribers.items())

        for subscriber_id, callback in subscribers:
            self._deliver(subscriber_id, callback, name, payload)

    def _deliver(self, subscriber_id: str, callback: EventCallback, name: str, payload: Dict[str, Any]):
        try:
            callback(name, payload)
        except Exception as e:
            logger.error(f"Error notifying subscriber {subscriber_id} of {name}: {e}")

    def recent_events(self, name: Optional[str] = None, limit: int = 50) -> List[DomainEvent]:
        """
        Get recently emitted events

        Args:
            name: Filter by event name
            limit: Maximum number of events to return
        """
        with self._lock:
            events = list(self._recent)

        if name:
            events = [event for event in events if event.name == name]

        return events[-limit:]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
