"""Publish/subscribe channel for risk notifications.

Drift events, throttle changes and kill-switch toggles are published here
so that notifiers, schedulers or the kill-switch itself can react without
the publisher knowing about them.

Dispatch is synchronous and runs on the publisher's thread. A failing
subscriber is logged and skipped; it never breaks the publisher or the
remaining subscribers.
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List

from src.utils.logging import get_logger

logger = get_logger(__name__)

MAX_HISTORY = 200

# Topic names
KILL_SWITCH_ACTIVATED = "kill_switch.activated"
KILL_SWITCH_DEACTIVATED = "kill_switch.deactivated"
DRIFT_DETECTED = "drift.detected"
THROTTLE_ON = "drift.throttle_on"
THROTTLE_OFF = "drift.throttle_off"
LEDGER_RECONCILED = "ledger.reconciled"


@dataclass
class Event:
    """A published notification.

    Attributes:
        topic: Topic name (see module constants)
        payload: Topic-specific data
        timestamp: UTC publish time
    """

    topic: str
    payload: Any = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[Event], None]


class EventBus:
    """Callback registry keyed by topic.

    Example:
        >>> bus = EventBus()
        >>> bus.subscribe(THROTTLE_ON, lambda event: print(event.payload))
        >>> bus.publish(THROTTLE_ON, {"reason": "3 critical drifts"})
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._wildcard: List[Subscriber] = []
        self._history: Deque[Event] = deque(maxlen=MAX_HISTORY)
        self._lock = threading.Lock()
        self.error_count = 0

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        """Register a callback for one topic. Use "*" for every topic."""
        with self._lock:
            if topic == "*":
                self._wildcard.append(callback)
            else:
                self._subscribers[topic].append(callback)
        logger.debug("Subscribed %s to %s", getattr(callback, "__qualname__", callback), topic)

    def unsubscribe(self, topic: str, callback: Subscriber) -> None:
        """Remove a callback. Unknown callbacks are ignored."""
        with self._lock:
            bucket = self._wildcard if topic == "*" else self._subscribers.get(topic, [])
            if callback in bucket:
                bucket.remove(callback)

    def publish(self, topic: str, payload: Any = None) -> Event:
        """Deliver an event to every subscriber of ``topic``.

        Returns:
            The published Event
        """
        event = Event(topic=topic, payload=payload)

        # Snapshot so subscribers may (un)subscribe during dispatch
        with self._lock:
            self._history.append(event)
            targets = list(self._subscribers.get(topic, [])) + list(self._wildcard)

        for callback in targets:
            try:
                callback(event)
            except Exception as e:
                self.error_count += 1
                logger.error(
                    "Subscriber %s failed on %s: %s",
                    getattr(callback, "__qualname__", callback),
                    topic,
                    e,
                    exc_info=True,
                )

        return event

    def history(self, topic: str | None = None) -> List[Event]:
        """Recently published events, oldest first, optionally filtered."""
        with self._lock:
            events = list(self._history)
        if topic is None:
            return events
        return [e for e in events if e.topic == topic]

    def clear(self) -> None:
        """Remove all subscribers and forget history."""
        with self._lock:
            self._subscribers.clear()
            self._wildcard.clear()
            self._history.clear()
