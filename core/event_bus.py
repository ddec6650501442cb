"""
Provisioning event broadcaster.

Fans lifecycle and progress events out to any number of subscribers
(SSE streams). Delivery is best-effort: a subscriber whose queue is full
or that has been closed is dropped on the next publish and never blocks
the publisher. New subscribers only see events published after they join.

Subscriptions are thread-safe queues so a request thread can block on
one while events are published from the event loop thread.

Usage:
    from core.event_bus import EventBus, make_event

    bus = EventBus()
    sub = bus.subscribe()
    bus.publish(make_event("progress", "Starting provisioning..."))
    event = sub.get(timeout=15)
    sub.close()
"""

import json
import logging
import queue
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Set

from core.timestamps import isonow

logger = logging.getLogger(__name__)

EVENT_TYPES = ("progress", "error", "complete")
DEFAULT_QUEUE_SIZE = 256


@dataclass(frozen=True)
class ProvisioningEvent:
    """One broadcast event."""

    timestamp: str
    type: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_sse(self) -> str:
        """Server-Sent Events wire format."""
        return f"event: {self.type}\ndata: {json.dumps(self.to_dict())}\n\n"


def make_event(event_type: str, message: str) -> ProvisioningEvent:
    """Create an event stamped with the current UTC time."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    return ProvisioningEvent(timestamp=isonow(), type=event_type, message=message)


class Subscription:
    """A subscriber's private event queue."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: "queue.Queue[ProvisioningEvent]" = queue.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, event: ProvisioningEvent) -> None:
        """Enqueue without blocking; raises queue.Full when the reader lags."""
        if self.closed:
            raise queue.Full
        self._queue.put_nowait(event)

    def get(self, timeout: Optional[float] = None) -> Optional[ProvisioningEvent]:
        """Next event, or None if none arrives within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True


class EventBus:
    """Registry of live subscriptions."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Set[Subscription] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self.queue_size)
        with self._lock:
            self._subscribers.add(subscription)
        logger.debug(f"Event subscriber joined ({self.subscriber_count} active)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        with self._lock:
            self._subscribers.discard(subscription)

    def publish(self, event: ProvisioningEvent) -> int:
        """
        Deliver ``event`` to every live subscriber.

        Returns:
            Number of subscribers that received the event
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.deliver(event)
                delivered += 1
            except queue.Full:
                logger.info("Dropping closed or lagging event subscriber")
                self.unsubscribe(subscription)

        logger.debug(f"Published {event.type} event to {delivered} subscriber(s): {event.message}")
        return delivered
