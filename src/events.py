"""
Subscription channel used by the engines to publish events.

Every subscriber gets each published event. A subscriber that raises is
logged and skipped so delivery to the others continues.
"""

import logging
import threading
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle returned by ``EventChannel.subscribe``."""

    def __init__(self, channel: "EventChannel", callback: Callable):
        self._channel = channel
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self.active:
            self._channel._remove(self)
            self.active = False


class EventChannel(Generic[T]):
    """Thread-safe list of callbacks for one event type."""

    def __init__(self, name: str):
        self.name = name
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        subscription = Subscription(self, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: T) -> int:
        """Deliver ``event`` to every subscriber. Returns the number of successful deliveries."""
        with self._lock:
            subscriptions = list(self._subscriptions)

        delivered = 0
        for subscription in subscriptions:
            try:
                subscription.callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"{self.name} subscriber failed: {e}", exc_info=True)
        return delivered
