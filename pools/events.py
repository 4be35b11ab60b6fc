"""In-process publish/subscribe for pool state changes."""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolChanged:
    guid: str
    reason: str = ""


Subscriber = Callable[[PoolChanged], None]


class PoolEventBus:
    """
    Fan out PoolChanged events to registered callbacks.

    Callbacks run synchronously on the publishing thread; a failing
    subscriber is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback and return a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, guid: str, reason: str = "") -> PoolChanged:
        event = PoolChanged(guid=guid, reason=reason)
        with self._lock:
            subscribers = list(self._subscribers)

        logger.debug(f"Pool {guid} changed ({reason})")
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Pool event subscriber failed for {guid}: {e}")
        return event
