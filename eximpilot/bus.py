import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger("eximpilot.bus")

Subscriber = Callable[[str, Any], None]

# Topic used for every event flushed to the store
LOG_ENTRY_TOPIC = "log_entry"


class MessageBus(ABC):
    """Publish/subscribe hub for live updates.

    A bus is created by the application and handed to the components that
    publish on it, so its lifetime is explicit.
    """

    @abstractmethod
    def start(self) -> None:
        """Begin delivering published payloads."""

    @abstractmethod
    def stop(self) -> None:
        """Stop delivering; later publishes are dropped."""

    @abstractmethod
    def publish(self, topic: str, payload: Any) -> None:
        """Deliver ``payload`` to every subscriber of ``topic``."""

    @abstractmethod
    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for ``topic``.

        Returns:
            Callable[[], None]: A function that removes the subscription.
        """


class InProcessBus(MessageBus):
    """Synchronous bus that calls subscribers on the publishing thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        self._running = True

    def stop(self) -> None:
        self._running = False

    def publish(self, topic: str, payload: Any) -> None:
        if not self._running:
            return
        with self._lock:
            subscribers = list(self._subscribers.get(topic, ()))
        for callback in subscribers:
            try:
                callback(topic, payload)
            except Exception:
                logger.exception("Subscriber for %s failed", topic)

    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers[topic].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers.get(topic, []):
                    self._subscribers[topic].remove(callback)

        return unsubscribe
