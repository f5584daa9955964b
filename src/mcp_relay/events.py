"""In-process publish/subscribe for usage and log events."""

from collections import defaultdict
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger(__name__)

USAGE_TOPIC = "context-usage"
LOG_TOPIC = "server-log"

Subscriber = Callable[[Dict[str, Any]], None]


class EventBus:
    """Fan out event payloads to subscribers by topic.

    Subscribers run synchronously on the publishing task. A subscriber that
    raises is logged and skipped; it never breaks the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)

    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback and return a function that unregisters it."""
        self._subscribers[topic].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[topic]:
                self._subscribers[topic].remove(callback)

        return unsubscribe

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        for callback in list(self._subscribers.get(topic, ())):
            try:
                callback(payload)
            except Exception:
                logger.exception("Event subscriber failed", topic=topic)
