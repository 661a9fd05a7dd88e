"""Change-notification stream consumed by the presentation layer."""

import logging
import threading
from typing import Callable, Union

from .models import ChangeAction, ChangeEvent, ErrorEvent

logger = logging.getLogger(__name__)

FeedEvent = Union[ChangeEvent, ErrorEvent]
Subscriber = Callable[[FeedEvent], None]


class ChangeFeed:
    """Fan-out of ChangeEvent / ErrorEvent to registered subscribers.

    Subscribers are called synchronously on the publishing thread and must
    not block; a subscriber that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber.

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: FeedEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Change subscriber failed on {event}")

    def applied(self, content_id: str, version: int) -> None:
        self.publish(ChangeEvent(content_id, version, ChangeAction.APPLIED))

    def evicted(self, content_id: str, version: int) -> None:
        self.publish(ChangeEvent(content_id, version, ChangeAction.EVICTED))
