"""In-process event feed observers subscribe to for reload signals"""
from typing import Any, Awaitable, Callable, Dict, List

import structlog

logger = structlog.get_logger()

Subscriber = Callable[[str, str, Dict[str, Any]], Awaitable[None]]

CHANNELS = {
    "transactions": "Local transaction history changed",
    "backup": "Backup status changes",
    "restore": "Restore progress",
}


class EventFeed:
    """Fan-out of (channel, event_type, data) to async subscribers"""

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a callable that removes it"""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    async def publish(self, channel: str, event_type: str, data: Dict[str, Any]) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber(channel, event_type, data)
            except Exception as e:
                # One broken observer must not stop the others
                logger.warning("Feed subscriber failed", channel=channel, error=str(e))


feed = EventFeed()
