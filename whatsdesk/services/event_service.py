"""In-process event sink consumed by the realtime notification layer."""

import asyncio
from typing import Any

from whatsdesk.logging_config import get_logger

logger = get_logger("event_service")


class EventBus:
    """Fan out named events to subscriber queues.

    Each subscriber owns a bounded queue; a full queue drops the event for
    that subscriber only.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: set[asyncio.Queue] = set()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event: str, payload: dict[str, Any]) -> int:
        """Deliver to every subscriber without blocking. Returns the number of deliveries."""
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait({"event": event, "data": payload})
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Event subscriber queue full, dropping '{event}'")
        return delivered


event_bus = EventBus()
