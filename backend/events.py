import asyncio
import logging

logger = logging.getLogger(__name__)


class EventBus:
    """
    Fire-and-forget fan-out of engine events.

    Every subscriber owns a bounded queue. When a slow subscriber's queue is full the
    oldest event is dropped so the publisher never blocks.
    """

    def __init__(self, maxsize: int = 32):
        self.maxsize = int(maxsize)
        self._subscribers: list[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(q)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: dict) -> None:
        for q in list(self._subscribers):
            _enqueue_latest(q, event)


def _enqueue_latest(q: asyncio.Queue, event: dict) -> None:
    try:
        q.put_nowait(event)
    except asyncio.QueueFull:
        try:
            q.get_nowait()
        except asyncio.QueueEmpty:
            return
        try:
            q.put_nowait(event)
        except asyncio.QueueFull:
            logger.debug("Dropped event for saturated subscriber")
