"""Fan-out of tracker snapshots to live subscribers."""
import asyncio
import itertools
from typing import Optional

import structlog

from .models import TrackerSnapshot

logger = structlog.get_logger()

DEFAULT_BUFFER_SIZE = 16

_CLOSED = object()


def _put_dropping_oldest(queue: asyncio.Queue, item) -> bool:
    """Enqueue without blocking; returns True when an old item was dropped."""
    dropped = False
    while True:
        try:
            queue.put_nowait(item)
            return dropped
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
                dropped = True
            except asyncio.QueueEmpty:
                pass


class Subscription:
    """Async iterator over snapshots published after subscribing."""

    def __init__(self, broadcaster: "Broadcaster", subscriber_id: int, buffer_size: int):
        self.id = subscriber_id
        self.dropped = 0
        self.closed = False
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)

    def _deliver(self, snapshot: TrackerSnapshot) -> None:
        if _put_dropping_oldest(self._queue, snapshot):
            self.dropped += 1

    def _shutdown(self) -> None:
        if self.closed:
            return
        self.closed = True
        _put_dropping_oldest(self._queue, _CLOSED)

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> TrackerSnapshot:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def get(self, timeout: Optional[float] = None) -> TrackerSnapshot:
        """Next snapshot; raises StopAsyncIteration once closed."""
        return await asyncio.wait_for(self.__anext__(), timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class Broadcaster:
    """Best-effort publisher with a bounded, drop-oldest buffer per subscriber."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.buffer_size = buffer_size
        self._subscribers: dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self, next(self._ids), self.buffer_size)
        self._subscribers[sub.id] = sub
        logger.info("subscriber_added", subscriber_id=sub.id, subscribers=len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if self._subscribers.pop(sub.id, None) is None:
            return
        sub._shutdown()
        logger.info(
            "subscriber_removed",
            subscriber_id=sub.id,
            dropped=sub.dropped,
            subscribers=len(self._subscribers),
        )

    def publish(self, snapshot: TrackerSnapshot) -> None:
        """Deliver to every subscriber; never waits on a slow one."""
        for sub in list(self._subscribers.values()):
            sub._deliver(snapshot)

    def close(self) -> None:
        for sub in list(self._subscribers.values()):
            self.unsubscribe(sub)
