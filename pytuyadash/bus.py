import asyncio
import logging
from typing import List

from .models import Event


class Subscription(object):
    """
    One subscriber's view of the bus.

    A bounded subscription drops its oldest pending event when a new one
    arrives and the queue is full; ``maxsize=0`` buffers without limit.
    Iterate with ``async for`` or call :meth:`get`.
    """

    def __init__(self, bus: "EventBus", maxsize: int = 0) -> None:
        self._bus = bus
        self._queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def put(self, event: Event) -> None:
        if self.closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self) -> Event:
        return await self._queue.get()

    def get_nowait(self) -> Event:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self.closed = True
        self._bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class EventBus(object):
    """Fan-out of session events to any number of independent subscribers."""

    def __init__(self, logger: logging.Logger = None) -> None:
        self._subscribers = []                                  # type: List[Subscription]
        self.logger = logger or logging.getLogger(__name__)

    def subscribe(self, maxsize: int = 0) -> Subscription:
        subscription = Subscription(self, maxsize=maxsize)
        self._subscribers.append(subscription)
        self.logger.debug('subscriber added, %i active', len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            self.logger.debug('subscriber removed, %i active',
                              len(self._subscribers))

    def publish(self, event: Event) -> None:
        """Hand ``event`` to every subscriber without waiting on any of them."""
        for subscription in list(self._subscribers):
            subscription.put(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
