"""Bounded single-producer, multi-consumer event stream."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from probectl.core.model import Event, OverflowPolicy

LOGGER = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """One consumer's view of the stream. Iterate with `async for`.

    The queue holds `maxsize` events plus one reserved slot, so end-of-stream
    never displaces a pending event.
    """

    def __init__(self, stream: EventStream, maxsize: int) -> None:
        self._stream = stream
        self._maxsize = maxsize
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize + 1)
        self._room = asyncio.Event()
        self._finished = False
        self.dropped = 0

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Event:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        self._room.set()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    def unsubscribe(self) -> None:
        self._stream._detach(self)
        self._finished = True

    def _full(self) -> bool:
        return self._queue.qsize() >= self._maxsize

    async def _put_when_room(self, item: Any) -> None:
        while self._full():
            self._room.clear()
            await self._room.wait()
        self._queue.put_nowait(item)

    def _offer_drop_oldest(self, item: Any) -> None:
        while self._full():
            dropped = self._queue.get_nowait()
            self.dropped += 1
            LOGGER.debug("Subscriber queue full, dropped %s", type(dropped).__name__)
        self._queue.put_nowait(item)

    def _close(self) -> None:
        # the reserved slot is always free: events never exceed maxsize
        self._queue.put_nowait(_CLOSED)


class EventStream:
    """Fan-out of session events to every subscriber's bounded queue.

    With OverflowPolicy.DROP_OLDEST the producer never waits; a slow consumer
    loses its oldest pending events. With OverflowPolicy.BLOCK the producer
    waits until every subscriber has room, for at most `block_timeout_s` per
    subscriber, then falls back to dropping that subscriber's oldest event.
    """

    def __init__(
        self,
        maxsize: int = 16,
        policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        *,
        block_timeout_s: float = 1.0,
    ) -> None:
        if maxsize < 1:
            raise ValueError("Event stream queue size must be at least 1")
        self.maxsize = maxsize
        self.policy = OverflowPolicy(policy)
        self.block_timeout_s = block_timeout_s
        self._subscribers: list[Subscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self.maxsize)
        if self._closed:
            subscription._close()
        else:
            self._subscribers.append(subscription)
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    async def publish(self, event: Event) -> None:
        if self._closed:
            raise RuntimeError("Cannot publish to a closed event stream")
        for subscription in list(self._subscribers):
            if self.policy is OverflowPolicy.BLOCK:
                try:
                    await asyncio.wait_for(subscription._put_when_room(event), timeout=self.block_timeout_s)
                    continue
                except asyncio.TimeoutError:
                    LOGGER.warning("Subscriber did not drain within %.1fs, dropping oldest event", self.block_timeout_s)
            subscription._offer_drop_oldest(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscribers:
            subscription._close()
        self._subscribers.clear()
