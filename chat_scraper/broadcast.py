"""
Lossy Broadcast Channel

Best-effort multicast used to fan chat messages and agent events out to any
number of consumers. Senders never block and never fail; each subscriber has
a bounded buffer, and a subscriber that falls behind loses its oldest items.
"""

import asyncio
from collections import deque
from typing import Deque, Generic, List, Optional, TypeVar

T = TypeVar("T")

DEFAULT_CAPACITY = 10_000


class ChannelClosed(Exception):
    """Raised by recv() once the subscription is closed and drained"""


class Subscription(Generic[T]):
    """One consumer's view of a BroadcastChannel"""

    def __init__(self, channel: "BroadcastChannel[T]", capacity: int):
        self._channel = channel
        self.capacity = capacity
        self._buffer: Deque[T] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self.lagged = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return len(self._buffer)

    def _push(self, item: T) -> None:
        if len(self._buffer) >= self.capacity:
            self._buffer.popleft()
            self.lagged += 1
        self._buffer.append(item)
        self._ready.set()

    async def recv(self) -> T:
        """Wait for the next item; raises ChannelClosed when closed and empty"""
        while not self._buffer:
            if self._closed:
                raise ChannelClosed()
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def try_recv(self) -> Optional[T]:
        if self._buffer:
            return self._buffer.popleft()
        return None

    def drain(self) -> List[T]:
        items = list(self._buffer)
        self._buffer.clear()
        return items

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._unsubscribe(self)
        self._ready.set()

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.recv()
        except ChannelClosed:
            raise StopAsyncIteration from None

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class BroadcastChannel(Generic[T]):
    """Multicast channel with per-subscriber bounded buffers"""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, name: str = "broadcast"):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.name = name
        self._subscribers: List[Subscription[T]] = []
        self._closed = False
        self.sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self, self.capacity)
        if self._closed:
            subscription.close()
        else:
            self._subscribers.append(subscription)
        return subscription

    def send(self, item: T) -> int:
        """Deliver to every current subscriber; returns how many received it"""
        if self._closed:
            return 0
        self.sent += 1
        for subscription in self._subscribers:
            subscription._push(item)
        return len(self._subscribers)

    def close(self) -> None:
        """Close every subscription; buffered items can still be drained"""
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscribers):
            subscription.close()

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            pass


__all__ = ["BroadcastChannel", "Subscription", "ChannelClosed", "DEFAULT_CAPACITY"]
