"""
Event Channels
Typed publish/subscribe primitive, one channel per event topic

Subscribers either receive events through a synchronous callback, invoked in
publish order, or consume a bounded stream with ``async for``. Streams never
block the publisher: when a stream is full the overflow policy decides which
event is dropped.
"""

import asyncio
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Generic, List, Optional, TypeVar
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OverflowPolicy(Enum):
    """What a full stream does with a new event"""
    DROP_OLDEST = "drop_oldest"   # conflate: keep the newest events
    DROP_NEWEST = "drop_newest"   # keep the backlog, discard the new event


class Subscription(Generic[T]):
    """
    Handle returned by EventChannel.subscribe / EventChannel.stream

    Callback subscriptions only need ``cancel()``. Stream subscriptions are
    async iterators that end once cancelled or once the channel is closed.
    """

    def __init__(
        self,
        channel: "EventChannel[T]",
        handler: Optional[Callable[[T], Any]] = None,
        maxsize: int = 0,
        overflow: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    ):
        self.channel = channel
        self.handler = handler
        self.maxsize = maxsize
        self.overflow = overflow
        self.dropped = 0
        self.delivered = 0
        self.active = True
        self._buffer: Deque[T] = deque()
        self._waiter: Optional[asyncio.Future] = None

    @property
    def is_stream(self) -> bool:
        return self.handler is None

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def cancel(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if not self.active:
            return
        self.active = False
        self.channel._remove(self)
        self._wake()

    def _deliver(self, event: T) -> None:
        if self.handler is not None:
            self.handler(event)
            self.delivered += 1
            return

        if self.maxsize and len(self._buffer) >= self.maxsize:
            self.dropped += 1
            if self.overflow == OverflowPolicy.DROP_NEWEST:
                return
            self._buffer.popleft()

        self._buffer.append(event)
        self.delivered += 1
        self._wake()

    def _wake(self) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)

    def get_nowait(self) -> Optional[T]:
        """Pop the oldest buffered event, or None when the buffer is empty"""
        if self._buffer:
            return self._buffer.popleft()
        return None

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        while not self._buffer:
            if not self.active:
                raise StopAsyncIteration
            self._waiter = asyncio.get_running_loop().create_future()
            try:
                await self._waiter
            finally:
                self._waiter = None
        return self._buffer.popleft()


class EventChannel(Generic[T]):
    """Publish/subscribe channel for a single event topic"""

    def __init__(self, name: str):
        self.name = name
        self._subscriptions: List[Subscription[T]] = []
        self.published = 0
        self.handler_errors = 0

    def subscribe(self, handler: Callable[[T], Any]) -> Subscription[T]:
        """Register a callback invoked synchronously for every event"""
        sub = Subscription(self, handler=handler)
        self._subscriptions.append(sub)
        return sub

    def stream(
        self,
        maxsize: int = 1000,
        overflow: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    ) -> Subscription[T]:
        """Open a bounded buffered subscription consumed with ``async for``"""
        sub = Subscription(self, maxsize=maxsize, overflow=overflow)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription[T]) -> None:
        subscription.cancel()

    def _remove(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: T) -> int:
        """
        Deliver an event to every current subscriber

        A failing callback is logged and does not prevent delivery to the
        remaining subscribers.

        Returns:
            Number of subscribers the event was handed to
        """
        self.published += 1
        reached = 0

        # Snapshot so handlers may unsubscribe while we iterate
        for sub in list(self._subscriptions):
            if not sub.active:
                continue
            try:
                sub._deliver(event)
                reached += 1
            except Exception as e:
                self.handler_errors += 1
                logger.error(f"Handler error on channel '{self.name}': {e}", exc_info=True)

        return reached

    def close(self) -> None:
        """Cancel every subscription; open streams finish iterating"""
        for sub in list(self._subscriptions):
            sub.cancel()
