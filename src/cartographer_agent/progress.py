"""
Progress broadcasting.

Each session publishes typed progress events to a ProgressBroadcaster. Any
number of consumers subscribe and receive every event published after they
subscribed. Publishing never blocks: a subscriber that falls behind loses its
oldest queued events.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Generic, Optional, TypeVar

from .exceptions import SubscriptionClosed

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_QUEUE_SIZE = 256


class Subscription(Generic[T]):
    """A consumer's view of a broadcaster."""

    def __init__(self, broadcaster: ProgressBroadcaster[T], maxsize: int):
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()
        self.dropped = 0
        self.closed = False

    def _offer(self, event: T) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> T:
        """
        Wait for the next event.

        Raises:
            SubscriptionClosed: If the subscription is closed while waiting
            asyncio.TimeoutError: If no event arrives within timeout
        """
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self.closed:
            raise SubscriptionClosed(f"{self._broadcaster.name} subscription closed")

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {getter, closer}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()

        if getter in done:
            return getter.result()
        if closer in done:
            raise SubscriptionClosed(f"{self._broadcaster.name} subscription closed")
        raise asyncio.TimeoutError()

    def get_nowait(self) -> T:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> list[T]:
        """Return every queued event without waiting."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._closed.set()
            self._broadcaster._unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while not self.closed:
            try:
                event = await self.get()
            except SubscriptionClosed:
                return
            yield event

    def __enter__(self) -> Subscription[T]:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ProgressBroadcaster(Generic[T]):
    """Single-writer, multi-reader channel for progress events."""

    def __init__(self, name: str = "progress"):
        self.name = name
        self._subscribers: list[Subscription[T]] = []
        self.last_event: Optional[T] = None

    def subscribe(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self, maxsize)
        self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription[T]) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: T) -> None:
        self.last_event = event
        for sub in list(self._subscribers):
            sub._offer(event)
        logger.debug(f"[{self.name}] {event}")
