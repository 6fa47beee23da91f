"""In-process pub/sub for live crawl progress.

Delivery is best-effort and at-most-once: ``publish`` never blocks, and a
subscriber that falls behind loses its oldest buffered events first.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100

_CLOSED = object()


def crawl_topic(source_id: str) -> str:
    """Topic name carrying progress events of one source's crawl."""
    return f"crawl:{source_id}"


class Subscription:
    """Bounded async-iterable view of one topic. Use as a context manager."""

    def __init__(self, channel: ProgressChannel, topic: str, buffer_size: int) -> None:
        self._channel = channel
        self.topic = topic
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=buffer_size)
        self.dropped = 0
        self._closed = False

    def _offer(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            if item is not _CLOSED:
                self.dropped += 1
        self._queue.put_nowait(item)

    async def get(self) -> dict[str, Any]:
        """Wait for the next event.

        Raises:
            StopAsyncIteration: If the subscription has been closed.
        """
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._remove(self)
        self._offer(_CLOSED)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> dict[str, Any]:
        return await self.get()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *args: object) -> None:
        self.close()


class ProgressChannel:
    """Topic-based fan-out of JSON-ready event payloads."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self.buffer_size = buffer_size
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def publish(self, topic: str, payload: dict[str, Any]) -> int:
        """Deliver *payload* to every current subscriber of *topic*.

        Returns:
            Number of subscribers the event was offered to.
        """
        subscribers = list(self._subscribers.get(topic, ()))
        for sub in subscribers:
            sub._offer(payload)
        return len(subscribers)

    def subscribe(self, topic: str, buffer_size: int | None = None) -> Subscription:
        """Start receiving events published to *topic* from now on."""
        sub = Subscription(self, topic, buffer_size or self.buffer_size)
        self._subscribers[topic].append(sub)
        return sub

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.topic)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subscribers[sub.topic]
