"""EventManager - in-memory pub/sub for orchestration events."""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict

from .models import Event


class Subscription:
    """Handle for one subscriber queue on a channel.

    Iterate it (``async for event in sub``) or ``await sub.get()``.
    Call ``unsubscribe()`` when done; it is safe to call more than once.
    """

    def __init__(self, manager: EventManager, channel: str, queue: asyncio.Queue):
        self._manager = manager
        self.channel = channel
        self.queue = queue
        self.active = True

    async def get(self) -> Event:
        return await self.queue.get()

    def get_nowait(self) -> Event:
        return self.queue.get_nowait()

    def drain(self) -> list[Event]:
        """Return every event currently buffered, without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._manager.remove(self.channel, self.queue)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Event:
        if not self.active:
            raise StopAsyncIteration
        return await self.queue.get()


class EventManager:
    """In-memory pub/sub for orchestration events.

    Publishing only enqueues. Subscribers consume on their own task, so a
    handler never runs inside the call that changed state.
    """

    def __init__(self, maxsize: int = 100) -> None:
        self._channels: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._maxsize = maxsize

    def subscribe(self, channel: str) -> Subscription:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._channels[channel].add(queue)
        return Subscription(self, channel, queue)

    def remove(self, channel: str, queue: asyncio.Queue) -> None:
        self._channels[channel].discard(queue)
        if not self._channels[channel]:
            del self._channels[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    def publish_nowait(self, channel: str, event: Event) -> None:
        event.channel = channel
        for queue in list(self._channels.get(channel, [])):
            with contextlib.suppress(asyncio.QueueFull):
                queue.put_nowait(event)

    async def publish(self, channel: str, event: Event) -> None:
        self.publish_nowait(channel, event)
