"""Cooperative cancellation token passed through awaited calls."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable


class OperationCancelled(Exception):
    """Raised by CancelToken.raise_if_cancelled() once cancellation is requested."""

    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__(reason or "cancelled")


class CancelToken:
    """Cancellation signal plus an activity clock.

    Operations call ``touch()`` whenever they make progress (e.g. each
    streamed chunk) and check ``cancelled`` or ``await wait()`` to stop.
    Nothing is forcibly killed; the holder of the work decides when to stop.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._event = asyncio.Event()
        self.reason = ""
        self.started_at = clock()
        self.last_activity = self.started_at

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def touch(self) -> None:
        self.last_activity = self._clock()

    def idle_seconds(self) -> float:
        return self._clock() - self.last_activity

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation. Returns False if already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason)
