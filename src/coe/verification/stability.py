"""Stability delay before verification.

Waits until no file change has been reported for ``delay`` seconds, so a
build or test run triggered by the last edit has time to settle. The wait
is capped by ``max_wait`` so a task that never stops changing still gets
verified.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from ..core import defaults as D

logger = logging.getLogger(__name__)


class StabilityTimer:
    def __init__(
        self,
        delay: float = D.DEFAULT_STABILITY_DELAY,
        max_wait: float = D.DEFAULT_MAX_STABILITY_WAIT,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.delay = delay
        self.max_wait = max_wait
        self._clock = clock
        self._last_change: dict[str, float] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._cancelled: set[str] = set()

    @property
    def active_count(self) -> int:
        return len(self._wakeups)

    def report_file_change(self, task_id: str) -> None:
        """Restart the delay for a task that is waiting. Ignored otherwise."""
        wakeup = self._wakeups.get(task_id)
        if wakeup is None:
            return
        self._last_change[task_id] = self._clock()
        wakeup.set()

    async def wait_for_stability(self, task_id: str) -> bool:
        """Wait until the task's files are stable.

        Returns:
            True once stable (or max_wait elapsed), False if cancelled.
        """
        if self.delay <= 0:
            return True

        start = self._clock()
        self._last_change[task_id] = start
        self._cancelled.discard(task_id)
        wakeup = asyncio.Event()
        self._wakeups[task_id] = wakeup

        try:
            while True:
                now = self._clock()
                quiet_for = now - self._last_change[task_id]
                remaining = min(self.delay - quiet_for, self.max_wait - (now - start))
                if remaining <= 0:
                    if now - start >= self.max_wait:
                        logger.info("Task %s still changing after %.0fs, verifying anyway",
                                    task_id, self.max_wait)
                    return True

                wakeup.clear()
                try:
                    await asyncio.wait_for(wakeup.wait(), timeout=remaining)
                except TimeoutError:
                    pass

                if task_id in self._cancelled:
                    logger.info("Stability wait for task %s cancelled", task_id)
                    return False
        finally:
            if self._wakeups.get(task_id) is wakeup:
                del self._wakeups[task_id]
                self._last_change.pop(task_id, None)
                self._cancelled.discard(task_id)

    def cancel(self, task_id: str) -> bool:
        wakeup = self._wakeups.get(task_id)
        if wakeup is None:
            return False
        self._cancelled.add(task_id)
        wakeup.set()
        return True

    def cancel_all(self) -> int:
        return sum(1 for task_id in list(self._wakeups) if self.cancel(task_id))
