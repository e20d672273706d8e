"""Inactivity watchdog for model calls.

``TimeoutGuard.with_timeout()`` runs an operation with a CancelToken and a
periodic watchdog. The timeout is an *inactivity* timeout: every
``token.touch()`` (one per streamed chunk) resets the clock, so a slow but
steady stream never times out. When the watchdog fires, the token is
cancelled, the guard stops waiting, and an escalation ticket is raised.

The guard never raises for operating failures. Model errors, transport
errors and timeouts all come back as a GuardResult.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from ..core import defaults as D
from ..core.cancel import CancelToken, OperationCancelled
from ..core.config import TimeoutGuardConfig
from ..llm import ModelResponse, ModelServiceError
from ..tickets import TicketCreate, TicketStatus, TicketStore, TicketType

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = (
    "Answer could not be generated in time. A ticket has been created for human review."
)

TIMEOUT_REASON = "timeout"
CANCEL_REASON = "cancelled"

# Failures that are operating conditions, not bugs
EXPECTED_ERRORS: tuple[type[BaseException], ...] = (
    ModelServiceError,
    httpx.HTTPError,
    OSError,
    TimeoutError,
)

Operation = Callable[[CancelToken], Awaitable[Any]]


@dataclass(frozen=True)
class GuardResult:
    """Outcome of a guarded call."""

    success: bool
    value: Any = None
    timed_out: bool = False
    cancelled: bool = False
    error: str | None = None
    elapsed_ms: int = 0
    ticket_id: str | None = None

    @property
    def content(self) -> str:
        """Model content on success, empty string otherwise."""
        if self.success and isinstance(self.value, ModelResponse):
            return self.value.content
        if self.success and isinstance(self.value, str):
            return self.value
        return ""


def _consume_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


class TimeoutGuard:
    """Wraps async model calls with a watchdog, cancel and escalation."""

    def __init__(
        self,
        tickets: TicketStore | None = None,
        config: TimeoutGuardConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.tickets = tickets
        self.config = config or TimeoutGuardConfig()
        self._clock = clock
        self._active: dict[str, CancelToken] = {}

    @property
    def active_count(self) -> int:
        return len(self._active)

    def set_timeout_seconds(self, seconds: float) -> float:
        """Set the inactivity threshold, clamped to 5..300 seconds."""
        clamped = max(D.MIN_RESPONSE_SECONDS, min(D.MAX_RESPONSE_SECONDS, float(seconds)))
        self.config.max_response_seconds = clamped
        return clamped

    async def with_timeout(
        self,
        request_id: str,
        operation: Operation,
        context: dict[str, Any] | None = None,
    ) -> GuardResult:
        """Run ``operation(token)`` under the inactivity watchdog.

        Args:
            request_id: Caller-chosen id, usable with cancel().
            operation: Coroutine function receiving the CancelToken.
            context: Request details embedded in the timeout ticket
                (``question`` is used as the headline when present).

        Returns:
            GuardResult. Only programming errors raised by the operation
            propagate; everything else is reported in the result.
        """
        context = context or {}
        start = self._clock()
        token = CancelToken(self._clock)
        if request_id in self._active:
            logger.warning("Request id %s already active, cancelling previous call", request_id)
            self._active[request_id].cancel(CANCEL_REASON)
        self._active[request_id] = token

        op_task = asyncio.ensure_future(operation(token))
        cancel_waiter = asyncio.ensure_future(token.wait())
        watchdog = asyncio.create_task(self._watchdog(request_id, token))

        try:
            await asyncio.wait({op_task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watchdog.cancel()
            cancel_waiter.cancel()
            if self._active.get(request_id) is token:
                del self._active[request_id]
            if not op_task.done():
                # Stop waiting; the operation observes the token to stop its own work
                op_task.cancel()
                op_task.add_done_callback(_consume_result)

        elapsed_ms = int((self._clock() - start) * 1000)

        if op_task.done() and not op_task.cancelled():
            exc = op_task.exception()
            if exc is None and not token.cancelled:
                return self._from_value(op_task.result(), elapsed_ms)
            if exc is not None and not isinstance(exc, OperationCancelled):
                if not isinstance(exc, EXPECTED_ERRORS):
                    raise exc
                logger.warning("Guarded call %s failed: %s", request_id, exc)
                return GuardResult(success=False, error=str(exc), elapsed_ms=elapsed_ms)

        if token.reason == TIMEOUT_REASON:
            ticket_id = await self._create_timeout_ticket(request_id, context, elapsed_ms)
            return GuardResult(
                success=False,
                timed_out=True,
                error=TIMEOUT_MESSAGE,
                elapsed_ms=elapsed_ms,
                ticket_id=ticket_id,
            )

        logger.info("Guarded call %s cancelled: %s", request_id, token.reason)
        return GuardResult(
            success=False,
            cancelled=True,
            error=token.reason or CANCEL_REASON,
            elapsed_ms=elapsed_ms,
        )

    def _from_value(self, value: Any, elapsed_ms: int) -> GuardResult:
        if isinstance(value, ModelResponse) and not value.ok:
            return GuardResult(
                success=False,
                value=value,
                error=value.error,
                elapsed_ms=elapsed_ms,
            )
        return GuardResult(success=True, value=value, elapsed_ms=elapsed_ms)

    async def _watchdog(self, request_id: str, token: CancelToken) -> None:
        """Cancel the token once it has been idle longer than the threshold."""
        threshold = self.config.max_response_seconds
        interval = min(self.config.watchdog_interval, threshold)
        while not token.cancelled:
            await asyncio.sleep(interval)
            idle = token.idle_seconds()
            if idle > threshold:
                logger.warning(
                    "Request %s inactive for %.1fs (limit %.1fs), cancelling",
                    request_id,
                    idle,
                    threshold,
                )
                token.cancel(TIMEOUT_REASON)
                return

    async def _create_timeout_ticket(
        self,
        request_id: str,
        context: dict[str, Any],
        elapsed_ms: int,
    ) -> str | None:
        if self.tickets is None or not self.config.create_ticket_on_timeout:
            return None

        question = str(context.get("question", "")) or "(no question text)"
        details = "\n".join(
            f"- {key}: {value}" for key, value in context.items() if key != "question"
        )
        description = (
            f"The answer agent did not respond within "
            f"{self.config.max_response_seconds:.0f}s "
            f"(gave up after {elapsed_ms / 1000:.1f}s).\n\n"
            f"Question:\n{question}"
        )
        if details:
            description += f"\n\nContext:\n{details}"

        try:
            ticket = await self.tickets.create(
                TicketCreate(
                    title=f"TIMEOUT: Answer needed for question ({request_id})",
                    description=description,
                    priority=self.config.ticket_priority,
                    status=TicketStatus.ESCALATED,
                    type=TicketType.AI_TO_HUMAN,
                    task_id=context.get("task_id"),
                )
            )
        except Exception:
            logger.exception("Failed to create timeout ticket for %s", request_id)
            return None

        logger.info("Timeout ticket %s created for request %s", ticket.id, request_id)
        return ticket.id

    def cancel(self, request_id: str) -> bool:
        """Cancel an in-flight call. Returns False for unknown or finished ids."""
        token = self._active.get(request_id)
        if token is None:
            return False
        return token.cancel(CANCEL_REASON)

    def cancel_matching(self, prefix: str) -> int:
        """Cancel every in-flight call whose request id starts with ``prefix``."""
        return sum(1 for rid in list(self._active) if rid.startswith(prefix) and self.cancel(rid))

    def cancel_all(self) -> int:
        return sum(1 for rid in list(self._active) if self.cancel(rid))
