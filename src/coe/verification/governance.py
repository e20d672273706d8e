"""Verification governance: stability wait, checks, then pass/retry/fail.

The governor owns the retry policy for tasks in the ``verification``
status:

* checklist passed -> ``verification-passed`` (done)
* failed, and the failure count (this one included) is still below the
  limit -> ``verification-failed`` then ``revision-started`` (back to
  in-progress)
* failed, and the count has reached the limit -> ``max-retries-exceeded``
  (failed) and a priority-1 escalation ticket carrying the failed
  required items

Retry counters are only reset by ``reset_retries()``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum

from ..core.cancel import CancelToken
from ..core.config import VerificationConfig
from ..events import VERIFICATION_CHANNEL, Event, EventManager, EventType
from ..orchestrator.status import StatusStateMachine, TaskStatus, Trigger
from ..tickets import TicketCreate, TicketStatus, TicketStore, TicketStoreError, TicketType
from .checklist import CheckCategory, Checklist, ChecklistItem, ChecklistResult, ItemStatus
from .checks import CommandCheck, default_checks, run_checks
from .retry import RetryLimiter
from .stability import StabilityTimer

logger = logging.getLogger(__name__)

ESCALATION_PRIORITY = 1


class Verdict(StrEnum):
    PASSED = "passed"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass
class GovernanceOutcome:
    task_id: str
    verdict: Verdict
    status: TaskStatus | None
    result: ChecklistResult | None = None
    retry_count: int = 0
    ticket_id: str | None = None
    message: str = ""


class VerificationGovernor:
    """Decides pass, retry or fail for a task in verification."""

    def __init__(
        self,
        state_machine: StatusStateMachine,
        tickets: TicketStore | None,
        config: VerificationConfig | None = None,
        *,
        limiter: RetryLimiter | None = None,
        timer: StabilityTimer | None = None,
        checks_factory: Callable[[str], Sequence[CommandCheck]] | None = None,
        events: EventManager | None = None,
    ):
        self.state_machine = state_machine
        self.tickets = tickets
        self.config = config or VerificationConfig()
        self.limiter = limiter or RetryLimiter(self.config.max_retry_cycles)
        self.timer = timer or StabilityTimer(
            self.config.stability_delay, self.config.max_stability_wait
        )
        self._checks_factory = checks_factory or (lambda _task_id: default_checks(self.config))
        self.events = events

    async def verify(
        self,
        task_id: str,
        custom_items: Iterable[ChecklistItem] = (),
        *,
        token: CancelToken | None = None,
        prefill: Callable[[Checklist], None] | None = None,
    ) -> GovernanceOutcome:
        """Wait for stability, run the checks and apply the verdict.

        Args:
            task_id: Task currently in the ``verification`` status.
            custom_items: Extra checklist items for this attempt.
            token: Optional cancellation token for the whole run.
            prefill: Hook to mark items before the automated checks run.

        Returns:
            The governance outcome.
        """
        if self.state_machine.get_status(task_id) != TaskStatus.VERIFICATION:
            return GovernanceOutcome(
                task_id,
                Verdict.SKIPPED,
                self.state_machine.get_status(task_id),
                message="Task is not awaiting verification",
            )

        if not await self.timer.wait_for_stability(task_id):
            return GovernanceOutcome(
                task_id,
                Verdict.CANCELLED,
                TaskStatus.VERIFICATION,
                message="Stability wait cancelled",
            )

        checklist = Checklist(task_id, custom_items)
        if prefill is not None:
            prefill(checklist)
        await run_checks(checklist, self._checks_factory(task_id), token=token)

        if token is not None and token.cancelled:
            return GovernanceOutcome(
                task_id,
                Verdict.CANCELLED,
                TaskStatus.VERIFICATION,
                result=checklist.get_result(),
                message=f"Verification cancelled: {token.reason}",
            )

        return await self.evaluate(task_id, checklist)

    async def evaluate(self, task_id: str, checklist: Checklist) -> GovernanceOutcome:
        """Apply the pass/retry/fail decision to a filled checklist."""
        for item in checklist.items:
            if item.status == ItemStatus.PENDING and not item.required:
                checklist.mark_not_applicable(item.id, "Not checked automatically")

        result = checklist.get_result()

        if result.passed:
            status = self.state_machine.transition(
                task_id,
                Trigger.VERIFICATION_PASSED,
                {"pass_percent": result.pass_percent},
            )
            self._publish(EventType.VERIFICATION_PASSED, task_id, result)
            logger.info("Task %s passed verification: %s", task_id, result.summary)
            return GovernanceOutcome(
                task_id,
                Verdict.PASSED,
                status,
                result=result,
                retry_count=self.limiter.get_count(task_id),
                message=result.summary,
            )

        failed_ids = result.failed_required_ids
        failed_tests = [
            i.evidence or i.id
            for i in result.failed_required
            if i.category == CheckCategory.TESTS
        ]
        count = self.limiter.record_failure(
            task_id,
            result.summary,
            failed_criteria=failed_ids + [i.id for i in result.pending_items],
            failed_tests=failed_tests,
            required_failed=bool(failed_ids) or any(i.required for i in result.pending_items),
        )
        self._publish(EventType.VERIFICATION_FAILED, task_id, result, retry_count=count)

        if self.limiter.check(task_id).can_retry:
            self.state_machine.transition(
                task_id,
                Trigger.VERIFICATION_FAILED,
                {"retry_count": count, "failed": failed_ids},
            )
            status = self.state_machine.transition(
                task_id,
                Trigger.REVISION_STARTED,
                {"retry_count": count},
            )
            logger.info(
                "Task %s failed verification (%s), retry %d/%d",
                task_id,
                result.summary,
                count,
                self.limiter.max_retries,
            )
            return GovernanceOutcome(
                task_id,
                Verdict.RETRYING,
                status,
                result=result,
                retry_count=count,
                message=result.summary,
            )

        status = self.state_machine.transition(
            task_id,
            Trigger.MAX_RETRIES_EXCEEDED,
            {"retry_count": count, "failed": failed_ids},
        )
        ticket_id = await self._escalate(task_id, checklist, result)
        logger.warning("Task %s failed verification after %d attempts", task_id, count)
        return GovernanceOutcome(
            task_id,
            Verdict.FAILED,
            status,
            result=result,
            retry_count=count,
            ticket_id=ticket_id,
            message=self.failure_report(result),
        )

    @staticmethod
    def failure_report(result: ChecklistResult) -> str:
        lines = [result.summary]
        for item in result.failed_required:
            lines.append(f"- {item.id}: {item.description}")
            if item.evidence:
                lines.append(f"    {item.evidence}")
        return "\n".join(lines)

    async def _escalate(
        self,
        task_id: str,
        checklist: Checklist,
        result: ChecklistResult,
    ) -> str | None:
        if self.tickets is None or self.limiter.is_escalated(task_id):
            return None

        info = self.limiter.escalation_info(task_id)
        description = "\n\n".join(
            [info.to_context(), self.failure_report(result), checklist.format()]
        )
        try:
            ticket = await self.tickets.create(
                TicketCreate(
                    title=f"Manual Intervention Required: {task_id}",
                    description=description,
                    priority=ESCALATION_PRIORITY,
                    status=TicketStatus.ESCALATED,
                    type=TicketType.AI_TO_HUMAN,
                    task_id=task_id,
                )
            )
        except TicketStoreError as e:
            logger.error("Failed to escalate task %s: %s", task_id, e.message)
            return None

        self.limiter.mark_escalated(task_id)
        if self.events is not None:
            self.events.publish_nowait(
                VERIFICATION_CHANNEL,
                Event(
                    event_type=EventType.ESCALATION_CREATED,
                    data={"task_id": task_id, "ticket_id": ticket.id},
                ),
            )
        return ticket.id

    def reset_retries(self, task_id: str) -> None:
        """Administrative reset of a task's retry counter."""
        self.limiter.reset(task_id)

    def report_file_change(self, task_id: str) -> None:
        self.timer.report_file_change(task_id)

    def _publish(
        self,
        event_type: EventType,
        task_id: str,
        result: ChecklistResult,
        **extra: object,
    ) -> None:
        if self.events is None:
            return
        data = {
            "task_id": task_id,
            "summary": result.summary,
            "pass_percent": result.pass_percent,
            "failed_required": result.failed_required_ids,
            **extra,
        }
        self.events.publish_nowait(VERIFICATION_CHANNEL, Event(event_type=event_type, data=data))
