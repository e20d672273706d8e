"""Per-task retry counting and escalation info for verification failures."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..core import defaults as D

logger = logging.getLogger(__name__)


class Recommendation(Enum):
    """What a human should do with an escalated task."""

    MANUAL_FIX = "manual-fix"  # Same problem keeps coming back
    SKIP = "skip"  # Only optional criteria failing
    CHANGE_APPROACH = "change-approach"  # Different failures each attempt


@dataclass
class FailureRecord:
    """One failed verification attempt."""

    attempt_number: int
    reason: str
    failed_criteria: list[str] = field(default_factory=list)
    failed_tests: list[str] = field(default_factory=list)
    required_failed: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class EscalationInfo:
    task_id: str
    attempts: int
    reasons: list[str]
    last_failure: FailureRecord | None
    recommendation: Recommendation

    def to_context(self) -> str:
        """Format for a ticket description."""
        lines = [
            f"Task {self.task_id} failed verification {self.attempts} time(s).",
            f"Recommendation: {self.recommendation.value}",
            "",
            "Failure history:",
        ]
        for i, reason in enumerate(self.reasons, 1):
            lines.append(f"  {i}. {reason}")
        if self.last_failure and self.last_failure.failed_criteria:
            lines.append("")
            lines.append("Failed criteria: " + ", ".join(self.last_failure.failed_criteria))
        if self.last_failure and self.last_failure.failed_tests:
            lines.append("Failed tests: " + ", ".join(self.last_failure.failed_tests))
        return "\n".join(lines)


@dataclass
class RetryCheck:
    can_retry: bool
    current_count: int
    remaining: int
    should_escalate: bool
    escalation: EscalationInfo | None = None


class RetryLimiter:
    """Counts verification failures per task and decides when to escalate.

    Counters only go back to zero through ``reset()``, which is an
    administrative action.
    """

    def __init__(self, max_retries: int = D.DEFAULT_MAX_RETRY_CYCLES):
        self.max_retries = max(1, max_retries)
        self._failures: dict[str, list[FailureRecord]] = {}
        self._escalated: set[str] = set()

    def record_failure(
        self,
        task_id: str,
        reason: str,
        failed_criteria: Iterable[str] = (),
        failed_tests: Iterable[str] = (),
        *,
        required_failed: bool = True,
    ) -> int:
        """Record a failed attempt. Returns the new failure count."""
        records = self._failures.setdefault(task_id, [])
        records.append(
            FailureRecord(
                attempt_number=len(records) + 1,
                reason=reason,
                failed_criteria=list(failed_criteria),
                failed_tests=list(failed_tests),
                required_failed=required_failed,
            )
        )
        logger.info(
            "Task %s verification failure %d/%d: %s",
            task_id,
            len(records),
            self.max_retries,
            reason,
        )
        return len(records)

    def get_count(self, task_id: str) -> int:
        return len(self._failures.get(task_id, ()))

    def get_history(self, task_id: str) -> list[FailureRecord]:
        return list(self._failures.get(task_id, ()))

    def check(self, task_id: str) -> RetryCheck:
        count = self.get_count(task_id)
        remaining = max(0, self.max_retries - count)
        should_escalate = remaining == 0 and task_id not in self._escalated
        return RetryCheck(
            can_retry=remaining > 0,
            current_count=count,
            remaining=remaining,
            should_escalate=should_escalate,
            escalation=self.escalation_info(task_id) if should_escalate else None,
        )

    def escalation_info(self, task_id: str) -> EscalationInfo:
        records = self._failures.get(task_id, [])
        reasons = [r.reason for r in records]
        return EscalationInfo(
            task_id=task_id,
            attempts=len(records),
            reasons=reasons,
            last_failure=records[-1] if records else None,
            recommendation=self._recommend(records),
        )

    @staticmethod
    def _recommend(records: list[FailureRecord]) -> Recommendation:
        if records and not any(r.required_failed for r in records):
            return Recommendation.SKIP
        if len({r.reason for r in records}) > 1:
            return Recommendation.CHANGE_APPROACH
        return Recommendation.MANUAL_FIX

    def mark_escalated(self, task_id: str) -> None:
        self._escalated.add(task_id)

    def is_escalated(self, task_id: str) -> bool:
        return task_id in self._escalated

    def reset(self, task_id: str) -> None:
        """Administrative reset of a task's counter and escalation flag."""
        self._failures.pop(task_id, None)
        self._escalated.discard(task_id)
        logger.info("Retry counter reset for task %s", task_id)

    def set_max_retries(self, max_retries: int) -> None:
        self.max_retries = max(1, max_retries)
