"""Task status state machine.

Tracks the full workflow lifecycle of every task by id. Only transitions
declared in ``TRANSITIONS`` are legal; each accepted transition appends one
immutable StateEvent to the task's history, and the current status is
always the ``to_status`` of the latest event.

Lifecycle:
    pending -> blocked | ready
    blocked -> ready | cancelled
    ready -> in-progress | cancelled
    in-progress -> verification | failed | cancelled
    verification -> done | needs-revision | failed
    needs-revision -> in-progress | cancelled | failed
    failed -> pending (retry)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from ..events import STATUS_CHANNEL, Event, EventManager, EventType
from .queue import QueueStatus

logger = logging.getLogger(__name__)


class TaskStatus(StrEnum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    IN_PROGRESS = "in-progress"
    VERIFICATION = "verification"
    NEEDS_REVISION = "needs-revision"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Trigger(StrEnum):
    DEPENDENCIES_DETECTED = "dependencies-detected"
    NO_DEPENDENCIES = "no-dependencies"
    DEPENDENCIES_RESOLVED = "dependencies-resolved"
    ASSIGNED = "assigned"
    CODING_COMPLETE = "coding-complete"
    VERIFICATION_PASSED = "verification-passed"
    VERIFICATION_FAILED = "verification-failed"
    REVISION_STARTED = "revision-started"
    MAX_RETRIES_EXCEEDED = "max-retries-exceeded"
    CANCEL = "cancel"
    FATAL_ERROR = "fatal-error"
    RETRY_REQUESTED = "retry-requested"


TRANSITIONS: dict[tuple[TaskStatus, Trigger], TaskStatus] = {
    (TaskStatus.PENDING, Trigger.DEPENDENCIES_DETECTED): TaskStatus.BLOCKED,
    (TaskStatus.PENDING, Trigger.NO_DEPENDENCIES): TaskStatus.READY,
    (TaskStatus.BLOCKED, Trigger.DEPENDENCIES_RESOLVED): TaskStatus.READY,
    (TaskStatus.BLOCKED, Trigger.CANCEL): TaskStatus.CANCELLED,
    (TaskStatus.READY, Trigger.ASSIGNED): TaskStatus.IN_PROGRESS,
    (TaskStatus.READY, Trigger.CANCEL): TaskStatus.CANCELLED,
    (TaskStatus.IN_PROGRESS, Trigger.CODING_COMPLETE): TaskStatus.VERIFICATION,
    (TaskStatus.IN_PROGRESS, Trigger.FATAL_ERROR): TaskStatus.FAILED,
    (TaskStatus.IN_PROGRESS, Trigger.CANCEL): TaskStatus.CANCELLED,
    (TaskStatus.VERIFICATION, Trigger.VERIFICATION_PASSED): TaskStatus.DONE,
    (TaskStatus.VERIFICATION, Trigger.VERIFICATION_FAILED): TaskStatus.NEEDS_REVISION,
    (TaskStatus.VERIFICATION, Trigger.MAX_RETRIES_EXCEEDED): TaskStatus.FAILED,
    (TaskStatus.NEEDS_REVISION, Trigger.REVISION_STARTED): TaskStatus.IN_PROGRESS,
    (TaskStatus.NEEDS_REVISION, Trigger.CANCEL): TaskStatus.CANCELLED,
    (TaskStatus.NEEDS_REVISION, Trigger.MAX_RETRIES_EXCEEDED): TaskStatus.FAILED,
    (TaskStatus.FAILED, Trigger.RETRY_REQUESTED): TaskStatus.PENDING,
}

TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.CANCELLED})


@dataclass(frozen=True)
class StateEvent:
    """One recorded status change. Never mutated once appended."""

    task_id: str
    from_status: TaskStatus
    to_status: TaskStatus
    trigger: str
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "from_status": str(self.from_status),
            "to_status": str(self.to_status),
            "trigger": self.trigger,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusStateMachine:
    """In-memory transition table plus per-task history."""

    def __init__(
        self,
        events: EventManager | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._events = events
        self._clock = clock
        self._status: dict[str, TaskStatus] = {}
        self._history: dict[str, list[StateEvent]] = {}

    # --- Mutations ---

    def initialize(self, task_id: str, has_dependencies: bool = False) -> TaskStatus:
        """Seed a task at blocked (has dependencies) or ready.

        Re-initializing a known task discards its previous history.
        """
        trigger = Trigger.DEPENDENCIES_DETECTED if has_dependencies else Trigger.NO_DEPENDENCIES
        self._history[task_id] = []
        self._status[task_id] = TaskStatus.PENDING
        target = TRANSITIONS[(TaskStatus.PENDING, trigger)]
        return self._record(task_id, TaskStatus.PENDING, target, trigger)

    def transition(
        self,
        task_id: str,
        trigger: Trigger | str,
        metadata: dict[str, Any] | None = None,
    ) -> TaskStatus | None:
        """Apply a declared transition.

        Returns:
            The new status, or None if the task is unknown or the
            (status, trigger) pair is not declared. Nothing changes on None.
        """
        current = self._status.get(task_id)
        if current is None:
            logger.warning("Transition %s rejected: unknown task %s", trigger, task_id)
            return None

        try:
            trigger = Trigger(trigger)
        except ValueError:
            logger.warning("Transition rejected: unknown trigger %r for task %s", trigger, task_id)
            return None

        target = TRANSITIONS.get((current, trigger))
        if target is None:
            logger.warning(
                "Invalid transition for task %s: %s --%s--> (no such transition)",
                task_id,
                current,
                trigger,
            )
            return None

        return self._record(task_id, current, target, trigger, metadata)

    def force_status(self, task_id: str, status: TaskStatus, reason: str) -> TaskStatus:
        """Administrative override that bypasses the transition table."""
        status = TaskStatus(status)
        current = self._status.get(task_id, TaskStatus.PENDING)
        self._history.setdefault(task_id, [])
        logger.warning("Forcing task %s from %s to %s: %s", task_id, current, status, reason)
        return self._record(
            task_id,
            current,
            status,
            f"force:{reason}",
            {"forced": True, "reason": reason},
        )

    def remove_task(self, task_id: str) -> bool:
        existed = task_id in self._status
        self._status.pop(task_id, None)
        self._history.pop(task_id, None)
        return existed

    def clear(self) -> None:
        self._status.clear()
        self._history.clear()

    def _record(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        trigger: str,
        metadata: dict[str, Any] | None = None,
    ) -> TaskStatus:
        event = StateEvent(
            task_id=task_id,
            from_status=from_status,
            to_status=to_status,
            trigger=str(trigger),
            timestamp=self._clock(),
            metadata=dict(metadata or {}),
        )
        self._history[task_id].append(event)
        self._status[task_id] = to_status
        logger.debug("Task %s: %s --%s--> %s", task_id, from_status, trigger, to_status)

        if self._events is not None:
            self._events.publish_nowait(
                STATUS_CHANNEL,
                Event(event_type=EventType.STATUS_CHANGED, data=event.to_dict()),
            )
        return to_status

    # --- Queries ---

    def get_status(self, task_id: str) -> TaskStatus | None:
        return self._status.get(task_id)

    def has_task(self, task_id: str) -> bool:
        return task_id in self._status

    def can_transition(self, task_id: str, trigger: Trigger | str) -> bool:
        current = self._status.get(task_id)
        if current is None:
            return False
        try:
            return (current, Trigger(trigger)) in TRANSITIONS
        except ValueError:
            return False

    def get_valid_triggers(self, task_id: str) -> list[Trigger]:
        current = self._status.get(task_id)
        if current is None:
            return []
        return [trigger for (status, trigger) in TRANSITIONS if status == current]

    def get_history(self, task_id: str) -> tuple[StateEvent, ...]:
        return tuple(self._history.get(task_id, ()))

    def get_time_in_status(self, task_id: str) -> dict[TaskStatus, float]:
        """Seconds spent in each status, derived from consecutive history pairs.

        The gap between two events is credited to the status the earlier
        event entered. The current (open-ended) status is not counted.
        """
        history = self._history.get(task_id, [])
        totals: dict[TaskStatus, float] = {}
        for earlier, later in zip(history, history[1:]):
            elapsed = max(0.0, (later.timestamp - earlier.timestamp).total_seconds())
            totals[earlier.to_status] = totals.get(earlier.to_status, 0.0) + elapsed
        return totals

    def get_tasks_by_status(self, status: TaskStatus) -> list[str]:
        return [task_id for task_id, s in self._status.items() if s == status]

    def get_summary(self) -> dict[TaskStatus, int]:
        summary = {status: 0 for status in TaskStatus}
        for status in self._status.values():
            summary[status] += 1
        return summary

    def __len__(self) -> int:
        return len(self._status)


# Queue-level status is a coarse projection of the governance status.
# None means the task has left the dispatch queue for good.
_QUEUE_PROJECTION: dict[TaskStatus, QueueStatus | None] = {
    TaskStatus.PENDING: QueueStatus.PENDING,
    TaskStatus.READY: QueueStatus.PENDING,
    TaskStatus.NEEDS_REVISION: QueueStatus.PENDING,
    TaskStatus.IN_PROGRESS: QueueStatus.PICKED,
    TaskStatus.VERIFICATION: QueueStatus.PICKED,
    TaskStatus.BLOCKED: QueueStatus.BLOCKED,
    TaskStatus.FAILED: QueueStatus.BLOCKED,
    TaskStatus.DONE: None,
    TaskStatus.CANCELLED: None,
}


def project_queue_status(status: TaskStatus) -> QueueStatus | None:
    """Map a governance status onto the queue's pending/picked/blocked vocabulary."""
    return _QUEUE_PROJECTION[TaskStatus(status)]
