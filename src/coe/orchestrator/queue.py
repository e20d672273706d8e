"""FIFO dispatch queue with atomic claim and idle-timeout escalation.

The queue is an in-memory cache of open tickets. Claiming goes through the
ticket store's conditional write, so the store decides who owns a task and
the queue only reflects that decision.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ..events import QUEUE_CHANNEL, Event, EventManager, EventType
from ..tickets import Ticket, TicketCreate, TicketStatus, TicketStore, TicketStoreError

logger = logging.getLogger(__name__)


class QueueStatus(StrEnum):
    PENDING = "pending"
    PICKED = "picked"
    BLOCKED = "blocked"


@dataclass
class Task:
    """A queued unit of work, mirrored 1:1 with a ticket."""

    id: str
    title: str
    status: QueueStatus = QueueStatus.PENDING
    created_at: str = ""
    priority: int = 2
    last_picked_at: float | None = None
    blocked_at: float | None = None

    @classmethod
    def from_ticket(cls, ticket: Ticket) -> Task:
        return cls(
            id=ticket.id,
            title=ticket.title,
            created_at=ticket.created_at,
            priority=ticket.priority,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": str(self.status),
            "created_at": self.created_at,
            "priority": self.priority,
            "last_picked_at": self.last_picked_at,
            "blocked_at": self.blocked_at,
        }


class TaskQueue:
    """FIFO queue plus in-flight and blocked sets.

    A task id lives in at most one of: the queue, the in-flight set, the
    blocked set. Every state change publishes one event on the ``queue``
    channel after the change is complete.
    """

    def __init__(
        self,
        store: TicketStore,
        events: EventManager | None = None,
        *,
        idle_timeout: float = 30.0,
        escalation_priority: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.events = events
        self.idle_timeout = idle_timeout
        self.escalation_priority = escalation_priority
        self._clock = clock
        self._queue: deque[Task] = deque()
        self._in_flight: dict[str, Task] = {}
        self._blocked: dict[str, Task] = {}
        self._escalated: set[str] = set()
        self.last_picked_title: str | None = None

    # --- Membership ---

    def __len__(self) -> int:
        return len(self._queue)

    def __contains__(self, task_id: object) -> bool:
        return self.is_tracked(str(task_id))

    def is_tracked(self, task_id: str) -> bool:
        return (
            task_id in self._in_flight
            or task_id in self._blocked
            or any(t.id == task_id for t in self._queue)
        )

    def get(self, task_id: str) -> Task | None:
        for task in self._queue:
            if task.id == task_id:
                return task
        return self._in_flight.get(task_id) or self._blocked.get(task_id)

    # --- Mutations ---

    def enqueue(self, task: Task) -> bool:
        """Append a task at the tail. Returns False if the id is already tracked."""
        if self.is_tracked(task.id):
            return False
        task.status = QueueStatus.PENDING
        self._queue.append(task)
        self._publish(EventType.TASK_ENQUEUED, task)
        return True

    def track_in_flight(self, task: Task) -> bool:
        """Register a task that was already claimed before this process started."""
        if self.is_tracked(task.id):
            return False
        task.status = QueueStatus.PICKED
        if task.last_picked_at is None:
            task.last_picked_at = self._clock()
        self._in_flight[task.id] = task
        return True

    async def claim(self) -> Task | None:
        """Claim the head of the queue.

        Runs the idle sweep first, then asks the ticket store to move the
        head ticket to in-progress. If the store write fails the task stays
        at the head and None is returned, so the next call simply retries.
        """
        await self.sweep_idle()

        if not self._queue:
            return None

        head = self._queue[0]
        try:
            claimed = await self.store.claim(head.id)
        except TicketStoreError as e:
            logger.warning("Claim of %s failed, will retry: %s", head.id, e.message)
            return None

        if claimed is None:
            await self._reconcile_lost_claim(head)
            return None

        # The head may have been cancelled while the claim was in flight
        if not self._queue or self._queue[0] is not head:
            logger.info("Task %s left the queue during claim", head.id)
            return None

        self._queue.popleft()
        head.status = QueueStatus.PICKED
        head.last_picked_at = self._clock()
        self._in_flight[head.id] = head
        self.last_picked_title = head.title
        logger.info("Claimed task %s: %s", head.id, head.title)
        self._publish(EventType.TASK_CLAIMED, head)
        return head

    async def _reconcile_lost_claim(self, head: Task) -> None:
        """Drop the head only if the store says it is no longer open."""
        try:
            ticket = await self.store.get(head.id)
        except TicketStoreError as e:
            logger.warning("Could not re-read ticket %s after lost claim: %s", head.id, e.message)
            return

        if ticket is None or ticket.status != TicketStatus.OPEN:
            if self._queue and self._queue[0] is head:
                self._queue.popleft()
                logger.info("Task %s was claimed elsewhere, dropped from queue", head.id)
                self._publish(EventType.TASK_CANCELLED, head)

    async def sweep_idle(self) -> list[Task]:
        """Block and escalate every task idle beyond the timeout.

        Idempotent: a task is blocked and escalated at most once.

        Returns:
            The tasks newly blocked by this sweep.
        """
        now = self._clock()
        newly_blocked: list[Task] = []

        for task in [*self._queue, *self._in_flight.values()]:
            if task.last_picked_at is None or task.id in self._escalated:
                continue
            if now - task.last_picked_at <= self.idle_timeout:
                continue

            self._escalated.add(task.id)
            self._remove(task.id)
            task.status = QueueStatus.BLOCKED
            task.blocked_at = now
            self._blocked[task.id] = task
            newly_blocked.append(task)

        for task in newly_blocked:
            idle = int(now - (task.last_picked_at or now))
            logger.warning("Task %s idle for %ss, marking blocked", task.id, idle)
            await self._escalate(task, idle)
            self._publish(EventType.TASK_BLOCKED, task, idle_seconds=idle)

        return newly_blocked

    async def _escalate(self, task: Task, idle: int) -> None:
        try:
            ticket = await self.store.create(
                TicketCreate(
                    title=f"P1 BLOCKED: {task.title}",
                    description=f"Task idle for {idle}s (timeout: {int(self.idle_timeout)}s)",
                    priority=self.escalation_priority,
                    status=TicketStatus.ESCALATED,
                    task_id=task.id,
                )
            )
        except TicketStoreError as e:
            logger.error("Failed to create escalation ticket for %s: %s", task.id, e.message)
            return
        logger.info("Escalation ticket %s created for task %s", ticket.id, task.id)

    def refresh(self, open_tickets: Iterable[Ticket]) -> None:
        """Reconcile the queue with the store's open tickets.

        Queued tasks whose tickets are no longer open are dropped; open
        tickets not tracked anywhere are appended at the tail.
        """
        tickets = list(open_tickets)
        open_ids = {t.id for t in tickets}

        before = len(self._queue)
        self._queue = deque(t for t in self._queue if t.id in open_ids)
        dropped = before - len(self._queue)

        added = 0
        for ticket in tickets:
            if not self.is_tracked(ticket.id):
                self._queue.append(Task.from_ticket(ticket))
                added += 1

        if dropped or added:
            logger.debug("Queue refreshed: %d dropped, %d added", dropped, added)
        self._publish_raw(
            EventType.QUEUE_REFRESHED,
            {"dropped": dropped, "added": added, "queue_count": len(self._queue)},
        )

    def touch(self, task_id: str) -> bool:
        """Record activity on an in-flight task, restarting its idle clock."""
        task = self._in_flight.get(task_id)
        if task is None:
            return False
        task.last_picked_at = self._clock()
        return True

    def complete(self, task_id: str) -> Task | None:
        """Remove a finished task, including one the idle sweep blocked."""
        task = self._in_flight.pop(task_id, None) or self._blocked.pop(task_id, None)
        if task is None:
            return None
        self._escalated.discard(task_id)
        self._publish(EventType.TASK_COMPLETED, task)
        return task

    def cancel(self, task_id: str) -> Task | None:
        """Remove a task from wherever it is tracked, out of FIFO order."""
        task = self._remove(task_id)
        if task is None:
            return None
        self._escalated.discard(task_id)
        self._publish(EventType.TASK_CANCELLED, task)
        return task

    def unblock(self, task_id: str) -> bool:
        """Move a blocked task back to the tail of the queue."""
        task = self._blocked.pop(task_id, None)
        if task is None:
            return False
        self._escalated.discard(task_id)
        task.status = QueueStatus.PENDING
        task.last_picked_at = None
        task.blocked_at = None
        self._queue.append(task)
        self._publish(EventType.TASK_ENQUEUED, task)
        return True

    def _remove(self, task_id: str) -> Task | None:
        for task in self._queue:
            if task.id == task_id:
                self._queue.remove(task)
                return task
        return self._in_flight.pop(task_id, None) or self._blocked.pop(task_id, None)

    # --- Snapshots ---

    def snapshot(self) -> tuple[Task, ...]:
        return tuple(self._queue)

    def in_flight(self) -> tuple[Task, ...]:
        return tuple(self._in_flight.values())

    def blocked(self) -> tuple[Task, ...]:
        return tuple(self._blocked.values())

    def stats(self) -> dict[str, Any]:
        return {
            "queue_count": len(self._queue),
            "in_flight_count": len(self._in_flight),
            "blocked_count": len(self._blocked),
            "last_picked_title": self.last_picked_title,
        }

    # --- Events ---

    def _publish(self, event_type: EventType, task: Task, **extra: Any) -> None:
        self._publish_raw(event_type, {**task.to_dict(), **extra})

    def _publish_raw(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.events is not None:
            self.events.publish_nowait(QUEUE_CHANNEL, Event(event_type=event_type, data=data))
