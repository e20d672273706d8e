"""Orchestrator - routes tickets to planning, answer and verification workers.

One Orchestrator instance owns the queue, status state machine, timeout
guard, verification governor and answer agent for a ticket store. It has
an explicit lifecycle: ``await start()`` loads tasks and subscribes to
store changes, ``await aclose()`` tears everything down. The caller that
constructs it is responsible for closing it (``async with`` works too).

Every model call goes through the TimeoutGuard. A failed or timed-out call
never raises here; the caller gets FALLBACK_MESSAGE and a ticket is raised
for a human.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from ..agents.answer import AnswerAgent
from ..core.cancel import CancelToken
from ..core.config import Config
from ..events import QUEUE_CHANNEL, Event, EventManager, EventType
from ..llm import ModelClient
from ..tickets import (
    Ticket,
    TicketCreate,
    TicketStatus,
    TicketStore,
    TicketStoreError,
    TicketType,
)
from ..verification.checklist import CheckCategory, Checklist, ChecklistItem
from ..verification.checks import CommandCheck
from ..verification.governance import GovernanceOutcome, VerificationGovernor, Verdict
from .queue import Task, TaskQueue
from .routing import (
    CLASSIFIER_SYSTEM_PROMPT,
    EMPTY_DIFF_MESSAGE,
    EMPTY_QUESTION_MESSAGE,
    FALLBACK_MESSAGE,
    PLANNING_SYSTEM_PROMPT,
    VERIFICATION_SYSTEM_PROMPT,
    RequestKind,
    needs_action,
    parse_classification,
    parse_verdict,
    route_for_ticket,
)
from .status import TERMINAL_STATUSES, StatusStateMachine, TaskStatus, Trigger
from .timeout import GuardResult, TimeoutGuard

logger = logging.getLogger(__name__)

# Checklist item filled from the verification worker's PASS/FAIL verdict
REVIEW_ITEM_ID = "review-verdict"


@dataclass
class VerificationVerdict:
    task_id: str
    passed: bool
    explanation: str
    ticket_id: str | None = None
    degraded: bool = False


class Orchestrator:
    """Top-level facade over queue, status governance and model workers."""

    def __init__(
        self,
        store: TicketStore,
        client: ModelClient,
        config: Config | None = None,
        *,
        events: EventManager | None = None,
        clock: Callable[[], float] = time.monotonic,
        checks_factory: Callable[[str], Sequence[CommandCheck]] | None = None,
    ):
        self.store = store
        self.client = client
        self.config = config or Config()
        self.events = events or EventManager()

        self.state_machine = StatusStateMachine(self.events)
        self.queue = TaskQueue(
            store,
            self.events,
            idle_timeout=self.config.orchestrator.task_timeout_seconds,
            escalation_priority=self.config.orchestrator.escalation_priority,
            clock=clock,
        )
        self.guard = TimeoutGuard(store, self.config.timeout, clock=clock)
        self.governor = VerificationGovernor(
            self.state_machine,
            store,
            self.config.verification,
            checks_factory=checks_factory,
            events=self.events,
        )
        self.answer_agent = AnswerAgent(client, self.guard, self.config.llm)

        self._unsubscribe: Callable[[], None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._store_dirty = asyncio.Event()
        self._running = False
        self._started = False

    # --- Lifecycle ---

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def start(self) -> None:
        """Load tasks from the ticket store and start watching it."""
        if self._started:
            return
        self._started = True

        tickets = await self.store.list()
        for ticket in tickets:
            if ticket.status == TicketStatus.OPEN:
                self.queue.enqueue(Task.from_ticket(ticket))
            elif ticket.status == TicketStatus.IN_PROGRESS:
                # Claimed before a restart; resume tracking as in-flight work
                if self.queue.track_in_flight(Task.from_ticket(ticket)):
                    self.state_machine.initialize(ticket.id)
                    self.state_machine.transition(ticket.id, Trigger.ASSIGNED, {"resumed": True})

        self._unsubscribe = self.store.on_change(self._on_ticket_change)
        self._refresh_task = asyncio.create_task(self._refresh_loop(), name="coe-refresh")
        logger.info(
            "Orchestrator started: %d queued, %d in flight",
            len(self.queue),
            len(self.queue.in_flight()),
        )

    async def aclose(self) -> None:
        """Stop watching the store and cancel outstanding work.

        Injected collaborators (store, client) are left open for their owner.
        """
        self._running = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None

        cancelled = self.guard.cancel_all()
        self.governor.timer.cancel_all()
        self._started = False
        logger.info("Orchestrator closed (%d model calls cancelled)", cancelled)

    def _on_ticket_change(self, ticket: Ticket) -> None:
        # Runs inside the store write; only flag the change and let the
        # refresh loop reconcile on its own task.
        self._store_dirty.set()
        self.events.publish_nowait(
            QUEUE_CHANNEL,
            Event(
                event_type=EventType.TICKET_CHANGED,
                data={"id": ticket.id, "status": str(ticket.status)},
            ),
        )

    async def _refresh_loop(self) -> None:
        while True:
            await self._store_dirty.wait()
            self._store_dirty.clear()
            try:
                await self.refresh()
            except TicketStoreError as e:
                logger.warning("Queue refresh failed: %s", e.message)
            except Exception:
                logger.exception("Unexpected error in refresh loop")

    async def refresh(self) -> None:
        """Reconcile the queue with the store's open tickets."""
        open_tickets = await self.store.list(TicketStatus.OPEN)
        self.queue.refresh(open_tickets)

    # --- Dispatch ---

    async def get_next_task(self) -> Task | None:
        """Claim the next task and move it to in-progress."""
        task = await self.queue.claim()
        if task is None:
            return None
        self._start_work(task.id)
        return task

    def _start_work(self, task_id: str) -> TaskStatus | None:
        status = self.state_machine.get_status(task_id)
        if status is None or status in TERMINAL_STATUSES:
            # New, or a closed ticket that was re-opened
            self.state_machine.initialize(task_id)
        elif status == TaskStatus.FAILED:
            self.state_machine.transition(task_id, Trigger.RETRY_REQUESTED)
            self.state_machine.transition(task_id, Trigger.NO_DEPENDENCIES)
        elif status == TaskStatus.PENDING:
            self.state_machine.transition(task_id, Trigger.NO_DEPENDENCIES)
        elif status == TaskStatus.BLOCKED:
            self.state_machine.transition(task_id, Trigger.DEPENDENCIES_RESOLVED)
        elif status == TaskStatus.NEEDS_REVISION:
            return self.state_machine.transition(task_id, Trigger.REVISION_STARTED)
        return self.state_machine.transition(task_id, Trigger.ASSIGNED)

    async def report_task_done(
        self,
        task_id: str,
        diff: str,
        custom_items: Iterable[ChecklistItem] = (),
    ) -> GovernanceOutcome:
        """Coding finished: verify the diff and apply the governance verdict."""
        if self.state_machine.transition(task_id, Trigger.CODING_COMPLETE) is None:
            return GovernanceOutcome(
                task_id,
                Verdict.SKIPPED,
                self.state_machine.get_status(task_id),
                message="Task is not in progress",
            )
        self.queue.touch(task_id)

        verdict = await self.route_to_verification(task_id, diff)

        def prefill(checklist: Checklist) -> None:
            checklist.add_item(
                ChecklistItem(
                    REVIEW_ITEM_ID,
                    CheckCategory.REVIEW,
                    "Verification agent approves the change",
                    required=True,
                )
            )
            if verdict.passed:
                checklist.mark_passed(REVIEW_ITEM_ID, verdict.explanation)
            else:
                checklist.mark_failed(REVIEW_ITEM_ID, verdict.explanation)

        outcome = await self.governor.verify(task_id, custom_items, prefill=prefill)
        self.queue.touch(task_id)

        if outcome.verdict in (Verdict.PASSED, Verdict.FAILED):
            self.queue.complete(task_id)
            final = TicketStatus.DONE if outcome.verdict == Verdict.PASSED else TicketStatus.BLOCKED
            await self._update_ticket(task_id, status=final, resolution=outcome.message)
        return outcome

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a task everywhere: status, queue, model calls and waits.

        A task the state machine will not cancel (in verification, or
        already finished) is left untouched.
        """
        current = self.state_machine.get_status(task_id)
        status = None
        if current is not None:
            status = self.state_machine.transition(task_id, Trigger.CANCEL)
            if status is None:
                logger.warning("Task %s is %s and cannot be cancelled", task_id, current)
                return False
        removed = self.queue.cancel(task_id)
        calls = self.guard.cancel_matching(f"{task_id}:")
        self.governor.timer.cancel(task_id)
        if status is not None or removed is not None:
            await self._update_ticket(task_id, status=TicketStatus.REMOVED)
        logger.info("Cancelled task %s (%d model calls stopped)", task_id, calls)
        return status is not None or removed is not None or calls > 0

    # --- Workers ---

    async def _call_model(
        self,
        kind: RequestKind | str,
        request_id: str,
        prompt: str,
        *,
        system_prompt: str,
        context: dict[str, Any] | None = None,
        temperature: float | None = None,
    ) -> GuardResult:
        async def operation(token: CancelToken):
            return await self.client.complete(
                prompt,
                system_prompt=system_prompt,
                temperature=temperature,
                token=token,
            )

        result = await self.guard.with_timeout(
            request_id,
            operation,
            {"question": prompt[:500], "kind": str(kind), **(context or {})},
        )
        if not result.success and not result.cancelled and result.ticket_id is None:
            await self._create_ticket(
                f"LLM UNAVAILABLE: {kind} request ({request_id})",
                f"{result.error}\n\nRequest:\n{prompt[:2000]}",
                task_id=(context or {}).get("task_id"),
                status=TicketStatus.ESCALATED,
            )
        return result

    async def route_to_planning(self, request: str, *, task_id: str | None = None) -> str:
        """Ask the planning worker to break a request into steps."""
        request_id = f"{task_id or 'plan'}:planning:{secrets.token_hex(4)}"
        result = await self._call_model(
            RequestKind.PLANNING,
            request_id,
            request,
            system_prompt=PLANNING_SYSTEM_PROMPT,
            context={"task_id": task_id} if task_id else None,
        )
        return result.content if result.success else FALLBACK_MESSAGE

    async def route_to_answer(self, question: str, *, chat_id: str | None = None) -> str:
        """Ask the answer worker, keeping per-chat history."""
        request_id = f"{chat_id or 'answer'}:answer:{secrets.token_hex(4)}"
        result = await self.answer_agent.ask(question, chat_id=chat_id, request_id=request_id)
        if result.success:
            return result.content
        if not result.cancelled and result.ticket_id is None:
            await self._create_ticket(
                f"LLM UNAVAILABLE: answer request ({request_id})",
                f"{result.error}\n\nQuestion:\n{question[:2000]}",
                status=TicketStatus.ESCALATED,
            )
        return FALLBACK_MESSAGE

    async def route_to_verification(self, task_id: str, diff: str) -> VerificationVerdict:
        """Ask the verification worker for a PASS/FAIL verdict on a diff."""
        if not diff or not diff.strip():
            ticket_id = await self._create_ticket(
                f"VERIFICATION FAILED: {task_id}",
                EMPTY_DIFF_MESSAGE,
                task_id=task_id,
                priority=1,
                status=TicketStatus.ESCALATED,
            )
            return VerificationVerdict(task_id, False, EMPTY_DIFF_MESSAGE, ticket_id)

        ticket = await self._get_ticket(task_id)
        criteria = ticket.description if ticket else ""
        title = ticket.title if ticket else task_id
        prompt = f"Task: {title}\n\nSuccess criteria:\n{criteria or '(none given)'}\n\nDiff:\n{diff}"

        result = await self._call_model(
            RequestKind.VERIFICATION,
            f"{task_id}:verify:{secrets.token_hex(4)}",
            prompt,
            system_prompt=VERIFICATION_SYSTEM_PROMPT,
            context={"task_id": task_id},
        )
        if not result.success:
            return VerificationVerdict(task_id, False, FALLBACK_MESSAGE, result.ticket_id, True)

        passed, explanation = parse_verdict(result.content)
        ticket_id = None
        if not passed:
            ticket_id = await self._create_ticket(
                f"VERIFICATION FAILED: {task_id}",
                explanation,
                task_id=task_id,
                priority=1,
                status=TicketStatus.ESCALATED,
            )
        return VerificationVerdict(task_id, passed, explanation, ticket_id)

    async def classify_request(self, text: str) -> RequestKind:
        result = await self._call_model(
            "classify",
            f"classify:{secrets.token_hex(4)}",
            text,
            system_prompt=CLASSIFIER_SYSTEM_PROMPT,
            temperature=0.0,
        )
        if not result.success:
            return RequestKind.ANSWER
        return parse_classification(result.content)

    async def answer_question(self, question: str, *, chat_id: str | None = None) -> str:
        """Answer a developer question, raising a ticket if it calls for work."""
        if not question or not question.strip():
            return EMPTY_QUESTION_MESSAGE

        answer = await self.route_to_answer(question, chat_id=chat_id)
        if answer != FALLBACK_MESSAGE and needs_action(answer):
            await self._create_ticket(
                f"ANSWER NEEDS ACTION: {question[:60]}",
                f"Question:\n{question}\n\nAnswer:\n{answer}",
                type=TicketType.ANSWER_AGENT,
            )
        return answer

    async def process_conversation_ticket(self, ticket: Ticket) -> str:
        """Route a conversation ticket to a worker and reply on its thread."""
        user_messages = [m.content for m in ticket.thread if m.role == "user"]
        text = user_messages[-1] if user_messages else (ticket.description or ticket.title)

        kind = route_for_ticket(ticket) or await self.classify_request(text)
        logger.info("Ticket %s routed to %s", ticket.id, kind)

        if kind == RequestKind.PLANNING:
            reply = await self.route_to_planning(text, task_id=ticket.id)
        elif kind == RequestKind.VERIFICATION:
            verdict = await self.route_to_verification(ticket.task_id or ticket.id, text)
            reply = f"{'PASS' if verdict.passed else 'FAIL'}: {verdict.explanation}"
        else:
            reply = await self.route_to_answer(text, chat_id=ticket.id)

        try:
            await self.store.append_message(ticket.id, "assistant", reply)
        except TicketStoreError as e:
            logger.warning("Could not reply on ticket %s: %s", ticket.id, e.message)
        return reply

    # --- Dispatch loop ---

    async def run(self, poll_interval: float = 5.0) -> None:
        """Claim tasks and send each to the planning worker until stop() is called."""
        self._running = True
        while self._running:
            try:
                task = await self.get_next_task()
                if task is not None:
                    ticket = await self._get_ticket(task.id)
                    request = f"{task.title}\n\n{ticket.description}" if ticket else task.title
                    plan = await self.route_to_planning(request, task_id=task.id)
                    self.queue.touch(task.id)
                    await self.store.append_message(task.id, "assistant", plan)
                    continue
            except TicketStoreError as e:
                logger.warning("Dispatch failed: %s", e.message)
            except Exception:
                logger.exception("Unexpected error in dispatch loop")

            await asyncio.sleep(poll_interval)

    def stop(self) -> None:
        self._running = False

    # --- Status ---

    def get_queue_status(self) -> dict[str, Any]:
        stats = self.queue.stats()
        return {
            "queue_count": stats["queue_count"],
            "blocked_p1_count": stats["blocked_count"],
            "last_picked_title": stats["last_picked_title"],
        }

    def get_status_summary(self) -> dict[TaskStatus, int]:
        return self.state_machine.get_summary()

    # --- Ticket helpers ---

    async def _get_ticket(self, ticket_id: str) -> Ticket | None:
        try:
            return await self.store.get(ticket_id)
        except TicketStoreError as e:
            logger.warning("Could not read ticket %s: %s", ticket_id, e.message)
            return None

    async def _update_ticket(self, ticket_id: str, **fields: Any) -> None:
        try:
            await self.store.update(ticket_id, **fields)
        except TicketStoreError as e:
            logger.warning("Could not update ticket %s: %s", ticket_id, e.message)

    async def _create_ticket(
        self,
        title: str,
        description: str,
        *,
        task_id: str | None = None,
        priority: int | None = None,
        type: TicketType = TicketType.AI_TO_HUMAN,
        status: TicketStatus = TicketStatus.OPEN,
    ) -> str | None:
        try:
            ticket = await self.store.create(
                TicketCreate(
                    title=title,
                    description=description,
                    priority=priority or self.config.orchestrator.escalation_priority,
                    type=type,
                    status=status,
                    task_id=task_id,
                )
            )
        except TicketStoreError as e:
            logger.error("Could not create ticket %r: %s", title, e.message)
            return None
        self.events.publish_nowait(
            QUEUE_CHANNEL,
            Event(
                event_type=EventType.ESCALATION_CREATED,
                data={"ticket_id": ticket.id, "title": title, "task_id": task_id},
            ),
        )
        return ticket.id
