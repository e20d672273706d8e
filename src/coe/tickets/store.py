"""Ticket store interface and in-memory implementation.

The ticket store is the single source of truth for which task belongs to
whom. The orchestrator only ever caches what it reads here, and always
claims through ``claim()`` so two dispatchers cannot take the same ticket.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from typing import Any, Protocol

from .models import (
    UPDATABLE_FIELDS,
    ThreadMessage,
    Ticket,
    TicketCreate,
    TicketStatus,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

ChangeListener = Callable[[Ticket], None]


class TicketStoreError(Exception):
    """Raised when the ticket store cannot complete a read or write."""

    def __init__(self, message: str, detail: str = ""):
        self.message = message
        self.detail = detail
        super().__init__(message)


class TicketStore(Protocol):
    async def list(self, status: TicketStatus | None = None) -> list[Ticket]: ...

    async def get(self, ticket_id: str) -> Ticket | None: ...

    async def create(self, data: TicketCreate) -> Ticket: ...

    async def update(self, ticket_id: str, **fields: Any) -> Ticket | None: ...

    async def claim(
        self,
        ticket_id: str,
        expected_status: TicketStatus = TicketStatus.OPEN,
    ) -> Ticket | None: ...

    async def append_message(self, ticket_id: str, role: str, content: str) -> Ticket | None: ...

    def on_change(self, listener: ChangeListener) -> Callable[[], None]: ...


class ListenerRegistry:
    """Change listeners shared by the store implementations."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def add(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, ticket: Ticket) -> None:
        for listener in list(self._listeners):
            try:
                listener(ticket)
            except Exception:
                logger.exception("Ticket change listener failed for %s", ticket.id)

    def __len__(self) -> int:
        return len(self._listeners)


class InMemoryTicketStore:
    """Dict-backed ticket store for tests and single-process runs."""

    def __init__(self, tickets: list[Ticket] | None = None) -> None:
        self._tickets: dict[str, Ticket] = {t.id: t for t in tickets or []}
        self._listeners = ListenerRegistry()

    async def list(self, status: TicketStatus | None = None) -> list[Ticket]:
        tickets = sorted(self._tickets.values(), key=lambda t: t.created_at)
        if status is not None:
            tickets = [t for t in tickets if t.status == status]
        return [t.model_copy(deep=True) for t in tickets]

    async def get(self, ticket_id: str) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        return ticket.model_copy(deep=True) if ticket else None

    async def create(self, data: TicketCreate) -> Ticket:
        ticket = Ticket(id=secrets.token_hex(8), **data.model_dump())
        self._tickets[ticket.id] = ticket
        self._listeners.notify(ticket.model_copy(deep=True))
        return ticket.model_copy(deep=True)

    async def update(self, ticket_id: str, **fields: Any) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            return None

        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update ticket fields: {sorted(unknown)}")

        changes = dict(fields)
        changes["version"] = ticket.version + 1
        changes["updated_at"] = utcnow_iso()
        updated = ticket.model_copy(update=changes, deep=True)
        self._tickets[ticket_id] = updated
        self._listeners.notify(updated.model_copy(deep=True))
        return updated.model_copy(deep=True)

    async def claim(
        self,
        ticket_id: str,
        expected_status: TicketStatus = TicketStatus.OPEN,
    ) -> Ticket | None:
        """Move a ticket to in-progress only if it still has the expected status."""
        ticket = self._tickets.get(ticket_id)
        if ticket is None or ticket.status != expected_status:
            return None
        return await self.update(ticket_id, status=TicketStatus.IN_PROGRESS)

    async def append_message(self, ticket_id: str, role: str, content: str) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            return None
        thread = [*ticket.thread, ThreadMessage(role=role, content=content)]
        return await self.update(ticket_id, thread=thread)

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        return self._listeners.add(listener)
