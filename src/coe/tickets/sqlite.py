"""SQLite-backed ticket store using aiosqlite."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiosqlite

from .models import (
    UPDATABLE_FIELDS,
    ThreadMessage,
    Ticket,
    TicketCreate,
    TicketStatus,
    utcnow_iso,
)
from .store import ChangeListener, ListenerRegistry, TicketStoreError

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_COLUMNS = (
    "id, title, status, type, priority, description, creator, assignee, "
    "task_id, resolution, version, created_at, updated_at"
)


class SqliteTicketStore:
    """Ticket store persisted in a single SQLite file.

    Claims are a single conditional UPDATE, so concurrent dispatchers
    sharing the file can never both win the same ticket.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        self._listeners = ListenerRegistry()

    async def open(self) -> None:
        """Open the connection and run the schema."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA_PATH.read_text())
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteTicketStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise TicketStoreError("Ticket store is not open")
        return self._db

    # --- Reads ---

    async def list(self, status: TicketStatus | None = None) -> list[Ticket]:
        try:
            if status is None:
                cursor = await self.db.execute(
                    f"SELECT {_COLUMNS} FROM tickets ORDER BY created_at, rowid"
                )
            else:
                cursor = await self.db.execute(
                    f"SELECT {_COLUMNS} FROM tickets WHERE status = ? ORDER BY created_at, rowid",
                    (str(status),),
                )
            rows = await cursor.fetchall()
            return [await self._hydrate(row) for row in rows]
        except aiosqlite.Error as e:
            raise TicketStoreError("Failed to list tickets", detail=str(e)) from e

    async def get(self, ticket_id: str) -> Ticket | None:
        try:
            cursor = await self.db.execute(
                f"SELECT {_COLUMNS} FROM tickets WHERE id = ?", (ticket_id,)
            )
            row = await cursor.fetchone()
            return await self._hydrate(row) if row else None
        except aiosqlite.Error as e:
            raise TicketStoreError(f"Failed to read ticket {ticket_id}", detail=str(e)) from e

    async def _hydrate(self, row: aiosqlite.Row) -> Ticket:
        cursor = await self.db.execute(
            "SELECT role, content, created_at FROM ticket_messages WHERE ticket_id = ? ORDER BY id",
            (row["id"],),
        )
        thread = [ThreadMessage(**dict(m)) for m in await cursor.fetchall()]
        return Ticket(**dict(row), thread=thread)

    # --- Writes ---

    async def create(self, data: TicketCreate) -> Ticket:
        ticket_id = secrets.token_hex(8)
        now = utcnow_iso()
        try:
            await self.db.execute(
                """INSERT INTO tickets (id, title, status, type, priority, description,
                   creator, assignee, task_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    ticket_id,
                    data.title,
                    str(data.status),
                    str(data.type),
                    data.priority,
                    data.description,
                    data.creator,
                    data.assignee,
                    data.task_id,
                    now,
                    now,
                ),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise TicketStoreError("Failed to create ticket", detail=str(e)) from e

        return await self._changed(ticket_id)

    async def update(self, ticket_id: str, **fields: Any) -> Ticket | None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update ticket fields: {sorted(unknown)}")

        thread = fields.pop("thread", None)
        sets = [f"{key} = ?" for key in fields]
        values: list[Any] = [str(v) if isinstance(v, str) else v for v in fields.values()]
        sets += ["version = version + 1", "updated_at = ?"]
        values += [utcnow_iso(), ticket_id]

        try:
            cursor = await self.db.execute(
                f"UPDATE tickets SET {', '.join(sets)} WHERE id = ?",
                values,
            )
            if cursor.rowcount == 0:
                await self.db.rollback()
                return None
            if thread is not None:
                await self._replace_thread(ticket_id, thread)
            await self.db.commit()
        except aiosqlite.Error as e:
            raise TicketStoreError(f"Failed to update ticket {ticket_id}", detail=str(e)) from e

        return await self._changed(ticket_id)

    async def _replace_thread(self, ticket_id: str, thread: list[ThreadMessage]) -> None:
        await self.db.execute("DELETE FROM ticket_messages WHERE ticket_id = ?", (ticket_id,))
        await self.db.executemany(
            "INSERT INTO ticket_messages (ticket_id, role, content, created_at) VALUES (?, ?, ?, ?)",
            [(ticket_id, m.role, m.content, m.created_at) for m in thread],
        )

    async def claim(
        self,
        ticket_id: str,
        expected_status: TicketStatus = TicketStatus.OPEN,
    ) -> Ticket | None:
        """Atomically claim a ticket. Returns None if someone else got it first."""
        try:
            cursor = await self.db.execute(
                """UPDATE tickets SET status = 'in-progress',
                   version = version + 1, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (utcnow_iso(), ticket_id, str(expected_status)),
            )
            if cursor.rowcount == 0:
                await self.db.rollback()
                return None
            await self.db.commit()
        except aiosqlite.Error as e:
            raise TicketStoreError(f"Failed to claim ticket {ticket_id}", detail=str(e)) from e

        return await self._changed(ticket_id)

    async def append_message(self, ticket_id: str, role: str, content: str) -> Ticket | None:
        message = ThreadMessage(role=role, content=content)
        try:
            cursor = await self.db.execute(
                "UPDATE tickets SET version = version + 1, updated_at = ? WHERE id = ?",
                (message.created_at, ticket_id),
            )
            if cursor.rowcount == 0:
                await self.db.rollback()
                return None
            await self.db.execute(
                "INSERT INTO ticket_messages (ticket_id, role, content, created_at) VALUES (?, ?, ?, ?)",
                (ticket_id, message.role, message.content, message.created_at),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise TicketStoreError(f"Failed to append to ticket {ticket_id}", detail=str(e)) from e

        return await self._changed(ticket_id)

    async def _changed(self, ticket_id: str) -> Ticket:
        ticket = await self.get(ticket_id)
        if ticket is None:
            raise TicketStoreError(f"Ticket {ticket_id} vanished after write")
        self._listeners.notify(ticket)
        return ticket

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        return self._listeners.add(listener)
