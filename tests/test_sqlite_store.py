"""Tests for the SQLite ticket store."""

from __future__ import annotations

import pytest
import pytest_asyncio

from coe.tickets import (
    SqliteTicketStore,
    TicketCreate,
    TicketStatus,
    TicketStoreError,
    TicketType,
)


@pytest_asyncio.fixture
async def db_store(tmp_path):
    """Open a store on a fresh database file."""
    store = SqliteTicketStore(tmp_path / "tickets.db")
    await store.open()
    yield store
    await store.close()


class TestCrud:
    @pytest.mark.asyncio
    async def test_create_and_get(self, db_store):
        created = await db_store.create(
            TicketCreate(title="Fix login", description="500 on submit", priority=1)
        )

        fetched = await db_store.get(created.id)
        assert fetched == created
        assert fetched.status == TicketStatus.OPEN
        assert fetched.type == TicketType.AI_TO_HUMAN
        assert fetched.priority == 1
        assert fetched.version == 1
        assert fetched.creator == "orchestrator"

    @pytest.mark.asyncio
    async def test_get_missing(self, db_store):
        assert await db_store.get("nope") is None

    @pytest.mark.asyncio
    async def test_list_filters_and_keeps_creation_order(self, db_store):
        a = await db_store.create(TicketCreate(title="a"))
        b = await db_store.create(TicketCreate(title="b"))
        await db_store.create(TicketCreate(title="esc", status=TicketStatus.ESCALATED))

        open_tickets = await db_store.list(TicketStatus.OPEN)
        assert [t.id for t in open_tickets] == [a.id, b.id]
        assert len(await db_store.list()) == 3

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, db_store):
        ticket = await db_store.create(TicketCreate(title="a"))

        updated = await db_store.update(ticket.id, status=TicketStatus.DONE, resolution="shipped")

        assert updated.status == TicketStatus.DONE
        assert updated.resolution == "shipped"
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_update_missing_and_unknown_field(self, db_store):
        assert await db_store.update("nope", title="x") is None
        ticket = await db_store.create(TicketCreate(title="a"))
        with pytest.raises(ValueError):
            await db_store.update(ticket.id, version=10)

    @pytest.mark.asyncio
    async def test_append_message_builds_thread(self, db_store):
        ticket = await db_store.create(TicketCreate(title="chat"))

        await db_store.append_message(ticket.id, "user", "hello")
        updated = await db_store.append_message(ticket.id, "assistant", "hi there")

        assert [(m.role, m.content) for m in updated.thread] == [
            ("user", "hello"),
            ("assistant", "hi there"),
        ]
        assert await db_store.append_message("nope", "user", "x") is None


class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_moves_to_in_progress(self, db_store):
        ticket = await db_store.create(TicketCreate(title="a"))

        claimed = await db_store.claim(ticket.id)

        assert claimed.status == TicketStatus.IN_PROGRESS
        assert claimed.version == 2

    @pytest.mark.asyncio
    async def test_second_claim_loses(self, db_store):
        ticket = await db_store.create(TicketCreate(title="a"))
        assert await db_store.claim(ticket.id) is not None
        assert await db_store.claim(ticket.id) is None

    @pytest.mark.asyncio
    async def test_two_stores_on_one_file_cannot_both_claim(self, tmp_path):
        path = tmp_path / "shared.db"
        async with SqliteTicketStore(path) as first, SqliteTicketStore(path) as second:
            ticket = await first.create(TicketCreate(title="contested"))

            assert await second.claim(ticket.id) is not None
            assert await first.claim(ticket.id) is None

            # The losing connection must not keep a write lock
            other = await second.create(TicketCreate(title="next"))
            assert await first.claim(other.id) is not None

    @pytest.mark.asyncio
    async def test_claim_respects_expected_status(self, db_store):
        ticket = await db_store.create(TicketCreate(title="a", status=TicketStatus.PENDING))
        assert await db_store.claim(ticket.id) is None
        claimed = await db_store.claim(ticket.id, expected_status=TicketStatus.PENDING)
        assert claimed.status == TicketStatus.IN_PROGRESS


class TestListeners:
    @pytest.mark.asyncio
    async def test_listener_sees_every_write(self, db_store):
        seen = []
        unsubscribe = db_store.on_change(lambda t: seen.append((t.title, t.status)))

        ticket = await db_store.create(TicketCreate(title="a"))
        await db_store.claim(ticket.id)
        unsubscribe()
        await db_store.update(ticket.id, status=TicketStatus.DONE)

        assert seen == [("a", TicketStatus.OPEN), ("a", TicketStatus.IN_PROGRESS)]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_write(self, db_store):
        def broken(ticket):
            raise RuntimeError("listener bug")

        db_store.on_change(broken)
        ticket = await db_store.create(TicketCreate(title="a"))
        assert ticket.title == "a"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_closed_store_raises(self, tmp_path):
        store = SqliteTicketStore(tmp_path / "t.db")
        with pytest.raises(TicketStoreError):
            await store.list()

    @pytest.mark.asyncio
    async def test_data_persists_across_reopen(self, tmp_path):
        path = tmp_path / "t.db"
        async with SqliteTicketStore(path) as store:
            ticket = await store.create(TicketCreate(title="persisted"))
        async with SqliteTicketStore(path) as store:
            assert (await store.get(ticket.id)).title == "persisted"
