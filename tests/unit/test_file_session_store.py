"""
Unit tests for FileSessionStore.

Covers creation, versioned compare-and-swap saves, transactions, listing
and deletion.
"""

import asyncio
import os
import time

import pytest

from cardsmith.core.domain.errors import SessionConflictError, SessionNotFoundError
from cardsmith.core.domain.models import MessageRole, MessageType, SessionRecord, SessionStatus
from cardsmith.core.domain.work_items import WorkItemStore


class TestCreateAndLoad:
    @pytest.mark.asyncio
    async def test_create_assigns_version_one(self, session_store, record):
        created = await session_store.create(record)

        assert created.version == 1
        assert await session_store.exists(record.id)

    @pytest.mark.asyncio
    async def test_load_restores_full_record(self, session_store, record):
        store = WorkItemStore(record)
        goal = store.add_goal("Make Mira", kind="main")
        task = store.add_task("Write", "OUTPUT", parameters={"field": "character"}, priority=7)
        store.update_task(task.id, status="failed", error="bad JSON")
        record.add_message(MessageRole.USER, "cozy", MessageType.USER_INPUT)
        record.output.fields["character"] = {"name": "Mira"}
        await session_store.create(record)

        loaded = await session_store.load(record.id)

        assert loaded.goals[0].id == goal.id
        assert loaded.archived_tasks[0].priority == 7
        assert loaded.failure_history.count("OUTPUT") == 1
        assert loaded.user_messages() == ["cozy"]
        assert loaded.output.fields == {"character": {"name": "Mira"}}

    @pytest.mark.asyncio
    async def test_duplicate_create_conflicts(self, session_store, record):
        await session_store.create(record)

        with pytest.raises(SessionConflictError):
            await session_store.create(record)

    @pytest.mark.asyncio
    async def test_load_missing_raises(self, session_store):
        with pytest.raises(SessionNotFoundError, match="Session not found: nope"):
            await session_store.load("nope")


class TestCompareAndSwap:
    @pytest.mark.asyncio
    async def test_save_bumps_version(self, session_store, record):
        await session_store.create(record)
        record.status = SessionStatus.EXECUTING

        await session_store.save(record)

        loaded = await session_store.load(record.id)
        assert loaded.version == 2
        assert loaded.status == SessionStatus.EXECUTING

    @pytest.mark.asyncio
    async def test_stale_snapshot_is_rejected(self, session_store, record):
        await session_store.create(record)
        first = await session_store.load(record.id)
        second = await session_store.load(record.id)

        first.title = "first writer"
        await session_store.save(first)
        second.title = "second writer"

        with pytest.raises(SessionConflictError) as exc_info:
            await session_store.save(second)

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert (await session_store.load(record.id)).title == "first writer"

    @pytest.mark.asyncio
    async def test_concurrent_saves_only_one_wins(self, session_store, record):
        await session_store.create(record)
        snapshots = [await session_store.load(record.id) for _ in range(5)]

        results = await asyncio.gather(
            *(session_store.save(s) for s in snapshots), return_exceptions=True
        )

        conflicts = [r for r in results if isinstance(r, SessionConflictError)]
        assert len(conflicts) == 4
        assert (await session_store.load(record.id)).version == 2

    @pytest.mark.asyncio
    async def test_save_after_delete_raises_not_found(self, session_store, record):
        await session_store.create(record)
        await session_store.delete(record.id)

        with pytest.raises(SessionNotFoundError):
            await session_store.save(record)


class TestTransaction:
    @pytest.mark.asyncio
    async def test_commits_changes(self, session_store, record):
        await session_store.create(record)

        async with session_store.transaction(record.id) as snapshot:
            snapshot.title = "Renamed"

        loaded = await session_store.load(record.id)
        assert loaded.title == "Renamed"
        assert loaded.version == 2

    @pytest.mark.asyncio
    async def test_error_in_body_writes_nothing(self, session_store, record):
        await session_store.create(record)

        with pytest.raises(RuntimeError):
            async with session_store.transaction(record.id) as snapshot:
                snapshot.title = "Half done"
                raise RuntimeError("abort")

        loaded = await session_store.load(record.id)
        assert loaded.title == record.title
        assert loaded.version == 1


class TestListingAndCleanup:
    @pytest.mark.asyncio
    async def test_list_and_delete(self, session_store):
        a = await session_store.create(SessionRecord(user_request="a"))
        b = await session_store.create(SessionRecord(user_request="b"))

        assert set(await session_store.list_sessions()) == {a.id, b.id}
        assert await session_store.delete(a.id) is True
        assert await session_store.delete(a.id) is False
        assert [r.id for r in await session_store.list_records()] == [b.id]

    @pytest.mark.asyncio
    async def test_cleanup_removes_old_sessions(self, session_store):
        old = await session_store.create(SessionRecord(user_request="old"))
        fresh = await session_store.create(SessionRecord(user_request="fresh"))
        stale = time.time() - 40 * 24 * 60 * 60
        os.utime(session_store.storage_dir / f"{old.id}.json", (stale, stale))

        removed = session_store.cleanup_old_sessions(days=30)

        assert removed == 1
        assert await session_store.list_sessions() == [fresh.id]
