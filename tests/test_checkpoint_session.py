import asyncio
from typing import Any

import pytest
from sqlalchemy import text

from casebuilder.models.database import Database
from casebuilder.services.checkpoint_session import CheckpointSessionManager
from casebuilder.services.checkpoints import CheckpointManager


async def _fields(database: Database) -> list[dict[str, Any]]:
    async with database.session() as session:
        result = await session.execute(text('SELECT id, name, label FROM "Fields" ORDER BY id'))
        return [dict(row) for row in result.mappings().all()]


def test_checkpoint_block_commits_captured_changes(open_database) -> None:
    async def scenario() -> tuple[dict[str, Any], list[dict[str, Any]], list[dict[str, Any]], bool]:
        async with await open_database() as database:
            sessions = CheckpointSessionManager(CheckpointManager(database))

            async with sessions.checkpoint(objectid=5, description="Add status field") as session:
                await sessions.record_tool_execution("saveFields")
                key = await sessions.insert_row("Fields", {"objectid": 5, "name": "status", "label": "Status"})
                await sessions.update_row("Fields", key, {"label": "State"})

            history = await sessions.get_checkpoint_history(objectid=5)
            changes = await sessions.manager.get_checkpoint_changes(session.id)
            return history[0], changes, await _fields(database), sessions.get_active_session() is None

    checkpoint, changes, rows, closed = asyncio.run(scenario())

    assert checkpoint["status"] == "historical"
    assert checkpoint["changes_count"] == 2
    assert checkpoint["tools_executed"] == ["saveFields"]
    assert [change["operation"] for change in changes] == ["update", "insert"]
    assert changes[0]["previous_data"]["label"] == "Status"
    assert rows == [{"id": 1, "name": "status", "label": "State"}]
    assert closed


def test_checkpoint_block_rolls_back_on_error(open_database) -> None:
    async def scenario() -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        async with await open_database() as database:
            sessions = CheckpointSessionManager(CheckpointManager(database))

            with pytest.raises(RuntimeError, match="tool failed"):
                async with sessions.checkpoint(objectid=5):
                    await sessions.insert_row("Fields", {"objectid": 5, "name": "status"})
                    raise RuntimeError("tool failed")

            history = await sessions.get_checkpoint_history(objectid=5)
            return history, await _fields(database)

    history, rows = asyncio.run(scenario())

    assert [checkpoint["status"] for checkpoint in history] == ["rolled_back"]
    assert rows == []


def test_rollback_session_restores_deleted_row(open_database) -> None:
    async def scenario() -> tuple[int, int, list[dict[str, Any]]]:
        async with await open_database() as database:
            async with database.transaction() as session:
                await session.execute(
                    text('INSERT INTO "Fields" (id, objectid, name, label) VALUES (4, 5, \'priority\', \'Priority\')')
                )
            sessions = CheckpointSessionManager(CheckpointManager(database))

            await sessions.begin_session(5, source="API")
            deleted = await sessions.delete_row("Fields", {"id": 4})
            undone = await sessions.rollback_session()
            return deleted, undone, await _fields(database)

    deleted, undone, rows = asyncio.run(scenario())

    assert deleted == 1
    assert undone == 1
    assert [(row["name"], row["label"]) for row in rows] == [("priority", "Priority")]


def test_missing_rows_are_not_captured(open_database) -> None:
    async def scenario() -> tuple[int, int, int]:
        async with await open_database() as database:
            sessions = CheckpointSessionManager(CheckpointManager(database))
            await sessions.begin_session(5)
            updated = await sessions.update_row("Fields", {"id": 99}, {"label": "x"})
            deleted = await sessions.delete_row("Fields", {"id": 99})
            return updated, deleted, await sessions.commit_session()

    assert asyncio.run(scenario()) == (0, 0, 0)


def test_without_session_mutations_are_not_captured(open_database) -> None:
    async def scenario() -> tuple[Any, Any, Any, list[dict[str, Any]], list[dict[str, Any]]]:
        async with await open_database() as database:
            sessions = CheckpointSessionManager(CheckpointManager(database))

            captured = await sessions.capture_operation("insert", "Fields", {"id": 1})
            await sessions.record_tool_execution("saveFields")
            await sessions.insert_row("Fields", {"objectid": 5, "name": "status"})
            committed = await sessions.commit_session()
            rolled_back = await sessions.rollback_session()

            async with database.session() as session:
                result = await session.execute(text("SELECT id FROM undo_log"))
                entries = [dict(row) for row in result.mappings().all()]
            return captured, committed, rolled_back, entries, await _fields(database)

    captured, committed, rolled_back, entries, rows = asyncio.run(scenario())

    assert captured is None
    assert committed is None
    assert rolled_back is None
    assert entries == []
    assert len(rows) == 1


def test_begin_session_rolls_back_open_session(open_database) -> None:
    async def scenario() -> tuple[str, str, list[dict[str, Any]], list[dict[str, Any]]]:
        async with await open_database() as database:
            sessions = CheckpointSessionManager(CheckpointManager(database))

            first = await sessions.begin_session(5, description="abandoned")
            await sessions.insert_row("Fields", {"objectid": 5, "name": "draft"})
            second = await sessions.begin_session(5, description="current")

            active = await sessions.get_active_checkpoints(objectid=5)
            history = await sessions.get_checkpoint_history(objectid=5)
            assert sessions.get_active_session() is second
            return first.id, second.id, active, history

    first_id, second_id, active, history = asyncio.run(scenario())

    assert [checkpoint["id"] for checkpoint in active] == [second_id]
    assert [(checkpoint["id"], checkpoint["status"]) for checkpoint in history] == [(first_id, "rolled_back")]


def test_restore_through_sessions_rolls_back_current_session_first(open_database) -> None:
    async def scenario() -> tuple[dict[str, Any], list[dict[str, Any]], dict[str, int]]:
        async with await open_database() as database:
            sessions = CheckpointSessionManager(CheckpointManager(database))

            async with sessions.checkpoint(objectid=5) as committed:
                await sessions.insert_row("Fields", {"objectid": 5, "name": "status"})

            await sessions.begin_session(5)
            await sessions.insert_row("Fields", {"objectid": 5, "name": "draft"})

            result = await sessions.restore_to_checkpoint(committed.id)
            rows = await _fields(database)
            counts = await sessions.delete_all_checkpoints(objectid=5)
            return result, rows, counts

    result, rows, counts = asyncio.run(scenario())

    assert result["operations_undone"] == 1
    assert rows == []
    assert counts == {"checkpoints": 2, "undo_log_entries": 0}
