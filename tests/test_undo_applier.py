import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, Numeric, String, Table, Uuid, inspect, text

from casebuilder.errors import UndoApplicationError
from casebuilder.models.checkpoint import Checkpoint
from casebuilder.models.tables import TableCatalog, coerce_value, to_json_image
from casebuilder.models.undo_log import UndoLogEntry
from casebuilder.services.checkpoints import CheckpointManager
from casebuilder.services.undo import UndoApplier


def _entry(
    operation: str,
    primary_key: Optional[dict[str, Any]],
    previous_data: Optional[dict[str, Any]] = None,
    table_name: str = "Fields",
) -> UndoLogEntry:
    return UndoLogEntry(
        id=uuid4(),
        checkpoint_id=uuid4(),
        objectid=5,
        seq=1,
        operation=operation,
        table_name=table_name,
        primary_key=primary_key,
        previous_data=previous_data,
    )


def test_unknown_operation_is_rejected_before_touching_the_store() -> None:
    applier = UndoApplier()

    with pytest.raises(UndoApplicationError) as exc_info:
        asyncio.run(applier.apply(None, _entry("upsert", {"id": 1})))

    assert "Unknown operation" in str(exc_info.value)
    assert exc_info.value.operation == "upsert"
    assert exc_info.value.primary_key == {"id": 1}


@pytest.mark.parametrize("operation", ["update", "delete"])
def test_missing_previous_data_is_rejected(operation: str) -> None:
    with pytest.raises(UndoApplicationError) as exc_info:
        asyncio.run(UndoApplier().apply(None, _entry(operation, {"id": 1})))

    assert "no previous data" in str(exc_info.value)
    assert exc_info.value.table_name == "Fields"


def test_missing_primary_key_is_rejected_for_insert() -> None:
    with pytest.raises(UndoApplicationError):
        asyncio.run(UndoApplier().apply(None, _entry("insert", {})))


def test_identity_columns_cover_autoincrement_server_default_and_overrides() -> None:
    metadata = MetaData()
    cases = Table(
        "Cases",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("status", String(50)),
    )
    tokens = Table(
        "Tokens",
        metadata,
        Column("id", Uuid, primary_key=True, server_default=text("gen_random_uuid()")),
        Column("name", String(50)),
    )
    links = Table(
        "Links",
        metadata,
        Column("case_id", Integer, primary_key=True),
        Column("field_id", Integer, primary_key=True),
    )

    catalog = TableCatalog({"Cases": ["status"]})

    assert catalog.identity_columns(cases) == {"id", "status"}
    assert catalog.identity_columns(tokens) == {"id"}
    assert catalog.identity_columns(links) == set()
    assert catalog.primary_key_columns(links) == ["case_id", "field_id"]


def test_coerce_row_drops_skipped_and_unknown_columns() -> None:
    table = Table(
        "Fields",
        MetaData(),
        Column("id", Integer, primary_key=True),
        Column("label", String(50)),
        Column("created_at", DateTime),
        Column("weight", Numeric(10, 2)),
        Column("token", Uuid),
    )
    token = uuid4()

    values = TableCatalog().coerce_row(
        table,
        {
            "id": 4,
            "label": "Status",
            "created_at": "2024-01-02T03:04:05Z",
            "weight": "1.50",
            "token": str(token),
            "removed": "gone",
        },
        skip={"id"},
    )

    assert values == {
        "label": "Status",
        "created_at": datetime(2024, 1, 2, 3, 4, 5),
        "weight": Decimal("1.50"),
        "token": token,
    }


def test_coerce_value_leaves_unparseable_strings_alone() -> None:
    column = Column("created_at", DateTime)

    assert coerce_value(column, "yesterday") == "yesterday"
    assert coerce_value(column, None) is None


def test_to_json_image_serializes_store_types() -> None:
    token = UUID("12345678-1234-5678-1234-567812345678")

    image = to_json_image(
        {
            "id": 1,
            "token": token,
            "created_at": datetime(2024, 1, 2, 3, 4, 5),
            "weight": Decimal("2.50"),
            "blob": b"\x01\xff",
        }
    )

    assert image == {
        "id": 1,
        "token": "12345678-1234-5678-1234-567812345678",
        "created_at": "2024-01-02T03:04:05",
        "weight": "2.50",
        "blob": "01ff",
    }


def test_key_clause_rejects_empty_and_unknown_keys() -> None:
    table = Table("Fields", MetaData(), Column("id", Integer, primary_key=True))
    catalog = TableCatalog()

    with pytest.raises(ValueError):
        catalog.key_clause(table, {})
    with pytest.raises(ValueError):
        catalog.key_clause(table, {"uuid": "abc"})


def test_undo_delete_reinserts_row_with_regenerated_id(open_database) -> None:
    async def scenario() -> list[dict[str, Any]]:
        async with await open_database() as database:
            async with database.transaction() as session:
                await session.execute(
                    text(
                        'INSERT INTO "Fields" (id, objectid, name, label, created_at) VALUES '
                        "(3, 5, 'priority', 'Priority', '2024-01-02 03:04:05.000000'), "
                        "(10, 5, 'status', 'Status', NULL)"
                    )
                )

            manager = CheckpointManager(database)
            checkpoint_id = await manager.begin_checkpoint(5)
            await manager.log_operation(
                checkpoint_id,
                5,
                "delete",
                "Fields",
                {"id": 3},
                {
                    "id": 3,
                    "objectid": 5,
                    "name": "priority",
                    "label": "Priority",
                    "type": None,
                    "created_at": "2024-01-02T03:04:05",
                },
            )
            async with database.transaction() as session:
                await session.execute(text('DELETE FROM "Fields" WHERE id = 3'))

            await manager.rollback_checkpoint(checkpoint_id)

            async with database.session() as session:
                result = await session.execute(
                    text('SELECT id, name, label, created_at FROM "Fields" WHERE name = \'priority\'')
                )
                return [dict(row) for row in result.mappings().all()]

    rows = asyncio.run(scenario())

    assert len(rows) == 1
    assert rows[0]["id"] == 11
    assert rows[0]["label"] == "Priority"
    assert str(rows[0]["created_at"]).startswith("2024-01-02 03:04:05")


def test_undo_update_never_rewrites_primary_key(open_database) -> None:
    async def scenario() -> list[dict[str, Any]]:
        async with await open_database() as database:
            async with database.transaction() as session:
                await session.execute(
                    text('INSERT INTO "Fields" (id, objectid, name, label) VALUES (9, 5, \'status\', \'New\')')
                )

            manager = CheckpointManager(database)
            checkpoint_id = await manager.begin_checkpoint(5)
            await manager.log_operation(
                checkpoint_id, 5, "update", "Fields", {"id": 9}, {"id": 42, "label": "Old"}
            )
            await manager.rollback_checkpoint(checkpoint_id)

            async with database.session() as session:
                result = await session.execute(text('SELECT id, label FROM "Fields"'))
                return [dict(row) for row in result.mappings().all()]

    assert asyncio.run(scenario()) == [{"id": 9, "label": "Old"}]


def test_apply_reports_affected_rows_and_unknown_tables(open_database) -> None:
    async def scenario() -> tuple[int, int]:
        async with await open_database() as database:
            applier = UndoApplier()
            async with database.transaction() as session:
                key_only = await applier.apply(session, _entry("update", {"id": 9}, {"id": 9}))
                already_gone = await applier.apply(session, _entry("insert", {"id": 9}))

            async with database.transaction() as session:
                with pytest.raises(UndoApplicationError) as exc_info:
                    await applier.apply(session, _entry("insert", {"id": 1}, table_name="Layouts"))
            assert "Unknown table" in str(exc_info.value)

            async with database.transaction() as session:
                with pytest.raises(UndoApplicationError):
                    await applier.apply(session, _entry("insert", {"uuid": "x"}))

            return key_only, already_gone

    assert asyncio.run(scenario()) == (0, 0)


def test_log_entries_are_plain_rows_without_orm_cascades() -> None:
    # Entries are reached through queries and removed with bulk deletes only
    assert list(inspect(Checkpoint).relationships) == []
    assert list(inspect(UndoLogEntry).relationships) == []

    entry = _entry("insert", {"id": 1})
    assert entry.applied_at is None
    assert "applied_at" not in entry.to_dict()
