"""Pytest configuration. Provides a throwaway SQLite store with demo rule-type tables."""
from pathlib import Path
from typing import Awaitable, Callable

import pytest
from sqlalchemy import JSON, Column, DateTime, Integer, MetaData, String, Table

from casebuilder.models.database import Database

# Monitored tables as the rule-type registry would create them
DEMO_METADATA = MetaData()

Table(
    "Cases",
    DEMO_METADATA,
    Column("id", Integer, primary_key=True),
    Column("objectid", Integer, nullable=False),
    Column("name", String(200), nullable=False),
    Column("status", String(50), nullable=True),
)

Table(
    "Fields",
    DEMO_METADATA,
    Column("id", Integer, primary_key=True),
    Column("objectid", Integer, nullable=False),
    Column("name", String(200), nullable=False),
    Column("label", String(200), nullable=True),
    Column("type", String(50), nullable=True),
    Column("created_at", DateTime, nullable=True),
)

Table(
    "Views",
    DEMO_METADATA,
    Column("id", Integer, primary_key=True),
    Column("objectid", Integer, nullable=False),
    Column("name", String(200), nullable=False),
    Column("layout", JSON, nullable=True),
)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'casebuilder.db'}"


@pytest.fixture
def open_database(database_url: str) -> Callable[[], Awaitable[Database]]:
    """
    Factory for a Database with the checkpoint schema and demo tables created.

    Call it inside the test's event loop and use the result as an async
    context manager so the engine is disposed on the same loop.
    """

    async def _open() -> Database:
        database = Database(database_url)
        await database.init_schema()
        async with database.engine.begin() as conn:
            await conn.run_sync(DEMO_METADATA.create_all)
        return database

    return _open
