"""
Runtime access to the monitored tables.

The checkpoint core does not own the schema of the tables it reverts: the
rule-type registry creates them. Tables are reflected on first use and cached
per catalog, which also tells us which key columns the store generates.
"""

import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional
from uuid import UUID

from sqlalchemy import MetaData, Table, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from casebuilder.models.undo_log import RowImage

logger = logging.getLogger(__name__)


def _reflect(sync_session: Session, table_name: str) -> Table:
    return Table(table_name, MetaData(), autoload_with=sync_session.connection())


def to_json_value(value: Any) -> Any:
    """Convert one column value into something the JSON columns can store."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def to_json_image(row: Mapping[str, Any]) -> RowImage:
    """Serialize a row mapping into a JSON-safe pre-image, keeping column order."""
    return {str(key): to_json_value(value) for key, value in row.items()}


def coerce_value(column: Any, value: Any) -> Any:
    """
    Turn a JSON pre-image value back into the column's Python type.

    Only strings are converted (datetime/date/time/UUID/Decimal); values that
    do not parse are passed through and left for the store to judge.
    """
    if not isinstance(value, str):
        return value
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value

    try:
        if python_type is datetime:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is not None and not getattr(column.type, "timezone", False):
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
        if python_type is date:
            return date.fromisoformat(value)
        if python_type is time:
            return time.fromisoformat(value)
        if python_type is UUID:
            return UUID(value)
        if python_type is Decimal:
            return Decimal(value)
    except (ValueError, ArithmeticError):
        logger.debug("[Tables] Leaving %s=%r uncoerced", column.name, value)
    return value


class TableCatalog:
    """Reflects and caches monitored tables; knows their generated key columns."""

    def __init__(self, identity_overrides: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._tables: dict[str, Table] = {}
        self._identity_overrides: dict[str, set[str]] = {
            name: set(columns) for name, columns in (identity_overrides or {}).items()
        }

    async def get(self, session: AsyncSession, table_name: str) -> Table:
        """Return the reflected table, reflecting it inside the caller's session."""
        table = self._tables.get(table_name)
        if table is None:
            table = await session.run_sync(_reflect, table_name)
            self._tables[table_name] = table
            logger.debug("[Tables] Reflected %s (%d columns)", table_name, len(table.columns))
        return table

    def invalidate(self, table_name: Optional[str] = None) -> None:
        """Forget cached reflections, e.g. after the rule-type registry migrates a table."""
        if table_name is None:
            self._tables.clear()
        else:
            self._tables.pop(table_name, None)

    def identity_columns(self, table: Table) -> set[str]:
        """Key columns the store generates, which must not be written on reinsert."""
        columns: set[str] = set(self._identity_overrides.get(table.name, ()))
        autoincrement = table.autoincrement_column
        if autoincrement is not None:
            columns.add(autoincrement.name)
        for column in table.primary_key.columns:
            if column.server_default is not None or column.identity is not None:
                columns.add(column.name)
        return columns

    def primary_key_columns(self, table: Table) -> list[str]:
        return [column.name for column in table.primary_key.columns]

    def coerce_row(self, table: Table, data: Mapping[str, Any], skip: Iterable[str] = ()) -> dict[str, Any]:
        """
        Map a JSON row image onto the table's columns.

        Keys in ``skip`` and keys that are no longer columns of the table are
        dropped; the rest are coerced to the column types.
        """
        skipped = set(skip)
        values: dict[str, Any] = {}
        for key, value in data.items():
            if key in skipped:
                continue
            column = table.columns.get(key)
            if column is None:
                logger.warning("[Tables] %s has no column %s, dropping it", table.name, key)
                continue
            values[key] = coerce_value(column, value)
        return values

    def key_clause(self, table: Table, key: Mapping[str, Any]) -> ColumnElement[bool]:
        """
        Equality on every column of ``key``.

        Raises:
            ValueError: the key is empty or names a column the table lacks
        """
        if not key:
            raise ValueError(f"Empty key for {table.name}")
        conditions: list[ColumnElement[bool]] = []
        for name, value in key.items():
            column = table.columns.get(name)
            if column is None:
                raise ValueError(f"{table.name} has no key column {name}")
            conditions.append(column == coerce_value(column, value))
        return and_(*conditions)
