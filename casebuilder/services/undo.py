"""
Undo operation applier.

Turns one undo log entry into the inverse statement against the monitored
table, inside the caller's transaction:

- insert: DELETE the row matching primary_key
- update: UPDATE the row matching primary_key back to previous_data
  (primary-key columns are never rewritten)
- delete: INSERT previous_data again, leaving out columns the store generates,
  so the restored row may receive a new surrogate id

Entries of one checkpoint must be applied newest-first: a later entry may have
operated on a row an earlier entry created.
"""

import logging
from typing import Any, Mapping

from sqlalchemy import Table, delete, insert, update
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from casebuilder.errors import UndoApplicationError
from casebuilder.models.database import is_connection_error
from casebuilder.models.tables import TableCatalog
from casebuilder.models.undo_log import UNDO_OPERATIONS, UndoLogEntry

logger = logging.getLogger(__name__)


class UndoApplier:
    """Applies the inverse of logged operations using reflected table metadata."""

    def __init__(self, catalog: TableCatalog | None = None) -> None:
        self.catalog = catalog or TableCatalog()

    async def apply(self, session: AsyncSession, entry: UndoLogEntry) -> int:
        """
        Reverse one logged operation.

        Args:
            session: Session of the enclosing rollback/restore transaction
            entry: The undo log entry to reverse

        Returns:
            Number of rows the inverse statement affected

        Raises:
            UndoApplicationError: the entry cannot be reversed or the statement failed.
                The caller's transaction must be aborted.
        """
        operation = entry.operation
        if operation not in UNDO_OPERATIONS:
            raise self._error(entry, f"Unknown operation: {operation}")
        if operation in ("update", "delete") and entry.previous_data is None:
            raise self._error(entry, f"Cannot undo {operation}: no previous data stored")
        if operation in ("insert", "update") and not entry.primary_key:
            raise self._error(entry, f"Cannot undo {operation}: no primary key stored")

        logger.debug(
            "[Undo] Undoing %s on %s: %s",
            operation,
            entry.table_name,
            entry.primary_key,
        )

        try:
            table = await self.catalog.get(session, entry.table_name)
        except NoSuchTableError as e:
            raise self._error(entry, f"Unknown table: {entry.table_name}") from e

        try:
            if entry.is_insert:
                return await self._undo_insert(session, table, entry)
            if entry.is_update:
                return await self._undo_update(session, table, entry)
            return await self._undo_delete(session, table, entry)
        except SQLAlchemyError as e:
            if is_connection_error(e):
                raise
            raise self._error(
                entry,
                f"Failed to undo {operation} on {entry.table_name}: {e}",
            ) from e

    async def _undo_insert(self, session: AsyncSession, table: Table, entry: UndoLogEntry) -> int:
        # Undo insert by deleting the record
        result = await session.execute(
            delete(table).where(self._key_clause(table, entry))
        )
        if result.rowcount == 0:
            logger.warning(
                "[Undo] Inserted row %s:%s was already gone",
                entry.table_name,
                entry.primary_key,
            )
        return result.rowcount

    async def _undo_update(self, session: AsyncSession, table: Table, entry: UndoLogEntry) -> int:
        # Restore previous values; key columns are immutable under undo
        key_columns = set(entry.primary_key) | set(self.catalog.primary_key_columns(table))
        values = self.catalog.coerce_row(table, entry.previous_data or {}, skip=key_columns)
        if not values:
            logger.debug(
                "[Undo] Nothing to restore for %s:%s",
                entry.table_name,
                entry.primary_key,
            )
            return 0

        result = await session.execute(
            update(table).where(self._key_clause(table, entry)).values(values)
        )
        if result.rowcount == 0:
            logger.warning(
                "[Undo] Updated row %s:%s no longer exists",
                entry.table_name,
                entry.primary_key,
            )
        return result.rowcount

    async def _undo_delete(self, session: AsyncSession, table: Table, entry: UndoLogEntry) -> int:
        # Re-insert without generated key columns so the store assigns fresh ones
        identity = self.catalog.identity_columns(table)
        values = self.catalog.coerce_row(table, entry.previous_data or {}, skip=identity)
        if not values:
            raise self._error(entry, "Cannot undo delete: previous data has no insertable columns")

        await session.execute(insert(table).values(values))
        if identity & set(entry.previous_data or {}):
            logger.info(
                "[Undo] Re-inserted %s:%s with regenerated %s",
                entry.table_name,
                entry.primary_key,
                ", ".join(sorted(identity)),
            )
        return 1

    def _key_clause(self, table: Table, entry: UndoLogEntry) -> ColumnElement[bool]:
        try:
            return self.catalog.key_clause(table, entry.primary_key or {})
        except ValueError as e:
            raise self._error(entry, str(e)) from e

    @staticmethod
    def _error(entry: UndoLogEntry, message: str) -> UndoApplicationError:
        primary_key: Mapping[str, Any] | None = entry.primary_key
        return UndoApplicationError(
            message,
            table_name=entry.table_name,
            operation=entry.operation,
            primary_key=dict(primary_key) if primary_key else None,
        )
