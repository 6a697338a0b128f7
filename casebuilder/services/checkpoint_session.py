"""
Checkpoint sessions for tool-driven edits.

A CheckpointSessionManager holds "the current checkpoint" for one caller (an
agent run, an MCP request, an API edit) and captures row pre-images for the
mutations it performs, so the caller only has to open and close the session.

Create one manager per caller; it is not shared between concurrent edits.

Usage:
    sessions = CheckpointSessionManager(manager)
    async with sessions.checkpoint(objectid=5, description="Add fields"):
        await sessions.record_tool_execution("saveFields")
        await sessions.insert_row("Fields", {"name": "Status", "objectid": 5})
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncGenerator, Mapping, Optional

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from casebuilder.models.checkpoint import DEFAULT_DESCRIPTION, utcnow
from casebuilder.models.database import Database
from casebuilder.models.tables import TableCatalog, to_json_image, to_json_value
from casebuilder.models.undo_log import RowImage, RowKey
from casebuilder.services.checkpoints import CheckpointManager

logger = logging.getLogger(__name__)


@dataclass
class CheckpointSession:
    """The checkpoint a caller is currently writing under."""

    id: str
    objectid: int
    description: str
    applicationid: Optional[int] = None
    started_at: datetime = field(default_factory=utcnow)


class CheckpointSessionManager:
    """Opens, closes and captures into one caller's current checkpoint."""

    def __init__(self, manager: CheckpointManager, database: Optional[Database] = None) -> None:
        self.manager = manager
        self.database = database or manager.database
        self.catalog: TableCatalog = manager.applier.catalog
        self._active: Optional[CheckpointSession] = None

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def begin_session(
        self,
        objectid: int,
        description: Optional[str] = None,
        user_command: Optional[str] = None,
        source: str = "LLM",
        applicationid: Optional[int] = None,
    ) -> CheckpointSession:
        """Begin a checkpoint and make it current. An open session is rolled back first."""
        if self._active is not None:
            logger.warning(
                "[CheckpointSession] Starting a new session while %s is active; rolling it back",
                self._active.id,
            )
            await self.rollback_session()

        checkpoint_id = await self.manager.begin_checkpoint(
            objectid,
            description=description,
            user_command=user_command,
            source=source,
            applicationid=applicationid,
        )
        self._active = CheckpointSession(
            id=checkpoint_id,
            objectid=objectid,
            description=description or DEFAULT_DESCRIPTION,
            applicationid=applicationid,
        )
        logger.info("[CheckpointSession] Started session %s", checkpoint_id)
        return self._active

    async def commit_session(self) -> Optional[int]:
        """Commit the current checkpoint. Returns its change count, or None without a session."""
        if self._active is None:
            logger.warning("[CheckpointSession] No active session to commit")
            return None

        session = self._active
        changes_count = await self.manager.commit_checkpoint(session.id)
        self._active = None
        logger.info("[CheckpointSession] Committed session %s", session.id)
        return changes_count

    async def rollback_session(self) -> Optional[int]:
        """Roll back the current checkpoint. Returns operations undone, or None without a session."""
        if self._active is None:
            logger.warning("[CheckpointSession] No active session to roll back")
            return None

        session = self._active
        undone = await self.manager.rollback_checkpoint(session.id)
        self._active = None
        logger.info("[CheckpointSession] Rolled back session %s", session.id)
        return undone

    def get_active_session(self) -> Optional[CheckpointSession]:
        return self._active

    @asynccontextmanager
    async def checkpoint(
        self,
        objectid: int,
        description: Optional[str] = None,
        user_command: Optional[str] = None,
        source: str = "LLM",
        applicationid: Optional[int] = None,
    ) -> AsyncGenerator[CheckpointSession, None]:
        """Run a block under a new checkpoint: commit on success, roll back on error."""
        session = await self.begin_session(
            objectid,
            description=description,
            user_command=user_command,
            source=source,
            applicationid=applicationid,
        )
        try:
            yield session
        except Exception:
            if self._active is session:
                await self.rollback_session()
            raise
        else:
            if self._active is session:
                await self.commit_session()

    # =========================================================================
    # Delegation to the manager
    # =========================================================================

    async def restore_to_checkpoint(self, checkpoint_id: str, scoped: bool = False) -> dict[str, Any]:
        """Restore to before checkpoint_id, rolling back the current session first."""
        if self._active is not None:
            await self.rollback_session()
        return await self.manager.restore_to_checkpoint(checkpoint_id, scoped=scoped)

    async def get_active_checkpoints(
        self,
        objectid: Optional[int] = None,
        applicationid: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        return await self.manager.get_active_checkpoints(objectid, applicationid)

    async def get_checkpoint_history(
        self,
        objectid: Optional[int] = None,
        applicationid: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        return await self.manager.get_checkpoint_history(objectid, applicationid)

    async def delete_checkpoint(self, checkpoint_id: str) -> None:
        await self.manager.delete_checkpoint(checkpoint_id)

    async def delete_all_checkpoints(
        self,
        objectid: Optional[int] = None,
        applicationid: Optional[int] = None,
    ) -> dict[str, int]:
        return await self.manager.delete_all_checkpoints(objectid, applicationid)

    # =========================================================================
    # Capture
    # =========================================================================

    async def record_tool_execution(self, tool_name: str) -> None:
        """Record a tool name on the current checkpoint, if any."""
        if self._active is None:
            logger.debug("[CheckpointSession] No active session, not recording tool %s", tool_name)
            return
        await self.manager.record_tool_execution(self._active.id, tool_name)

    async def capture_operation(
        self,
        operation: str,
        table_name: str,
        primary_key: RowKey,
        previous_data: Optional[RowImage] = None,
        db_session: Optional[AsyncSession] = None,
    ) -> Optional[str]:
        """
        Log a mutation into the current checkpoint.

        Without an active session nothing is logged and None is returned.
        """
        if self._active is None:
            logger.debug(
                "[CheckpointSession] No active session, skipping capture of %s on %s",
                operation,
                table_name,
            )
            return None

        return await self.manager.log_operation(
            self._active.id,
            self._active.objectid,
            operation,
            table_name,
            primary_key,
            previous_data,
            db_session=db_session,
        )

    async def insert_row(self, table_name: str, values: Mapping[str, Any]) -> RowKey:
        """Insert a row and capture it. Returns the generated primary key."""
        async with self.database.transaction() as session:
            table = await self.catalog.get(session, table_name)
            result = await session.execute(
                insert(table).values(self.catalog.coerce_row(table, values))
            )
            key: RowKey = {
                name: to_json_value(value)
                for name, value in zip(self.catalog.primary_key_columns(table), result.inserted_primary_key)
            }
            await self.capture_operation("insert", table_name, key, db_session=session)

        logger.debug("[CheckpointSession] Inserted %s:%s", table_name, key)
        return key

    async def update_row(
        self,
        table_name: str,
        primary_key: RowKey,
        values: Mapping[str, Any],
    ) -> int:
        """Update a row, capturing its previous state first. Returns rows updated."""
        async with self.database.transaction() as session:
            table = await self.catalog.get(session, table_name)
            previous = await self._select_for_update(session, table, primary_key)
            if previous is None:
                logger.debug("[CheckpointSession] %s:%s not found, nothing to update", table_name, primary_key)
                return 0

            await self.capture_operation("update", table_name, primary_key, previous, db_session=session)
            result = await session.execute(
                update(table)
                .where(self.catalog.key_clause(table, primary_key))
                .values(self.catalog.coerce_row(table, values))
            )
            return result.rowcount

    async def delete_row(self, table_name: str, primary_key: RowKey) -> int:
        """Delete a row, capturing its previous state first. Returns rows deleted."""
        async with self.database.transaction() as session:
            table = await self.catalog.get(session, table_name)
            previous = await self._select_for_update(session, table, primary_key)
            if previous is None:
                logger.debug("[CheckpointSession] %s:%s not found, nothing to delete", table_name, primary_key)
                return 0

            await self.capture_operation("delete", table_name, primary_key, previous, db_session=session)
            result = await session.execute(
                delete(table).where(self.catalog.key_clause(table, primary_key))
            )
            return result.rowcount

    async def _select_for_update(
        self,
        session: AsyncSession,
        table: Table,
        primary_key: RowKey,
    ) -> Optional[RowImage]:
        result = await session.execute(
            select(table).where(self.catalog.key_clause(table, primary_key)).with_for_update()
        )
        row = result.mappings().first()
        return to_json_image(row) if row is not None else None
