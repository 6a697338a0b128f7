"""
Checkpoint Manager: the undo-log subsystem's public surface.

Provides functionality to:
- Begin checkpoints and log row pre-images while they are active
- Commit checkpoints (kept as restorable history)
- Roll back an active checkpoint in one transaction
- Restore the store to the state before any historical checkpoint
- Query active checkpoints and history, purge history without undoing it

Mutating multi-step operations (rollback, restore, delete) each run in exactly
one database transaction: any failure aborts it and leaves checkpoint status,
undo log and data as they were, so the call can be retried.
"""

import logging
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import Select, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from casebuilder.config import Settings, settings as default_settings
from casebuilder.errors import CheckpointNotFoundError, InvalidCheckpointStateError
from casebuilder.models.checkpoint import (
    CHECKPOINT_SOURCES,
    DEFAULT_DESCRIPTION,
    Checkpoint,
    utcnow,
)
from casebuilder.models.database import Database, with_retry
from casebuilder.models.tables import TableCatalog, to_json_image
from casebuilder.models.undo_log import UNDO_OPERATIONS, RowImage, RowKey, UndoLogEntry
from casebuilder.services.undo import UndoApplier

logger = logging.getLogger(__name__)


def _as_uuid(checkpoint_id: str | UUID) -> UUID:
    """Parse a checkpoint id; malformed ids cannot match any checkpoint."""
    if isinstance(checkpoint_id, UUID):
        return checkpoint_id
    try:
        return UUID(str(checkpoint_id))
    except ValueError:
        raise CheckpointNotFoundError(checkpoint_id) from None


class CheckpointManager:
    """
    Orchestrates checkpoints over a shared Database.

    One instance can serve any number of objects with concurrently active
    checkpoints; it keeps no per-checkpoint state in memory.
    """

    def __init__(
        self,
        database: Database,
        config: Optional[Settings] = None,
        applier: Optional[UndoApplier] = None,
    ) -> None:
        self.database = database
        self.settings = config or default_settings
        self.applier = applier or UndoApplier(TableCatalog(self.settings.UNDO_IDENTITY_COLUMNS))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def begin_checkpoint(
        self,
        objectid: int,
        description: Optional[str] = None,
        user_command: Optional[str] = None,
        source: str = "LLM",
        applicationid: Optional[int] = None,
    ) -> str:
        """
        Start a new active checkpoint.

        Args:
            objectid: Owning object (case) id
            description: What the grouped changes are about
            user_command: Free-text command that triggered the changes
            source: Where the changes come from (LLM, MCP or API)
            applicationid: Optional wider application scope

        Returns:
            The new checkpoint id
        """
        if source not in CHECKPOINT_SOURCES:
            raise ValueError(f"Unknown checkpoint source: {source}")

        checkpoint = Checkpoint(
            id=uuid4(),
            objectid=objectid,
            applicationid=applicationid,
            description=description or DEFAULT_DESCRIPTION,
            user_command=user_command,
            status="active",
            source=source,
            tools_executed=[],
            changes_count=0,
            created_at=utcnow(),
        )
        async with self.database.transaction() as session:
            session.add(checkpoint)

        logger.info(
            "[Checkpoint] Began %s for object %s (application %s, source %s): %s",
            checkpoint.id,
            objectid,
            applicationid,
            source,
            checkpoint.description,
        )
        return str(checkpoint.id)

    async def log_operation(
        self,
        checkpoint_id: str | UUID,
        objectid: int,
        operation: str,
        table_name: str,
        primary_key: RowKey,
        previous_data: Optional[RowImage] = None,
        db_session: Optional[AsyncSession] = None,
    ) -> str:
        """
        Append the pre-image of one mutation to a checkpoint's undo log.

        Call this BEFORE (or in the same transaction as) the mutation. For
        inserts previous_data must be None; updates and deletes need the full
        row as it was.

        Args:
            checkpoint_id: Active checkpoint the mutation belongs to
            objectid: Object the mutated row belongs to
            operation: insert, update or delete
            table_name: Table being modified
            primary_key: Column -> value map identifying the row
            previous_data: The row before the mutation (None for inserts)
            db_session: Optional existing session; the entry then commits
                with the caller's transaction

        Returns:
            The undo log entry id

        Raises:
            CheckpointNotFoundError: unknown checkpoint
            InvalidCheckpointStateError: the checkpoint is no longer active
        """
        if operation not in UNDO_OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        if not primary_key:
            raise ValueError("primary_key must identify at least one column")
        if operation == "insert" and previous_data is not None:
            raise ValueError("insert operations carry no previous data")
        if operation in ("update", "delete") and previous_data is None:
            raise ValueError(f"{operation} operations require previous data")

        checkpoint_uuid = _as_uuid(checkpoint_id)

        async def _do_log(session: AsyncSession) -> UndoLogEntry:
            checkpoint = await self._get_checkpoint(session, checkpoint_uuid, lock=True)
            if not checkpoint.is_active:
                raise InvalidCheckpointStateError(checkpoint_uuid, checkpoint.status, "log an operation into")

            # The row lock above serializes appends, so max(seq) + 1 is safe
            result = await session.execute(
                select(func.coalesce(func.max(UndoLogEntry.seq), 0))
                .where(UndoLogEntry.checkpoint_id == checkpoint_uuid)
            )
            next_seq: int = result.scalar_one() + 1

            entry = UndoLogEntry(
                id=uuid4(),
                checkpoint_id=checkpoint_uuid,
                objectid=objectid,
                seq=next_seq,
                operation=operation,
                table_name=table_name,
                primary_key=to_json_image(primary_key),
                previous_data=to_json_image(previous_data) if previous_data is not None else None,
                created_at=utcnow(),
            )
            session.add(entry)
            await session.flush()

            logger.debug(
                f"[Checkpoint] Logged {operation} on {table_name}:{entry.primary_key} "
                f"seq={next_seq} checkpoint={checkpoint_uuid}"
            )
            return entry

        if db_session is not None:
            entry = await _do_log(db_session)
        else:
            async with self.database.transaction() as session:
                entry = await _do_log(session)
        return str(entry.id)

    async def record_tool_execution(self, checkpoint_id: str | UUID, tool_name: str) -> None:
        """Append a tool name to the checkpoint's audit trail. Never affects undo."""
        checkpoint_uuid = _as_uuid(checkpoint_id)
        async with self.database.transaction() as session:
            checkpoint = await self._get_checkpoint(session, checkpoint_uuid, lock=True)
            # Assign a new list so the JSON column is flagged as changed
            checkpoint.tools_executed = [*(checkpoint.tools_executed or []), tool_name]

        logger.debug("[Checkpoint] Recorded tool %s on %s", tool_name, checkpoint_uuid)

    async def commit_checkpoint(self, checkpoint_id: str | UUID) -> int:
        """
        Mark a checkpoint historical, keeping its undo log for later restores.

        Committing an already historical checkpoint is a no-op.

        Returns:
            The number of logged changes

        Raises:
            CheckpointNotFoundError: unknown checkpoint
            InvalidCheckpointStateError: the checkpoint was rolled back
        """
        checkpoint_uuid = _as_uuid(checkpoint_id)
        async with self.database.transaction() as session:
            checkpoint = await self._get_checkpoint(session, checkpoint_uuid, lock=True)

            if checkpoint.is_historical:
                logger.warning(f"[Checkpoint] {checkpoint_uuid} is already committed")
                return checkpoint.changes_count
            if not checkpoint.is_active:
                raise InvalidCheckpointStateError(checkpoint_uuid, checkpoint.status, "commit")

            result = await session.execute(
                select(func.count())
                .select_from(UndoLogEntry)
                .where(UndoLogEntry.checkpoint_id == checkpoint_uuid)
            )
            changes_count: int = result.scalar_one()

            checkpoint.status = "historical"
            checkpoint.finished_at = utcnow()
            checkpoint.changes_count = changes_count

        logger.info(f"[Checkpoint] Committed {checkpoint_uuid} with {changes_count} changes")
        return changes_count

    async def rollback_checkpoint(self, checkpoint_id: str | UUID) -> int:
        """
        Undo every operation logged under an active checkpoint, newest first.

        Runs in one transaction: the undo statements, the status change and
        the log cleanup commit together or not at all. Rolling back an
        already rolled back checkpoint is a no-op.

        Returns:
            Number of operations undone

        Raises:
            CheckpointNotFoundError: unknown checkpoint
            InvalidCheckpointStateError: the checkpoint is historical (use restore)
            UndoApplicationError: an undo statement failed; nothing was changed
        """
        checkpoint_uuid = _as_uuid(checkpoint_id)
        logger.info(f"[Checkpoint] Rolling back {checkpoint_uuid}")

        try:
            async with self.database.undo_transaction() as session:
                checkpoint = await self._get_checkpoint(session, checkpoint_uuid, lock=True)

                if checkpoint.is_rolled_back:
                    logger.warning(f"[Checkpoint] {checkpoint_uuid} is already rolled back")
                    return 0
                if not checkpoint.is_active:
                    raise InvalidCheckpointStateError(checkpoint_uuid, checkpoint.status, "roll back")

                undone = await self._undo_checkpoint(session, checkpoint)
        except Exception as e:
            logger.error(f"[Checkpoint] Rollback of {checkpoint_uuid} failed: {e}")
            raise

        logger.info(f"[Checkpoint] Rolled back {checkpoint_uuid}, undid {undone} operations")
        return undone

    async def restore_to_checkpoint(
        self,
        checkpoint_id: str | UUID,
        scoped: bool = False,
    ) -> dict[str, Any]:
        """
        Return the store to its state immediately before a historical checkpoint.

        Undoes the target and every later historical checkpoint, newest first,
        all in one transaction. With ``scoped=True`` only checkpoints of the
        target's application (or its object when it has none) are undone;
        later checkpoints elsewhere then keep pre-images of the restored rows.

        Returns:
            Dict with the target id, restored checkpoint ids (newest first)
            and the number of operations undone

        Raises:
            CheckpointNotFoundError: unknown checkpoint
            InvalidCheckpointStateError: the target is not historical
            UndoApplicationError: an undo statement failed; nothing was changed
        """
        checkpoint_uuid = _as_uuid(checkpoint_id)
        logger.info(f"[Checkpoint] Restoring to before {checkpoint_uuid}")

        restored: list[str] = []
        operations_undone = 0
        try:
            async with self.database.undo_transaction() as session:
                target = await self._get_checkpoint(session, checkpoint_uuid, lock=True)
                if not target.is_historical:
                    raise InvalidCheckpointStateError(checkpoint_uuid, target.status, "restore to")

                query = select(Checkpoint).where(
                    Checkpoint.status == "historical",
                    Checkpoint.created_at >= target.created_at,
                )
                if scoped:
                    query = self._scoped(query, target)
                result = await session.execute(
                    query.order_by(Checkpoint.created_at.desc()).with_for_update()
                )
                checkpoints = list(result.scalars().all())

                await self._warn_about_active(session, target, scoped)

                for checkpoint in checkpoints:
                    operations_undone += await self._undo_checkpoint(session, checkpoint)
                    restored.append(str(checkpoint.id))
        except Exception as e:
            logger.error(f"[Checkpoint] Restore to {checkpoint_uuid} failed: {e}")
            raise

        logger.info(
            f"[Checkpoint] Restored to before {checkpoint_uuid} by undoing "
            f"{len(restored)} checkpoints ({operations_undone} operations)"
        )
        return {
            "checkpoint_id": str(checkpoint_uuid),
            "restored_checkpoints": restored,
            "operations_undone": operations_undone,
        }

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_active_checkpoints(
        self,
        objectid: Optional[int] = None,
        applicationid: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Active (in-flight or orphaned) checkpoints, newest first."""
        return await self._list_checkpoints(
            Checkpoint.status == "active",
            objectid=objectid,
            applicationid=applicationid,
            limit=self.settings.ACTIVE_CHECKPOINTS_LIMIT,
        )

    async def get_checkpoint_history(
        self,
        objectid: Optional[int] = None,
        applicationid: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Committed and rolled back checkpoints, newest first."""
        return await self._list_checkpoints(
            Checkpoint.status != "active",
            objectid=objectid,
            applicationid=applicationid,
            limit=self.settings.CHECKPOINT_HISTORY_LIMIT,
        )

    async def get_checkpoint(self, checkpoint_id: str | UUID) -> dict[str, Any]:
        """Get one checkpoint."""
        checkpoint_uuid = _as_uuid(checkpoint_id)

        async def _query() -> dict[str, Any]:
            async with self.database.session() as session:
                checkpoint = await self._get_checkpoint(session, checkpoint_uuid)
                return checkpoint.to_dict()

        return await self._retry(_query)

    async def get_checkpoint_changes(self, checkpoint_id: str | UUID) -> list[dict[str, Any]]:
        """
        Get the operations still logged under a checkpoint, newest first.

        Rolled back checkpoints have no remaining entries.
        """
        checkpoint_uuid = _as_uuid(checkpoint_id)

        async def _query() -> list[dict[str, Any]]:
            async with self.database.session() as session:
                await self._get_checkpoint(session, checkpoint_uuid)
                result = await session.execute(
                    select(UndoLogEntry)
                    .where(UndoLogEntry.checkpoint_id == checkpoint_uuid)
                    .order_by(UndoLogEntry.seq.desc())
                )
                return [entry.to_dict() for entry in result.scalars().all()]

        return await self._retry(_query)

    # =========================================================================
    # History purge
    # =========================================================================

    async def delete_checkpoint(self, checkpoint_id: str | UUID) -> None:
        """Delete a checkpoint and its undo log without undoing anything."""
        checkpoint_uuid = _as_uuid(checkpoint_id)
        try:
            async with self.database.transaction() as session:
                entries = await session.execute(
                    delete(UndoLogEntry)
                    .where(UndoLogEntry.checkpoint_id == checkpoint_uuid)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(
                    delete(Checkpoint)
                    .where(Checkpoint.id == checkpoint_uuid)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise CheckpointNotFoundError(checkpoint_uuid)
        except Exception as e:
            logger.error(f"[Checkpoint] Deleting {checkpoint_uuid} failed: {e}")
            raise

        logger.info(f"[Checkpoint] Deleted {checkpoint_uuid} and {entries.rowcount} undo log entries")

    async def delete_all_checkpoints(
        self,
        objectid: Optional[int] = None,
        applicationid: Optional[int] = None,
    ) -> dict[str, int]:
        """
        Delete every checkpoint in scope, with its undo log, without undoing anything.

        With no filter, all checkpoints are deleted.

        Returns:
            Dict with deleted checkpoint and undo log entry counts
        """
        filters = []
        if objectid is not None:
            filters.append(Checkpoint.objectid == objectid)
        if applicationid is not None:
            filters.append(Checkpoint.applicationid == applicationid)

        entry_stmt = delete(UndoLogEntry)
        checkpoint_stmt = delete(Checkpoint)
        if filters:
            entry_stmt = entry_stmt.where(
                UndoLogEntry.checkpoint_id.in_(select(Checkpoint.id).where(*filters))
            )
            checkpoint_stmt = checkpoint_stmt.where(*filters)

        try:
            async with self.database.transaction() as session:
                entries = await session.execute(
                    entry_stmt.execution_options(synchronize_session=False)
                )
                checkpoints = await session.execute(
                    checkpoint_stmt.execution_options(synchronize_session=False)
                )
        except Exception as e:
            logger.error(f"[Checkpoint] Bulk delete failed: {e}")
            raise

        scope = (
            f"application {applicationid}" if applicationid is not None
            else f"object {objectid}" if objectid is not None
            else "all objects"
        )
        logger.info(
            f"[Checkpoint] Deleted {checkpoints.rowcount} checkpoints and "
            f"{entries.rowcount} undo log entries for {scope}"
        )
        return {"checkpoints": checkpoints.rowcount, "undo_log_entries": entries.rowcount}

    # =========================================================================
    # Private helpers
    # =========================================================================

    async def _get_checkpoint(
        self,
        session: AsyncSession,
        checkpoint_uuid: UUID,
        lock: bool = False,
    ) -> Checkpoint:
        """Load a checkpoint, optionally locking its row for the transaction."""
        checkpoint = await session.get(Checkpoint, checkpoint_uuid, with_for_update=lock or None)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_uuid)
        return checkpoint

    async def _undo_checkpoint(self, session: AsyncSession, checkpoint: Checkpoint) -> int:
        """Replay one checkpoint's log newest-first, mark it rolled back, drop the log."""
        result = await session.execute(
            select(UndoLogEntry)
            .where(UndoLogEntry.checkpoint_id == checkpoint.id)
            .order_by(UndoLogEntry.seq.desc())
        )
        entries = list(result.scalars().all())
        logger.debug(f"[Checkpoint] Found {len(entries)} operations to undo for {checkpoint.id}")

        for entry in entries:
            await self.applier.apply(session, entry)

        checkpoint.status = "rolled_back"
        checkpoint.finished_at = utcnow()

        await session.execute(
            delete(UndoLogEntry)
            .where(UndoLogEntry.checkpoint_id == checkpoint.id)
            .execution_options(synchronize_session=False)
        )
        return len(entries)

    async def _warn_about_active(self, session: AsyncSession, target: Checkpoint, scoped: bool) -> None:
        """Active checkpoints newer than a restore target are left alone; say so."""
        query = (
            select(func.count())
            .select_from(Checkpoint)
            .where(
                Checkpoint.status == "active",
                Checkpoint.created_at >= target.created_at,
            )
        )
        if scoped:
            query = self._scoped(query, target)
        result = await session.execute(query)
        active_count: int = result.scalar_one()
        if active_count:
            logger.warning(
                f"[Checkpoint] {active_count} active checkpoints newer than {target.id} "
                f"are not part of the restore"
            )

    @staticmethod
    def _scoped(query: Select[Any], target: Checkpoint) -> Select[Any]:
        if target.applicationid is not None:
            return query.where(Checkpoint.applicationid == target.applicationid)
        return query.where(Checkpoint.objectid == target.objectid)

    async def _list_checkpoints(
        self,
        *conditions: Any,
        objectid: Optional[int],
        applicationid: Optional[int],
        limit: int,
    ) -> list[dict[str, Any]]:
        query = select(Checkpoint).where(*conditions)
        if objectid is not None:
            query = query.where(Checkpoint.objectid == objectid)
        if applicationid is not None:
            query = query.where(Checkpoint.applicationid == applicationid)
        query = query.order_by(Checkpoint.created_at.desc()).limit(limit)

        async def _query() -> list[dict[str, Any]]:
            async with self.database.session() as session:
                result = await session.execute(query)
                return [checkpoint.to_dict() for checkpoint in result.scalars().all()]

        return await self._retry(_query)

    async def _retry(self, operation: Any) -> Any:
        return await with_retry(
            operation,
            attempts=self.settings.DB_RETRY_ATTEMPTS,
            delay=self.settings.DB_RETRY_DELAY,
        )
