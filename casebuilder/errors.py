"""Exceptions raised by the checkpoint subsystem."""

from typing import Any, Optional


class CheckpointError(RuntimeError):
    """Base class for checkpoint subsystem failures."""


class CheckpointNotFoundError(CheckpointError, LookupError):
    """Raised when a checkpoint id does not match any stored checkpoint."""

    def __init__(self, checkpoint_id: Any) -> None:
        super().__init__(f"Checkpoint not found: {checkpoint_id}")
        self.checkpoint_id = str(checkpoint_id)


class InvalidCheckpointStateError(CheckpointError):
    """Raised when an operation is not allowed in the checkpoint's current status."""

    def __init__(self, checkpoint_id: Any, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} checkpoint {checkpoint_id}: status is {status}")
        self.checkpoint_id = str(checkpoint_id)
        self.status = status
        self.action = action


class UndoApplicationError(CheckpointError):
    """Raised when reversing a logged operation fails."""

    def __init__(
        self,
        message: str,
        table_name: Optional[str] = None,
        operation: Optional[str] = None,
        primary_key: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.table_name = table_name
        self.operation = operation
        self.primary_key = primary_key


class DatabaseConnectionError(CheckpointError):
    """Raised on pool exhaustion, refused or dropped connections and I/O timeouts."""
