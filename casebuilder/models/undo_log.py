"""
UndoLogEntry model: the pre-image of one row-level mutation.

- insert: previous_data is null; undo deletes the row by primary_key
- update: previous_data holds the old row; undo writes it back
- delete: previous_data holds the old row; undo re-inserts it

Entries of one checkpoint are ordered by ``seq`` and replayed newest-first.
"""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from casebuilder.config import to_iso8601
from casebuilder.models.checkpoint import utcnow
from casebuilder.models.database import Base, JSONType

# Operation type
UndoOperation = Literal["insert", "update", "delete"]

UNDO_OPERATIONS: tuple[str, ...] = ("insert", "update", "delete")

# Display labels used by history views
OPERATION_LABELS: dict[str, str] = {
    "insert": "Create",
    "update": "Update",
    "delete": "Delete",
}

# Column name -> JSON-safe value. Identifies a row (RowKey) or holds its
# full pre-image (RowImage).
RowKey = dict[str, Any]
RowImage = dict[str, Any]


class UndoLogEntry(Base):
    """Stores what a row looked like before a mutation made under a checkpoint."""

    __tablename__ = "undo_log"
    __table_args__ = (
        UniqueConstraint("checkpoint_id", "seq", name="uq_undo_log_checkpoint_seq"),
        CheckConstraint(
            "operation IN ('insert', 'update', 'delete')",
            name="ck_undo_log_operation",
        ),
        Index("ix_undo_log_objectid", "objectid"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    checkpoint_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("checkpoints.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    objectid: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Position within the checkpoint, 1-based
    seq: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    operation: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )

    table_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    primary_key: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
    )

    previous_data: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    # Schema column only; entries are deleted when applied, so it stays NULL
    applied_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<UndoLogEntry {self.table_name}:{self.primary_key} op={self.operation} seq={self.seq}>"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        result: dict[str, Any] = {
            "id": str(self.id),
            "checkpoint_id": str(self.checkpoint_id),
            "objectid": self.objectid,
            "seq": self.seq,
            "operation": self.operation,
            "label": OPERATION_LABELS.get(self.operation, self.operation),
            "table_name": self.table_name,
            "primary_key": self.primary_key,
            "created_at": to_iso8601(self.created_at),
        }
        if self.previous_data is not None:
            result["previous_data"] = self.previous_data
        return result

    @property
    def is_insert(self) -> bool:
        """Check if this is an insert operation."""
        return self.operation == "insert"

    @property
    def is_update(self) -> bool:
        """Check if this is an update operation."""
        return self.operation == "update"

    @property
    def is_delete(self) -> bool:
        """Check if this is a delete operation."""
        return self.operation == "delete"
