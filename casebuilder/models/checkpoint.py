"""
Checkpoint model: one logical, revertible transaction.

A checkpoint groups the row-level mutations made while it is active. Its
undo log (see models.undo_log) holds the pre-images needed to reverse them.
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from casebuilder.config import to_iso8601
from casebuilder.models.database import Base, JSONType

# Status type
CheckpointStatus = Literal["active", "historical", "rolled_back"]
CheckpointSource = Literal["LLM", "MCP", "API"]

CHECKPOINT_STATUSES: tuple[str, ...] = ("active", "historical", "rolled_back")
CHECKPOINT_SOURCES: tuple[str, ...] = ("LLM", "MCP", "API")

DEFAULT_DESCRIPTION = "LLM Tool Execution"


def utcnow() -> datetime:
    """Application-side timestamp; microsecond resolution on every backend."""
    return datetime.now(timezone.utc)


class Checkpoint(Base):
    """
    A named transaction boundary over row-level mutations.

    Lifecycle:
    - active: open, undo log entries are being appended
    - historical: committed, undo log kept so it can be restored later
    - rolled_back: reverted (immediately or by a later restore), log consumed
    """

    __tablename__ = "checkpoints"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'historical', 'rolled_back')",
            name="ck_checkpoints_status",
        ),
        CheckConstraint(
            "source IN ('LLM', 'MCP', 'API')",
            name="ck_checkpoints_source",
        ),
        Index("ix_checkpoints_objectid_created", "objectid", "created_at"),
        Index("ix_checkpoints_applicationid_created", "applicationid", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    objectid: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    applicationid: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        default=DEFAULT_DESCRIPTION,
    )

    user_command: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
        index=True,
    )

    source: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="LLM",
    )

    tools_executed: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    changes_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Checkpoint {self.id} status={self.status}>"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        result: dict[str, Any] = {
            "id": str(self.id),
            "objectid": self.objectid,
            "description": self.description,
            "status": self.status,
            "source": self.source,
            "tools_executed": list(self.tools_executed or []),
            "changes_count": self.changes_count or 0,
            "created_at": to_iso8601(self.created_at),
            "finished_at": to_iso8601(self.finished_at),
        }
        if self.applicationid is not None:
            result["applicationid"] = self.applicationid
        if self.user_command:
            result["user_command"] = self.user_command
        return result

    @property
    def is_active(self) -> bool:
        """Check if this checkpoint is still accepting operations."""
        return self.status == "active"

    @property
    def is_historical(self) -> bool:
        """Check if this checkpoint is committed and still restorable."""
        return self.status == "historical"

    @property
    def is_rolled_back(self) -> bool:
        return self.status == "rolled_back"
