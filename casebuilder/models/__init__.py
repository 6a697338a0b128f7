"""Database models package."""
from casebuilder.models.database import Base, Database, JSONType, with_retry
from casebuilder.models.checkpoint import Checkpoint
from casebuilder.models.undo_log import UndoLogEntry
from casebuilder.models.tables import TableCatalog

__all__ = [
    "Base",
    "Database",
    "JSONType",
    "with_retry",
    "Checkpoint",
    "UndoLogEntry",
    "TableCatalog",
]
