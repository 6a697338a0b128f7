"""Services package."""
from casebuilder.services.checkpoints import CheckpointManager
from casebuilder.services.checkpoint_session import CheckpointSession, CheckpointSessionManager
from casebuilder.services.undo import UndoApplier

__all__ = ["CheckpointManager", "CheckpointSession", "CheckpointSessionManager", "UndoApplier"]
