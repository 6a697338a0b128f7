"""Checkpoint / undo-log core of the case builder."""
