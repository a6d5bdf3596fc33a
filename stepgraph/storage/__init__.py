"""Checkpoint persistence backends."""

from stepgraph.storage.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)

__all__ = ["CheckpointStore", "FileCheckpointStore", "InMemoryCheckpointStore"]
