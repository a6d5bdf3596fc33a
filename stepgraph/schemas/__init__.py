"""Persisted data models."""

from stepgraph.schemas.checkpoint import (
    Checkpoint,
    CheckpointIndex,
    CheckpointSource,
    CheckpointSummary,
    TaskError,
)
from stepgraph.schemas.interrupt import Interrupt, PendingTask

__all__ = [
    "Checkpoint",
    "CheckpointIndex",
    "CheckpointSource",
    "CheckpointSummary",
    "TaskError",
    "Interrupt",
    "PendingTask",
]
