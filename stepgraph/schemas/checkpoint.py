"""
Checkpoint Schema - Channel state snapshots at step boundaries.

A checkpoint is written after every committed step (and after input or
manual state updates). It holds everything needed to plan the next step,
so resuming a thread costs one load regardless of how long its history is.
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class CheckpointSource(StrEnum):
    """What produced a checkpoint."""

    INPUT = "input"  # Caller input applied before a run's first step
    LOOP = "loop"  # A committed superstep
    UPDATE = "update"  # Out-of-band update_state()


class TaskError(BaseModel):
    """A task failure recorded on a committed step (skip_writes policy)."""

    node_id: str
    error: str
    error_type: str = "NodeExecutionError"
    attempts: int = 1

    model_config = {"extra": "allow"}


class Checkpoint(BaseModel):
    """
    Immutable snapshot of a thread at a step boundary.

    ``next_nodes`` is the active set already planned for the following
    step; the scheduler picks it up as-is on resume.
    """

    # Identity
    checkpoint_id: str  # Format: cp_{source}_s{step}_{uuid8}
    thread_id: str
    step: int
    source: CheckpointSource = CheckpointSource.LOOP
    parent_checkpoint_id: str | None = None

    # Timestamps
    created_at: str  # ISO 8601 format

    # Channel state
    channel_values: dict[str, Any] = Field(default_factory=dict)
    channel_versions: dict[str, int] = Field(default_factory=dict)
    updated_channels: list[str] = Field(default_factory=list)

    # Planning
    next_nodes: list[str] = Field(default_factory=list)
    tasks: list[str] = Field(default_factory=list)  # Nodes that ran in this step
    task_errors: list[TaskError] = Field(default_factory=list)

    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow", "frozen": True}

    @classmethod
    def create(
        cls,
        thread_id: str,
        step: int,
        channel_values: dict[str, Any],
        channel_versions: dict[str, int],
        next_nodes: list[str],
        source: CheckpointSource = CheckpointSource.LOOP,
        parent_checkpoint_id: str | None = None,
        updated_channels: list[str] | None = None,
        tasks: list[str] | None = None,
        task_errors: list[TaskError] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "Checkpoint":
        """
        Create a new checkpoint with generated ID and timestamp.

        Args:
            thread_id: Thread this checkpoint belongs to
            step: Step number (-1 for the first input of a thread)
            channel_values: All channel values after the step
            channel_versions: All channel versions after the step
            next_nodes: Active set planned for the next step
            source: What produced the checkpoint
            parent_checkpoint_id: Previous checkpoint of the thread
            updated_channels: Channels whose version changed in this step
            tasks: Nodes executed in this step
            task_errors: Failures whose writes were skipped
            metadata: Free-form extra data (run id, resume decision, ...)

        Returns:
            New Checkpoint instance
        """
        checkpoint_id = f"cp_{source.value}_s{step}_{uuid.uuid4().hex[:8]}"
        return cls(
            checkpoint_id=checkpoint_id,
            thread_id=thread_id,
            step=step,
            source=source,
            parent_checkpoint_id=parent_checkpoint_id,
            created_at=datetime.now().isoformat(),
            channel_values=channel_values,
            channel_versions=channel_versions,
            updated_channels=sorted(updated_channels or []),
            next_nodes=next_nodes,
            tasks=tasks or [],
            task_errors=task_errors or [],
            metadata=metadata or {},
        )


class CheckpointSummary(BaseModel):
    """
    Lightweight checkpoint metadata for index listings.

    Used in the checkpoint index for scanning without loading full
    checkpoint data.
    """

    checkpoint_id: str
    step: int
    source: CheckpointSource
    created_at: str
    parent_checkpoint_id: str | None = None
    next_nodes: list[str] = Field(default_factory=list)
    tasks: list[str] = Field(default_factory=list)
    updated_channels: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        """Create summary from full checkpoint."""
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            step=checkpoint.step,
            source=checkpoint.source,
            created_at=checkpoint.created_at,
            parent_checkpoint_id=checkpoint.parent_checkpoint_id,
            next_nodes=checkpoint.next_nodes,
            tasks=checkpoint.tasks,
            updated_channels=checkpoint.updated_channels,
        )


class CheckpointIndex(BaseModel):
    """
    Manifest of all checkpoints for a thread, oldest first.
    """

    thread_id: str
    checkpoints: list[CheckpointSummary] = Field(default_factory=list)
    latest_checkpoint_id: str | None = None
    total_checkpoints: int = 0

    model_config = {"extra": "allow"}

    def add_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Add a checkpoint to the index."""
        self.add_summary(CheckpointSummary.from_checkpoint(checkpoint))

    def add_summary(self, summary: CheckpointSummary) -> None:
        self.checkpoints.append(summary)
        self.latest_checkpoint_id = summary.checkpoint_id
        self.total_checkpoints = len(self.checkpoints)

    def remove_checkpoint(self, checkpoint_id: str) -> None:
        self.checkpoints = [cp for cp in self.checkpoints if cp.checkpoint_id != checkpoint_id]
        self.total_checkpoints = len(self.checkpoints)
        if self.latest_checkpoint_id == checkpoint_id:
            self.latest_checkpoint_id = (
                self.checkpoints[-1].checkpoint_id if self.checkpoints else None
            )

    def get_by_step(self, step: int) -> CheckpointSummary | None:
        """Get the checkpoint summary for a step."""
        for summary in self.checkpoints:
            if summary.step == step:
                return summary
        return None

    def get_checkpoint_summary(self, checkpoint_id: str) -> CheckpointSummary | None:
        """Get checkpoint summary by ID."""
        for summary in self.checkpoints:
            if summary.checkpoint_id == checkpoint_id:
                return summary
        return None
