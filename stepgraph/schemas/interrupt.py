"""
Interrupt Schema - Pending-approval markers.

An interrupt is attached to a thread when the next step would run a guarded
node. It stores the exact task set that was planned, including each task's
read snapshot, so approval replays precisely what a reviewer saw.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class PendingTask(BaseModel):
    """One planned task waiting behind an interrupt."""

    node_id: str
    step: int
    inputs: dict[str, Any] = Field(default_factory=dict)
    guarded: bool = False

    model_config = {"extra": "allow"}


class Interrupt(BaseModel):
    """
    Outstanding approval request for a thread (at most one per thread).
    """

    interrupt_id: str
    thread_id: str
    step: int
    checkpoint_id: str | None = None  # Pre-guard checkpoint the step starts from
    pending_tasks: list[PendingTask] = Field(default_factory=list)
    guarded_nodes: list[str] = Field(default_factory=list)
    created_at: str

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        thread_id: str,
        step: int,
        pending_tasks: list[PendingTask],
        checkpoint_id: str | None = None,
    ) -> "Interrupt":
        return cls(
            interrupt_id=f"int_{uuid.uuid4().hex[:12]}",
            thread_id=thread_id,
            step=step,
            checkpoint_id=checkpoint_id,
            pending_tasks=pending_tasks,
            guarded_nodes=[t.node_id for t in pending_tasks if t.guarded],
            created_at=datetime.now().isoformat(),
        )

    def get_task(self, node_id: str) -> PendingTask | None:
        for task in self.pending_tasks:
            if task.node_id == node_id:
                return task
        return None

    def to_display(self) -> dict[str, Any]:
        """Short description for callers deciding on approval."""
        return {
            "interrupt_id": self.interrupt_id,
            "thread_id": self.thread_id,
            "step": self.step,
            "guarded_nodes": self.guarded_nodes,
            "tasks": [
                {"node_id": t.node_id, "inputs": t.inputs, "guarded": t.guarded}
                for t in self.pending_tasks
            ],
        }
