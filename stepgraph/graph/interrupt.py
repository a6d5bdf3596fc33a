"""
Interrupt Controller - Approval pause points before guarded nodes.

Lifecycle:

1. The scheduler plans a step whose active set contains a guarded node.
2. ``pause()`` persists an Interrupt holding the planned tasks and their read
   snapshots; the run returns PAUSED and releases every lock.
3. Someone decides: approve, reject or edit.
4. ``resolve()`` validates the decision against the pending interrupt and
   tells the scheduler what to execute.
5. The resumed step's checkpoint is stamped with the interrupt ID; once it
   is durable the scheduler calls ``clear()``. A crash before the checkpoint
   leaves the interrupt pending so the decision can be submitted again. A
   crash after it is detected on the next ``resolve()``: the stamped
   checkpoint shows the decision was already applied, so nothing reruns.
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from stepgraph.errors import CheckpointWriteFailure, InterruptConflict, InvalidResumeDecision
from stepgraph.graph.edge import END, GraphSpec
from stepgraph.schemas.checkpoint import Checkpoint
from stepgraph.schemas.interrupt import Interrupt, PendingTask
from stepgraph.storage.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)


class ResumeAction(StrEnum):
    """Decision on a pending interrupt."""

    APPROVE = "approve"  # Run the planned tasks as they are
    REJECT = "reject"  # Drop the planned tasks, route to the fallback
    EDIT = "edit"  # Replace task inputs, then run


class ResumeDecision(BaseModel):
    """
    A caller's answer to an interrupt.

    Examples:
        ResumeDecision.approve()
        ResumeDecision.reject()                      # graph's interrupt_fallbacks
        ResumeDecision.reject(fallback="escalate")   # caller-supplied target
        ResumeDecision.edit({"publish": {"draft": "fixed text"}})
    """

    action: ResumeAction
    inputs: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="EDIT only: node ID -> channel values replacing its read snapshot",
    )
    fallback: str | None = Field(
        default=None, description="REJECT only: node to route to instead of the graph default"
    )
    note: str = ""

    model_config = {"extra": "allow"}

    @classmethod
    def approve(cls, note: str = "") -> "ResumeDecision":
        return cls(action=ResumeAction.APPROVE, note=note)

    @classmethod
    def reject(cls, fallback: str | None = None, note: str = "") -> "ResumeDecision":
        return cls(action=ResumeAction.REJECT, fallback=fallback, note=note)

    @classmethod
    def edit(cls, inputs: dict[str, dict[str, Any]], note: str = "") -> "ResumeDecision":
        return cls(action=ResumeAction.EDIT, inputs=inputs, note=note)


@dataclass
class Resolution:
    """What the scheduler does with a resolved interrupt."""

    interrupt: Interrupt
    decision: ResumeDecision
    tasks: list[PendingTask] = field(default_factory=list)  # APPROVE / EDIT
    fallback_nodes: list[str] = field(default_factory=list)  # REJECT
    already_applied: bool = False  # A committed checkpoint carries this interrupt's ID

    @property
    def action(self) -> ResumeAction:
        return self.decision.action


class InterruptController:
    """
    Persists and resolves interrupts through the checkpoint store.

    A thread has at most one outstanding interrupt.
    """

    def __init__(self, store: CheckpointStore):
        self.store = store

    async def pending(self, thread_id: str) -> Interrupt | None:
        return await self.store.load_interrupt(thread_id)

    async def pause(
        self,
        thread_id: str,
        step: int,
        pending_tasks: list[PendingTask],
        checkpoint_id: str | None = None,
    ) -> Interrupt:
        """
        Record a pending interrupt for ``thread_id``.

        Raises:
            InterruptConflict: The thread already has an outstanding interrupt
        """
        existing = await self.store.load_interrupt(thread_id)
        if existing is not None:
            raise InterruptConflict(
                f"Thread '{thread_id}' already has pending interrupt {existing.interrupt_id}",
                thread_id=thread_id,
                step=step,
            )

        interrupt = Interrupt.create(
            thread_id=thread_id,
            step=step,
            pending_tasks=pending_tasks,
            checkpoint_id=checkpoint_id,
        )
        await self.store.save_interrupt(thread_id, interrupt)
        logger.info(
            f"⏸ Paused before {interrupt.guarded_nodes} at step {step}",
            extra={"event": "interrupt_created"},
        )
        return interrupt

    async def resolve(
        self,
        thread_id: str,
        decision: ResumeDecision,
        graph: GraphSpec,
        latest: Checkpoint | None = None,
    ) -> Resolution:
        """
        Validate ``decision`` against the thread's pending interrupt.

        Does not delete the interrupt; see ``clear()``. When ``latest`` is
        stamped with the interrupt's ID the decision was already committed
        before a crash, and the resolution says so instead of replaying it.

        Raises:
            InterruptConflict: No pending interrupt for the thread
            InvalidResumeDecision: The decision does not fit the interrupt
        """
        interrupt = await self.store.load_interrupt(thread_id)
        if interrupt is None:
            raise InterruptConflict(
                f"Thread '{thread_id}' has no pending interrupt to resume",
                thread_id=thread_id,
            )

        if self._applied_by(interrupt, latest):
            logger.warning(
                f"Interrupt {interrupt.interrupt_id} was already applied at step "
                f"{latest.step}; ignoring '{decision.action}'",
                extra={"event": "interrupt_already_applied", "checkpoint_id": latest.checkpoint_id},
            )
            return Resolution(interrupt=interrupt, decision=decision, already_applied=True)

        if decision.action == ResumeAction.REJECT:
            return Resolution(
                interrupt=interrupt,
                decision=decision,
                fallback_nodes=self._fallback_nodes(interrupt, decision, graph),
            )

        tasks = [task.model_copy(deep=True) for task in interrupt.pending_tasks]
        if decision.action == ResumeAction.EDIT:
            self._apply_edits(interrupt, tasks, decision, graph)

        return Resolution(interrupt=interrupt, decision=decision, tasks=tasks)

    async def clear(self, thread_id: str) -> None:
        """
        Delete the resolved interrupt.

        Raises:
            CheckpointWriteFailure: The store could not delete the record; the
                committed step stays stamped, so resubmitting is safe
        """
        try:
            await self.store.delete_interrupt(thread_id)
        except Exception as e:
            raise CheckpointWriteFailure(
                f"Could not clear the resolved interrupt of '{thread_id}': {e}",
                thread_id=thread_id,
            ) from e

    @staticmethod
    def _applied_by(interrupt: Interrupt, latest: Checkpoint | None) -> bool:
        return (
            latest is not None
            and latest.checkpoint_id != interrupt.checkpoint_id
            and latest.metadata.get("interrupt_id") == interrupt.interrupt_id
        )

    def _fallback_nodes(
        self, interrupt: Interrupt, decision: ResumeDecision, graph: GraphSpec
    ) -> list[str]:
        if decision.fallback is not None:
            candidates = [decision.fallback]
        else:
            candidates = [
                graph.interrupt_fallbacks[node_id]
                for node_id in interrupt.guarded_nodes
                if node_id in graph.interrupt_fallbacks
            ]

        for target in candidates:
            if target != END and graph.get_node(target) is None:
                raise InvalidResumeDecision(
                    f"Fallback '{target}' is not a node of graph '{graph.id}'",
                    thread_id=interrupt.thread_id,
                    step=interrupt.step,
                )
        return graph.sort_nodes(candidates)

    def _apply_edits(
        self,
        interrupt: Interrupt,
        tasks: list[PendingTask],
        decision: ResumeDecision,
        graph: GraphSpec,
    ) -> None:
        by_node = {task.node_id: task for task in tasks}
        for node_id, values in decision.inputs.items():
            task = by_node.get(node_id)
            if task is None:
                raise InvalidResumeDecision(
                    f"Edit targets '{node_id}', which is not pending "
                    f"(pending: {list(by_node)})",
                    thread_id=interrupt.thread_id,
                    step=interrupt.step,
                )
            spec = graph.get_node(node_id)
            allowed = set(spec.reads) if spec else set()
            unknown = set(values) - allowed
            if unknown:
                raise InvalidResumeDecision(
                    f"Edit for '{node_id}' sets channels it does not read: {sorted(unknown)}",
                    thread_id=interrupt.thread_id,
                    step=interrupt.step,
                )
            task.inputs.update(copy.deepcopy(values))
