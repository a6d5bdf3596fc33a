"""
Error taxonomy for the step engine.

Every failure a caller can observe is one of these types. Fatal errors are
raised only after the scheduler has made sure the last durable checkpoint is
untouched, so the thread can always be resumed from ``load_latest``.
"""

from typing import Any


class StepGraphError(Exception):
    """
    Base exception for engine errors.

    Attributes:
        message: Human-readable error description
        thread_id: Thread the error belongs to, if any
        step: Step being planned/executed when the error happened, if any
        details: Additional structured context
    """

    def __init__(
        self,
        message: str,
        *,
        thread_id: str | None = None,
        step: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.thread_id = thread_id
        self.step = step
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class GraphValidationError(StepGraphError):
    """Raised when a graph definition has structural problems."""

    def __init__(self, errors: list[str]) -> None:
        summary = "; ".join(errors)
        super().__init__(f"Invalid graph: {summary}", details={"errors": errors})
        self.errors = errors


class RecursionLimitExceeded(StepGraphError):
    """
    The step counter passed the configured recursion limit.

    The thread's state is preserved at ``checkpoint_id`` (the last committed step).
    """

    def __init__(
        self,
        thread_id: str,
        step: int,
        recursion_limit: int,
        checkpoint_id: str | None,
    ) -> None:
        super().__init__(
            f"Recursion limit of {recursion_limit} reached without hitting a stop "
            f"condition (thread '{thread_id}', next step {step})",
            thread_id=thread_id,
            step=step,
            details={"recursion_limit": recursion_limit, "checkpoint_id": checkpoint_id},
        )
        self.recursion_limit = recursion_limit
        self.checkpoint_id = checkpoint_id


class NodeExecutionError(StepGraphError):
    """A task's node failed (raised, returned an error result, or wrote illegally)."""

    def __init__(
        self,
        message: str,
        *,
        node_id: str,
        thread_id: str | None = None,
        step: int | None = None,
        failures: list[Any] | None = None,
    ) -> None:
        super().__init__(message, thread_id=thread_id, step=step)
        self.node_id = node_id
        self.failures = failures or []


class InvalidWriteError(NodeExecutionError):
    """A node proposed a write to a channel it did not declare."""


class ReducerConflict(StepGraphError):
    """A reducer raised while merging the writes of a step."""

    def __init__(self, channel: str, cause: Exception, step: int | None = None) -> None:
        super().__init__(
            f"Reducer for channel '{channel}' failed: {cause}",
            step=step,
            details={"channel": channel},
        )
        self.channel = channel
        self.__cause__ = cause


class CheckpointWriteFailure(StepGraphError):
    """The persistence backend could not durably store a checkpoint or clear an interrupt."""


class InterruptConflict(StepGraphError):
    """
    A run, resume or state update was issued against a thread whose interrupt
    state does not allow it (pending interrupt on run, none on resume).
    """


class InvalidResumeDecision(StepGraphError):
    """A resume decision does not fit the pending interrupt."""


class RoutingError(StepGraphError):
    """A conditional edge could not resolve to a declared target."""
