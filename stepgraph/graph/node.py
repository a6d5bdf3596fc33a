"""
Node Protocol - The unit of work in a graph.

A node is an external collaborator behind one capability:
``execute(ctx) -> NodeResult``. It receives an immutable snapshot of the
channels it declared in ``reads`` and answers with write proposals for the
channels it declared in ``writes``. Nodes are stateless across invocations
and never persist anything themselves; every durable effect goes through
channel writes.
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class NodeErrorPolicy(StrEnum):
    """What a failed task does to its step."""

    FAIL_RUN = "fail_run"  # Discard the step, raise NodeExecutionError
    ABORT_STEP = "abort_step"  # Discard the step, return a partial_failure result
    SKIP_WRITES = "skip_writes"  # Commit the successful tasks, drop the failed ones

    @property
    def severity(self) -> int:
        return _POLICY_SEVERITY[self]


_POLICY_SEVERITY = {
    NodeErrorPolicy.SKIP_WRITES: 0,
    NodeErrorPolicy.ABORT_STEP: 1,
    NodeErrorPolicy.FAIL_RUN: 2,
}


class NodeSpec(BaseModel):
    """
    Declaration of a node.

    Examples:
        NodeSpec(id="draft", reads=["topic"], writes=["draft"])

        # Re-run whenever new feedback lands, independent of edges
        NodeSpec(id="revise", reads=["draft", "feedback"], writes=["draft"],
                 triggers=["feedback"])
    """

    id: str
    reads: list[str] = Field(default_factory=list, description="Channels in the read snapshot")
    writes: list[str] = Field(default_factory=list, description="Channels the node may write")
    triggers: list[str] = Field(
        default_factory=list,
        description="Channels whose version change activates this node in the next step",
    )
    error_policy: NodeErrorPolicy | None = Field(
        default=None, description="Overrides the run-level node error policy"
    )
    max_retries: int = Field(
        default=0,
        ge=0,
        description=(
            "Retries within the same step. Input validation problems and writes to "
            "undeclared channels fail the task at once and are not retried"
        ),
    )
    description: str = ""

    model_config = {"extra": "allow"}


@dataclass
class NodeContext:
    """Everything a node sees while executing one task."""

    node_id: str
    thread_id: str
    step: int
    inputs: Mapping[str, Any]
    attempt: int = 0
    emitter: Callable[[str, Any], None] | None = field(default=None, repr=False)

    def emit(self, chunk: Any) -> None:
        """
        Pass sub-step output (e.g. tokens) to ``messages`` stream consumers.

        The scheduler forwards chunks without looking at them.
        """
        if self.emitter is not None:
            self.emitter(self.node_id, chunk)


@dataclass
class NodeResult:
    """
    Outcome of a node execution.

    ``writes`` is either a mapping of channel -> value or a list of
    (channel, value) pairs when the same channel is written more than once.
    """

    success: bool = True
    writes: Mapping[str, Any] | list[tuple[str, Any]] = field(default_factory=dict)
    error: str | None = None
    latency_ms: int = 0

    def write_pairs(self) -> list[tuple[str, Any]]:
        """
        Raises:
            ValueError: An entry is not a (channel, value) pair
        """
        if isinstance(self.writes, Mapping):
            return list(self.writes.items())
        pairs = []
        for entry in self.writes:
            if not isinstance(entry, (tuple, list)) or len(entry) != 2 or not isinstance(
                entry[0], str
            ):
                raise ValueError(f"Write {entry!r} is not a (channel, value) pair")
            pairs.append((entry[0], entry[1]))
        return pairs


class NodeProtocol(ABC):
    """Interface every executable node implements."""

    @abstractmethod
    async def execute(self, ctx: NodeContext) -> NodeResult:
        """Run the node against its read snapshot."""

    def validate_input(self, ctx: NodeContext) -> list[str]:
        """Return problems with the inputs; an empty list means OK."""
        return []


class FunctionNode(NodeProtocol):
    """
    Wrap a plain function as a node.

    The function gets the read snapshot (and the context, if it accepts a
    second argument) and returns a mapping of writes, a NodeResult, or None.
    Synchronous functions run in a worker thread so tasks of a step fan out.

    Example:
        def increment(state):
            return {"counter": state["counter"] + 1}

        scheduler.register_function("inc", increment)
    """

    def __init__(self, func: Callable[..., Any]):
        self.func = func
        self._wants_ctx = _accepts_two_args(func)

    async def execute(self, ctx: NodeContext) -> NodeResult:
        start = time.perf_counter()
        args = (ctx.inputs, ctx) if self._wants_ctx else (ctx.inputs,)

        if inspect.iscoroutinefunction(self.func):
            output = await self.func(*args)
        else:
            output = await asyncio.to_thread(self.func, *args)
            if inspect.isawaitable(output):
                output = await output

        latency_ms = int((time.perf_counter() - start) * 1000)
        if isinstance(output, NodeResult):
            if not output.latency_ms:
                output.latency_ms = latency_ms
            return output
        if output is None:
            return NodeResult(success=True, latency_ms=latency_ms)
        if not isinstance(output, (Mapping, list)):
            return NodeResult(
                success=False,
                error=f"Node function returned {type(output).__name__}, expected a mapping",
                latency_ms=latency_ms,
            )
        return NodeResult(success=True, writes=output, latency_ms=latency_ms)


def _accepts_two_args(func: Callable[..., Any]) -> bool:
    try:
        params = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [
        p
        for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    has_varargs = any(p.kind == inspect.Parameter.VAR_POSITIONAL for p in params)
    return has_varargs or len(positional) >= 2
