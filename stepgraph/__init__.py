"""
stepgraph - A deterministic superstep engine for stateful, cyclic graphs.

Nodes read immutable channel snapshots and propose writes; every step's
writes are merged through per-channel reducers in node declaration order
and checkpointed before the next step is planned. Threads can pause before
guarded nodes, resume after a decision, and continue after a crash from
their latest checkpoint.
"""

from stepgraph.config import EngineConfig
from stepgraph.errors import (
    CheckpointWriteFailure,
    GraphValidationError,
    InterruptConflict,
    InvalidResumeDecision,
    InvalidWriteError,
    NodeExecutionError,
    RecursionLimitExceeded,
    ReducerConflict,
    RoutingError,
    StepGraphError,
)
from stepgraph.graph.channel import ChannelSpec, ChannelStore
from stepgraph.graph.checkpoint_config import CheckpointConfig
from stepgraph.graph.edge import END, EdgeCondition, EdgeSpec, GraphSpec
from stepgraph.graph.interrupt import InterruptController, ResumeAction, ResumeDecision
from stepgraph.graph.node import (
    FunctionNode,
    NodeContext,
    NodeErrorPolicy,
    NodeProtocol,
    NodeResult,
    NodeSpec,
)
from stepgraph.graph.router import Router
from stepgraph.graph.scheduler import (
    RunConfig,
    RunResult,
    RunStatus,
    StateSnapshot,
    StepScheduler,
)
from stepgraph.runtime.event_bus import EventBus, EventType, StepEvent, StreamMode
from stepgraph.schemas.checkpoint import Checkpoint, CheckpointSummary
from stepgraph.schemas.interrupt import Interrupt, PendingTask
from stepgraph.storage.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)

__version__ = "0.1.0"

__all__ = [
    # Graph definition
    "ChannelSpec",
    "ChannelStore",
    "NodeSpec",
    "EdgeSpec",
    "EdgeCondition",
    "GraphSpec",
    "END",
    # Nodes
    "NodeProtocol",
    "NodeContext",
    "NodeResult",
    "NodeErrorPolicy",
    "FunctionNode",
    # Execution
    "StepScheduler",
    "RunConfig",
    "RunResult",
    "RunStatus",
    "StateSnapshot",
    "Router",
    "InterruptController",
    "ResumeAction",
    "ResumeDecision",
    "EngineConfig",
    "CheckpointConfig",
    # Persistence
    "Checkpoint",
    "CheckpointSummary",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "Interrupt",
    "PendingTask",
    # Streaming
    "EventBus",
    "EventType",
    "StepEvent",
    "StreamMode",
    # Errors
    "StepGraphError",
    "GraphValidationError",
    "RecursionLimitExceeded",
    "NodeExecutionError",
    "InvalidWriteError",
    "ReducerConflict",
    "CheckpointWriteFailure",
    "InterruptConflict",
    "InvalidResumeDecision",
    "RoutingError",
]
