"""
Step Scheduler - Runs a graph as a sequence of atomic supersteps.

Each loop iteration is one step:

1. Plan     take the active set recorded on the latest checkpoint
2. Guard    pause before any node listed in ``interrupt_before``
3. Execute  run every active task concurrently against a read snapshot
            captured before the step started
4. Apply    merge all proposed writes through the channel reducers in
            node declaration order
5. Route    evaluate each executed node's outgoing edges on the post-step state
6. Persist  durably save the checkpoint (values, versions, next active set)
7. Bound    stop with RecursionLimitExceeded once the run used up its steps

A step either commits completely or leaves no trace: the in-memory channels
only diverge from the last durable checkpoint between Apply and Persist, and
any failure there ends the run without saving.
"""

import asyncio
import copy
import logging
import uuid
import weakref
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field

from stepgraph.config import DEFAULT_RECURSION_LIMIT, EngineConfig
from stepgraph.errors import (
    CheckpointWriteFailure,
    GraphValidationError,
    InterruptConflict,
    InvalidWriteError,
    NodeExecutionError,
    RecursionLimitExceeded,
    StepGraphError,
)
from stepgraph.graph.channel import ChannelStore
from stepgraph.graph.checkpoint_config import DEFAULT_CHECKPOINT_CONFIG, CheckpointConfig
from stepgraph.graph.edge import GraphSpec
from stepgraph.graph.interrupt import InterruptController, ResumeAction, ResumeDecision
from stepgraph.graph.node import (
    FunctionNode,
    NodeContext,
    NodeErrorPolicy,
    NodeProtocol,
    NodeResult,
)
from stepgraph.graph.router import Router, RouterFunc
from stepgraph.observability.logging import set_trace_context, trace_context
from stepgraph.runtime.event_bus import (
    EventBus,
    EventSink,
    EventType,
    RunEmitter,
    StepEvent,
    StreamMode,
)
from stepgraph.schemas.checkpoint import Checkpoint, CheckpointSource, CheckpointSummary, TaskError
from stepgraph.schemas.interrupt import Interrupt, PendingTask
from stepgraph.storage.checkpoint_store import CheckpointStore, InMemoryCheckpointStore

logger = logging.getLogger(__name__)


class RunStatus(StrEnum):
    COMPLETED = "completed"  # Active set drained
    PAUSED = "paused"  # Waiting on an interrupt decision
    FAILED = "failed"
    PARTIAL_FAILURE = "partial_failure"  # A step was discarded under abort_step
    CANCELLED = "cancelled"  # request_cancel() honoured at a step boundary


class RunConfig(BaseModel):
    """Per-invocation settings."""

    recursion_limit: int = Field(default=DEFAULT_RECURSION_LIMIT, gt=0)
    interrupt_before: set[str] = Field(
        default_factory=set, description="Added to the graph's own interrupt_before"
    )
    node_error_policy: NodeErrorPolicy = NodeErrorPolicy.FAIL_RUN
    max_concurrency: int | None = Field(default=None, gt=0)
    run_name: str = ""

    @classmethod
    def from_engine_config(
        cls, engine: EngineConfig | None = None, **overrides: Any
    ) -> "RunConfig":
        """Seed a RunConfig from the engine defaults (file + env)."""
        engine = engine or EngineConfig()
        values: dict[str, Any] = {
            "recursion_limit": engine.recursion_limit,
            "node_error_policy": engine.node_error_policy,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class RunResult:
    """Result of one run() / resume() call."""

    status: RunStatus
    thread_id: str
    state: dict[str, Any] = field(default_factory=dict)
    step: int | None = None  # Last committed step
    checkpoint_id: str | None = None
    next_nodes: list[str] = field(default_factory=list)
    interrupt: Interrupt | None = None
    task_errors: list[TaskError] = field(default_factory=list)
    steps_executed: int = 0
    path: list[list[str]] = field(default_factory=list)  # Nodes run in each step
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def paused(self) -> bool:
        return self.status == RunStatus.PAUSED


@dataclass
class StateSnapshot:
    """Current state of a thread as seen from its latest checkpoint."""

    thread_id: str
    values: dict[str, Any]
    step: int
    next_nodes: list[str]
    checkpoint_id: str
    created_at: str
    interrupt: Interrupt | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Task:
    node_id: str
    order: int  # Declaration index
    inputs: dict[str, Any]
    guarded: bool = False


@dataclass
class _TaskOutcome:
    task: _Task
    result: NodeResult | None = None
    writes: list[tuple[str, Any]] = field(default_factory=list)
    error: Exception | None = None
    attempts: int = 1

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class _ThreadRun:
    """Mutable bookkeeping for one run of one thread."""

    thread_id: str
    run_id: str
    config: RunConfig
    channels: ChannelStore
    emitter: RunEmitter
    interrupt_before: set[str]
    checkpoint: Checkpoint | None = None
    start_step: int = 0
    steps_executed: int = 0
    path: list[list[str]] = field(default_factory=list)
    task_errors: list[TaskError] = field(default_factory=list)
    resumed_interrupt_id: str | None = None  # Stamped on the next committed step

    @property
    def next_step(self) -> int:
        return self.checkpoint.step + 1 if self.checkpoint else -1


class StepScheduler:
    """
    Runs threads of a graph with checkpointing, interrupts and streaming.

    Example:
        scheduler = StepScheduler(graph, FileCheckpointStore("./threads"))
        scheduler.register_function("inc", lambda s: {"counter": s["counter"] + 1})

        result = await scheduler.run("thread-1", {"counter": 0},
                                     RunConfig(recursion_limit=10))
        if result.paused:
            result = await scheduler.resume("thread-1", ResumeDecision.approve())
    """

    def __init__(
        self,
        graph: GraphSpec,
        checkpoint_store: CheckpointStore | None = None,
        nodes: Mapping[str, NodeProtocol | Callable[..., Any]] | None = None,
        routers: dict[str, RouterFunc] | None = None,
        event_bus: EventBus | None = None,
        checkpoint_config: CheckpointConfig | None = None,
        engine_config: EngineConfig | None = None,
    ):
        """
        Args:
            graph: Graph to run; validated here
            checkpoint_store: Persistence backend (in-memory if omitted)
            nodes: Node ID -> NodeProtocol or plain function
            routers: Router name -> routing function for ROUTER edges
            event_bus: Optional bus receiving every lifecycle event
            checkpoint_config: Checkpoint retention
            engine_config: Defaults for RunConfig when a run passes none

        Raises:
            GraphValidationError: The graph has structural problems
        """
        errors = graph.validate()
        if errors:
            raise GraphValidationError(errors)

        self.graph = graph
        self.store = checkpoint_store or InMemoryCheckpointStore()
        self.router = Router(graph, routers)
        self.interrupts = InterruptController(self.store)
        self.event_bus = event_bus
        self.checkpoint_config = checkpoint_config or DEFAULT_CHECKPOINT_CONFIG
        self.engine_config = engine_config

        self._order = graph.node_order()
        self._node_registry: dict[str, NodeProtocol] = {}
        for node_id, impl in (nodes or {}).items():
            self.register_node(node_id, impl)

        # Entries vanish once no run holds or waits on the lock
        self._thread_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._cancel_requested: set[str] = set()

    # === REGISTRATION ===

    def register_node(
        self, node_id: str, implementation: NodeProtocol | Callable[..., Any]
    ) -> None:
        """
        Attach an implementation to a declared node.

        Anything with an ``execute(ctx)`` coroutine is used as a node;
        other callables are wrapped in a FunctionNode.
        """
        if self.graph.get_node(node_id) is None:
            raise ValueError(f"Node '{node_id}' is not declared in graph '{self.graph.id}'")
        if not hasattr(implementation, "execute"):
            if not callable(implementation):
                raise TypeError(f"Node '{node_id}' implementation must be a node or a callable")
            implementation = FunctionNode(implementation)
        self._node_registry[node_id] = implementation

    def register_function(self, node_id: str, func: Callable[..., Any]) -> None:
        self.register_node(node_id, FunctionNode(func))

    def register_router(self, name: str, func: RouterFunc) -> None:
        self.router.register(name, func)

    def request_cancel(self, thread_id: str) -> None:
        """Stop the thread's run at the next step boundary."""
        self._cancel_requested.add(thread_id)

    # === PUBLIC API ===

    async def run(
        self,
        thread_id: str,
        input: Mapping[str, Any] | None = None,
        config: RunConfig | None = None,
    ) -> RunResult:
        """
        Run a thread until it completes, pauses, or fails.

        ``input`` is folded through the reducers as its own checkpoint first.
        Without input, an existing thread continues from its latest
        checkpoint's planned active set.

        Raises:
            InterruptConflict: The thread has a pending interrupt
            RecursionLimitExceeded: The run did not stop within its recursion limit
            NodeExecutionError: A task failed under the fail_run policy
            ReducerConflict: A reducer failed while merging a step
            RoutingError: A conditional edge could not be resolved
            CheckpointWriteFailure: A checkpoint could not be persisted
        """
        return await self._execute(thread_id, input=input, decision=None, config=config)

    async def resume(
        self,
        thread_id: str,
        decision: ResumeDecision,
        config: RunConfig | None = None,
    ) -> RunResult:
        """
        Resolve the thread's pending interrupt and continue.

        Raises:
            InterruptConflict: The thread has no pending interrupt
            InvalidResumeDecision: The decision does not fit the interrupt
            CheckpointWriteFailure: The resolved interrupt could not be cleared
        """
        return await self._execute(thread_id, input=None, decision=decision, config=config)

    async def stream(
        self,
        thread_id: str,
        input: Mapping[str, Any] | None = None,
        config: RunConfig | None = None,
        stream_mode: str | Iterable[str] = StreamMode.VALUES,
        decision: ResumeDecision | None = None,
    ) -> AsyncIterator[StepEvent]:
        """
        Run (or resume, when ``decision`` is given) and yield events as they happen.

        ``stream_mode`` is one mode or several of: values, updates, messages,
        debug. Errors the run raises propagate out of the iterator after the
        events preceding them were yielded.
        """
        modes = {StreamMode(stream_mode)} if isinstance(stream_mode, str) else {
            StreamMode(m) for m in stream_mode
        }
        queue: asyncio.Queue[StepEvent | None] = asyncio.Queue()

        def sink(event: StepEvent) -> None:
            if event.mode in modes:
                queue.put_nowait(event)

        task = asyncio.create_task(
            self._execute(thread_id, input=input, decision=decision, config=config, sink=sink)
        )
        task.add_done_callback(lambda _: queue.put_nowait(None))

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await task
        finally:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def get_state(self, thread_id: str) -> StateSnapshot | None:
        """Latest state of a thread, or None if it has no checkpoint."""
        checkpoint = await self.store.load_latest(thread_id)
        if checkpoint is None:
            return None
        return StateSnapshot(
            thread_id=thread_id,
            values=copy.deepcopy(checkpoint.channel_values),
            step=checkpoint.step,
            next_nodes=list(checkpoint.next_nodes),
            checkpoint_id=checkpoint.checkpoint_id,
            created_at=checkpoint.created_at,
            interrupt=await self.interrupts.pending(thread_id),
            metadata=dict(checkpoint.metadata),
        )

    async def get_state_history(self, thread_id: str) -> list[CheckpointSummary]:
        """All checkpoints of a thread, oldest first."""
        return await self.store.list_checkpoints(thread_id)

    async def update_state(
        self,
        thread_id: str,
        values: Mapping[str, Any],
        as_node: str | None = None,
    ) -> Checkpoint:
        """
        Write ``values`` through the reducers as a new checkpoint.

        With ``as_node`` the writes are merged as if that node produced them
        and its outgoing edges plan the next active set; otherwise the
        previously planned active set is kept.

        Raises:
            InterruptConflict: The thread has a pending interrupt
            ValueError: Unknown channel or node
        """
        if as_node is not None and self.graph.get_node(as_node) is None:
            raise ValueError(f"Node '{as_node}' is not declared in graph '{self.graph.id}'")

        async with self._lock_for(thread_id):
            if await self.interrupts.pending(thread_id) is not None:
                raise InterruptConflict(
                    f"Thread '{thread_id}' has a pending interrupt; resolve it first",
                    thread_id=thread_id,
                )

            latest = await self.store.load_latest(thread_id)
            channels = self._channels_from(latest)
            self._check_channels(channels, values)

            order = self._order[as_node] if as_node is not None else -1
            for name, value in values.items():
                channels.propose(name, value, order=order)
            updated = channels.commit(latest.step + 1 if latest else -1)

            if as_node is not None:
                planned = self.router.route(as_node, channels.read())
            elif latest is not None:
                planned = list(latest.next_nodes)
            else:
                planned = list(self.graph.entry_nodes)
            next_nodes = self.graph.sort_nodes(planned + self._triggered_by(updated))

            checkpoint = Checkpoint.create(
                thread_id=thread_id,
                step=latest.step + 1 if latest else -1,
                channel_values=channels.values(),
                channel_versions=channels.versions(),
                next_nodes=next_nodes,
                source=CheckpointSource.UPDATE,
                parent_checkpoint_id=latest.checkpoint_id if latest else None,
                updated_channels=sorted(updated),
                metadata={"as_node": as_node} if as_node else {},
            )
            await self._persist(thread_id, checkpoint)
            logger.info(
                f"✎ State updated on '{thread_id}' at step {checkpoint.step}: {sorted(updated)}",
                extra={"event": "state_updated", "checkpoint_id": checkpoint.checkpoint_id},
            )
            return checkpoint

    # === RUN LOOP ===

    def _lock_for(self, thread_id: str) -> asyncio.Lock:
        lock = self._thread_locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._thread_locks[thread_id] = lock
        return lock

    def _check_ready(self, config: RunConfig) -> set[str]:
        problems = [
            f"Node '{node.id}' has no registered implementation"
            for node in self.graph.nodes
            if node.id not in self._node_registry
        ]
        problems.extend(
            f"Router '{name}' is not registered" for name in self.router.missing_routers()
        )
        problems.extend(
            f"interrupt_before names unknown node '{node_id}'"
            for node_id in sorted(config.interrupt_before)
            if self.graph.get_node(node_id) is None
        )
        if problems:
            raise GraphValidationError(problems)
        return set(self.graph.interrupt_before) | config.interrupt_before

    async def _execute(
        self,
        thread_id: str,
        input: Mapping[str, Any] | None,
        decision: ResumeDecision | None,
        config: RunConfig | None,
        sink: EventSink | None = None,
    ) -> RunResult:
        config = config or RunConfig.from_engine_config(self.engine_config)
        interrupt_before = self._check_ready(config)

        async with self._lock_for(thread_id):
            previous_context = trace_context.get()
            run_id = f"run_{uuid.uuid4().hex[:12]}"
            set_trace_context(thread_id=thread_id, run_id=run_id)
            try:
                self._cancel_requested.discard(thread_id)
                latest = await self.store.load_latest(thread_id)
                run = _ThreadRun(
                    thread_id=thread_id,
                    run_id=run_id,
                    config=config,
                    channels=self._channels_from(latest),
                    emitter=RunEmitter(thread_id, run_id, self.event_bus, sink),
                    interrupt_before=interrupt_before,
                    checkpoint=latest,
                )
                return await self._drive(run, input, decision)
            finally:
                trace_context.set(previous_context)

    async def _drive(
        self,
        run: _ThreadRun,
        input: Mapping[str, Any] | None,
        decision: ResumeDecision | None,
    ) -> RunResult:
        thread_id = run.thread_id
        pending = await self.interrupts.pending(thread_id)

        if decision is None and pending is not None:
            raise InterruptConflict(
                f"Thread '{thread_id}' is paused at step {pending.step}; call resume() first",
                thread_id=thread_id,
                step=pending.step,
            )

        await run.emitter.emit(
            EventType.RUN_STARTED,
            step=run.next_step,
            data={"run_name": run.config.run_name, "resume": decision is not None},
        )

        try:
            approved: list[_Task] | None = None
            if decision is not None:
                approved = await self._apply_decision(run, decision)
            elif input is not None or run.checkpoint is None:
                await self._apply_input(run, input or {})

            return await self._loop(run, approved)
        except StepGraphError as e:
            e.thread_id = e.thread_id or thread_id
            run.channels.discard()
            logger.error(
                f"✗ Run failed: {type(e).__name__}: {e}", extra={"event": "run_failed"}
            )
            await run.emitter.emit(
                EventType.RUN_FAILED,
                step=e.step,
                data={
                    "status": RunStatus.FAILED.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise

    async def _apply_input(self, run: _ThreadRun, values: Mapping[str, Any]) -> None:
        self._check_channels(run.channels, values)
        step = run.next_step
        for name, value in values.items():
            run.channels.propose(name, value, order=-1)
        updated = run.channels.commit(step)

        planned = list(self.graph.entry_nodes) + self._triggered_by(updated)
        next_nodes = self.graph.sort_nodes(planned)
        await self._save(
            run,
            step=step,
            source=CheckpointSource.INPUT,
            next_nodes=next_nodes,
            updated=updated,
        )
        logger.info(f"📥 Input applied at step {step}, entry: {next_nodes}")

    async def _apply_decision(
        self, run: _ThreadRun, decision: ResumeDecision
    ) -> list[_Task] | None:
        """Returns the approved task set, or None when the loop should plan normally."""
        resolution = await self.interrupts.resolve(
            run.thread_id, decision, self.graph, latest=run.checkpoint
        )
        interrupt = resolution.interrupt
        if resolution.already_applied:
            await self.interrupts.clear(run.thread_id)
            return None

        logger.info(
            f"🔄 Resuming {interrupt.interrupt_id} with '{decision.action}'",
            extra={"event": "interrupt_resolved"},
        )
        await run.emitter.emit(
            EventType.RUN_RESUMED,
            step=interrupt.step,
            data={"interrupt_id": interrupt.interrupt_id, "action": decision.action.value},
        )

        if resolution.action == ResumeAction.REJECT:
            # The planned tasks never run; the fallback becomes the next active set
            await self._save(
                run,
                step=run.next_step,
                source=CheckpointSource.UPDATE,
                next_nodes=resolution.fallback_nodes,
                updated=set(),
                metadata={
                    "interrupt_id": interrupt.interrupt_id,
                    "resume": decision.action.value,
                    "rejected": [t.node_id for t in interrupt.pending_tasks],
                },
            )
            await self.interrupts.clear(run.thread_id)
            return None

        run.resumed_interrupt_id = interrupt.interrupt_id
        return [
            _Task(
                node_id=task.node_id,
                order=self._order[task.node_id],
                inputs=dict(task.inputs),
                guarded=task.guarded,
            )
            for task in resolution.tasks
        ]

    async def _loop(self, run: _ThreadRun, approved: list[_Task] | None) -> RunResult:
        thread_id = run.thread_id
        run.start_step = run.next_step

        while True:
            step = run.next_step
            set_trace_context(step=step)

            if approved is not None:
                tasks, approved = approved, None
            else:
                if thread_id in self._cancel_requested:
                    self._cancel_requested.discard(thread_id)
                    logger.info(
                        f"⏹ Cancelled before step {step}", extra={"event": "run_cancelled"}
                    )
                    await run.emitter.emit(EventType.RUN_CANCELLED, step=step)
                    return self._result(run, RunStatus.CANCELLED)

                active = self.graph.sort_nodes(run.checkpoint.next_nodes)
                if not active:
                    logger.info(
                        f"✓ Run complete after {run.steps_executed} steps",
                        extra={"event": "run_completed"},
                    )
                    await run.emitter.emit(
                        EventType.RUN_COMPLETED,
                        step=run.checkpoint.step,
                        data={"values": run.channels.values()},
                    )
                    return self._result(run, RunStatus.COMPLETED)

                if step - run.start_step >= run.config.recursion_limit:
                    raise RecursionLimitExceeded(
                        thread_id=thread_id,
                        step=step,
                        recursion_limit=run.config.recursion_limit,
                        checkpoint_id=run.checkpoint.checkpoint_id,
                    )

                tasks = self._plan(run, active)
                if any(task.guarded for task in tasks):
                    return await self._pause(run, step, tasks)

            outcome = await self._run_step(run, step, tasks)
            if outcome is not None:
                return outcome

            if run.resumed_interrupt_id is not None:
                run.resumed_interrupt_id = None
                await self.interrupts.clear(thread_id)

            if self.checkpoint_config.should_prune(run.steps_executed):
                await self._prune(thread_id)

    def _plan(self, run: _ThreadRun, active: list[str]) -> list[_Task]:
        """Capture every task's read snapshot before anything runs."""
        tasks = []
        for node_id in active:
            spec = self.graph.get_node(node_id)
            tasks.append(
                _Task(
                    node_id=node_id,
                    order=self._order[node_id],
                    inputs=dict(run.channels.read(spec.reads)),
                    guarded=node_id in run.interrupt_before,
                )
            )
        return tasks

    async def _pause(self, run: _ThreadRun, step: int, tasks: list[_Task]) -> RunResult:
        interrupt = await self.interrupts.pause(
            run.thread_id,
            step,
            pending_tasks=[
                PendingTask(node_id=t.node_id, step=step, inputs=t.inputs, guarded=t.guarded)
                for t in tasks
            ],
            checkpoint_id=run.checkpoint.checkpoint_id,
        )
        await run.emitter.emit(EventType.RUN_PAUSED, step=step, data=interrupt.to_display())
        return self._result(run, RunStatus.PAUSED, interrupt=interrupt)

    async def _run_step(self, run: _ThreadRun, step: int, tasks: list[_Task]) -> RunResult | None:
        """Execute, apply, route and persist one step. Returns a result only when the run stops."""
        node_ids = [t.node_id for t in tasks]
        logger.info(f"▶ Step {step}: {node_ids}", extra={"event": "step_started"})
        await run.emitter.emit(EventType.STEP_STARTED, step=step, data={"tasks": node_ids})

        outcomes = await self._execute_tasks(run, step, tasks)
        await run.emitter.drain()

        failures = [o for o in outcomes if o.failed]
        step_errors = [self._task_error(o) for o in failures]
        for outcome, task_error in zip(failures, step_errors, strict=True):
            logger.warning(
                f"✗ Task '{task_error.node_id}' failed after {task_error.attempts} attempt(s): "
                f"{task_error.error}",
                extra={"event": "task_failed", "node_id": task_error.node_id},
            )
            await run.emitter.emit(
                EventType.TASK_FAILED,
                step=step,
                node_id=outcome.task.node_id,
                data=task_error.model_dump(),
            )

        if failures:
            policy = self._strictest_policy(run, failures)
            if policy == NodeErrorPolicy.FAIL_RUN:
                first = failures[0]
                raise NodeExecutionError(
                    f"Node '{first.task.node_id}' failed at step {step}: {first.error}",
                    node_id=first.task.node_id,
                    thread_id=run.thread_id,
                    step=step,
                    failures=step_errors,
                ) from first.error
            if policy == NodeErrorPolicy.ABORT_STEP:
                run.task_errors.extend(step_errors)
                logger.warning(
                    f"Step {step} discarded, {len(failures)} task(s) failed",
                    extra={"event": "step_aborted"},
                )
                return self._result(
                    run,
                    RunStatus.PARTIAL_FAILURE,
                    error=f"Step {step} aborted: {[e.node_id for e in step_errors]} failed",
                )
            logger.warning(
                f"Skipping writes of {[e.node_id for e in step_errors]} at step {step}",
                extra={"event": "writes_skipped"},
            )

        succeeded = [o for o in outcomes if not o.failed]
        for outcome in succeeded:
            for channel, value in outcome.writes:
                run.channels.propose(channel, value, order=outcome.task.order)

        try:
            updated = run.channels.commit(step)
        except StepGraphError as e:
            e.step = step
            raise

        post_state = run.channels.read()
        routed: list[str] = []
        for outcome in succeeded:
            routed.extend(self.router.route(outcome.task.node_id, post_state))
        next_nodes = self.graph.sort_nodes(routed + self._triggered_by(updated))

        await self._save(
            run,
            step=step,
            source=CheckpointSource.LOOP,
            next_nodes=next_nodes,
            updated=updated,
            tasks=[o.task.node_id for o in succeeded],
            task_errors=step_errors,
            metadata=(
                {"interrupt_id": run.resumed_interrupt_id} if run.resumed_interrupt_id else None
            ),
        )
        run.steps_executed += 1
        run.path.append(node_ids)
        run.task_errors.extend(step_errors)

        logger.info(
            f"✓ Step {step} committed: updated {sorted(updated)}, next {next_nodes}",
            extra={"event": "step_completed", "checkpoint_id": run.checkpoint.checkpoint_id},
        )
        await run.emitter.emit(
            EventType.STEP_COMPLETED,
            step=step,
            data={"values": run.channels.values(), "next_nodes": next_nodes},
        )
        post_values = run.channels.values()
        await run.emitter.emit(
            EventType.CHANNELS_UPDATED,
            step=step,
            data={"updates": {name: post_values[name] for name in sorted(updated)}},
        )
        return None

    async def _execute_tasks(
        self, run: _ThreadRun, step: int, tasks: list[_Task]
    ) -> list[_TaskOutcome]:
        """Run all tasks of a step concurrently; outcomes come back in task order."""
        semaphore = (
            asyncio.Semaphore(run.config.max_concurrency) if run.config.max_concurrency else None
        )
        return list(
            await asyncio.gather(*(self._run_task(run, step, task, semaphore) for task in tasks))
        )

    async def _run_task(
        self,
        run: _ThreadRun,
        step: int,
        task: _Task,
        semaphore: asyncio.Semaphore | None,
    ) -> _TaskOutcome:
        spec = self.graph.get_node(task.node_id)
        node = self._node_registry[task.node_id]
        set_trace_context(node_id=task.node_id)

        def emit(node_id: str, chunk: Any) -> None:
            run.emitter.message(step, node_id, chunk)

        last_error: Exception | None = None
        attempts = spec.max_retries + 1
        async with semaphore or nullcontext():
            for attempt in range(attempts):
                ctx = NodeContext(
                    node_id=task.node_id,
                    thread_id=run.thread_id,
                    step=step,
                    inputs=MappingProxyType(copy.deepcopy(task.inputs)),
                    attempt=attempt,
                    emitter=emit,
                )

                validate = getattr(node, "validate_input", None)
                try:
                    problems = validate(ctx) if validate is not None else []
                except Exception as e:
                    problems = [f"validate_input raised {type(e).__name__}: {e}"]
                if problems:
                    error = NodeExecutionError(
                        f"Invalid inputs: {problems}", node_id=task.node_id, step=step
                    )
                    return _TaskOutcome(task=task, error=error, attempts=attempt + 1)

                try:
                    result = await node.execute(ctx)
                    if not isinstance(result, NodeResult):
                        raise NodeExecutionError(
                            f"Node returned {type(result).__name__}, expected NodeResult",
                            node_id=task.node_id,
                            step=step,
                        )
                    writes = result.write_pairs() if result.success else []
                except Exception as e:
                    last_error = e
                else:
                    if result.success:
                        undeclared = sorted({ch for ch, _ in writes if ch not in spec.writes})
                        if undeclared:
                            error = InvalidWriteError(
                                f"Node '{task.node_id}' wrote undeclared channels {undeclared}",
                                node_id=task.node_id,
                                step=step,
                            )
                            return _TaskOutcome(task=task, error=error, attempts=attempt + 1)
                        logger.debug(
                            f"Task '{task.node_id}' done in {result.latency_ms}ms",
                            extra={"event": "task_completed", "latency_ms": result.latency_ms},
                        )
                        return _TaskOutcome(
                            task=task, result=result, writes=writes, attempts=attempt + 1
                        )
                    last_error = NodeExecutionError(
                        result.error or "Node reported failure", node_id=task.node_id, step=step
                    )

                if attempt + 1 < attempts:
                    logger.warning(
                        f"↻ Retrying '{task.node_id}' "
                        f"({attempt + 1}/{spec.max_retries}): {last_error}"
                    )

        return _TaskOutcome(task=task, error=last_error, attempts=attempts)

    # === HELPERS ===

    def _channels_from(self, checkpoint: Checkpoint | None) -> ChannelStore:
        channels = ChannelStore(self.graph.channels)
        if checkpoint is not None:
            channels.restore(checkpoint.channel_values, checkpoint.channel_versions)
        return channels

    def _check_channels(self, channels: ChannelStore, values: Mapping[str, Any]) -> None:
        unknown = sorted(name for name in values if name not in channels)
        if unknown:
            raise ValueError(f"Unknown channels in state update: {unknown}")

    def _triggered_by(self, updated: set[str]) -> list[str]:
        """Nodes activated by a version change of a channel they trigger on."""
        return [node.id for node in self.graph.nodes if updated.intersection(node.triggers)]

    def _strictest_policy(self, run: _ThreadRun, failures: list[_TaskOutcome]) -> NodeErrorPolicy:
        policies = [
            self.graph.get_node(o.task.node_id).error_policy or run.config.node_error_policy
            for o in failures
        ]
        return max(policies, key=lambda p: p.severity)

    @staticmethod
    def _task_error(outcome: _TaskOutcome) -> TaskError:
        return TaskError(
            node_id=outcome.task.node_id,
            error=str(outcome.error),
            error_type=type(outcome.error).__name__,
            attempts=outcome.attempts,
        )

    async def _save(
        self,
        run: _ThreadRun,
        step: int,
        source: CheckpointSource,
        next_nodes: list[str],
        updated: set[str],
        tasks: list[str] | None = None,
        task_errors: list[TaskError] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Checkpoint:
        checkpoint = Checkpoint.create(
            thread_id=run.thread_id,
            step=step,
            channel_values=run.channels.values(),
            channel_versions=run.channels.versions(),
            next_nodes=next_nodes,
            source=source,
            parent_checkpoint_id=run.checkpoint.checkpoint_id if run.checkpoint else None,
            updated_channels=sorted(updated),
            tasks=tasks,
            task_errors=task_errors,
            metadata={"run_id": run.run_id, **(metadata or {})},
        )
        await self._persist(run.thread_id, checkpoint)
        run.checkpoint = checkpoint
        return checkpoint

    async def _persist(self, thread_id: str, checkpoint: Checkpoint) -> None:
        try:
            await self.store.save(thread_id, checkpoint)
        except Exception as e:
            raise CheckpointWriteFailure(
                f"Could not persist checkpoint for step {checkpoint.step}: {e}",
                thread_id=thread_id,
                step=checkpoint.step,
                details={"checkpoint_id": checkpoint.checkpoint_id},
            ) from e

    async def _prune(self, thread_id: str) -> None:
        max_age_days = self.checkpoint_config.max_age_days
        try:
            removed = await self.store.prune(thread_id, max_age_days)
        except OSError as e:
            logger.warning(f"Checkpoint pruning failed for '{thread_id}': {e}")
            return
        if removed:
            logger.info(f"🧹 Pruned {removed} checkpoints older than {max_age_days} days")

    def _result(
        self,
        run: _ThreadRun,
        status: RunStatus,
        interrupt: Interrupt | None = None,
        error: str | None = None,
    ) -> RunResult:
        checkpoint = run.checkpoint
        return RunResult(
            status=status,
            thread_id=run.thread_id,
            state=copy.deepcopy(checkpoint.channel_values) if checkpoint else {},
            step=checkpoint.step if checkpoint else None,
            checkpoint_id=checkpoint.checkpoint_id if checkpoint else None,
            next_nodes=list(checkpoint.next_nodes) if checkpoint else [],
            interrupt=interrupt,
            task_errors=list(run.task_errors),
            steps_executed=run.steps_executed,
            path=list(run.path),
            error=error,
        )
