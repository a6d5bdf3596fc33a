"""
Checkpoint Store - Durable checkpoint persistence per thread.

Any backend implementing ``CheckpointStore`` works with the scheduler.
``save`` must not return before the checkpoint is durable: the scheduler
treats a step as committed only once ``save`` has returned.
"""

import asyncio
import logging
import weakref
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path

from stepgraph.schemas.checkpoint import Checkpoint, CheckpointIndex, CheckpointSummary
from stepgraph.schemas.interrupt import Interrupt
from stepgraph.utils.io import atomic_write

logger = logging.getLogger(__name__)


class CheckpointStore(ABC):
    """Persistence backend contract."""

    @abstractmethod
    async def save(self, thread_id: str, checkpoint: Checkpoint) -> None:
        """Durably store a checkpoint. Rejects a second checkpoint for the same step."""

    @abstractmethod
    async def load_latest(self, thread_id: str) -> Checkpoint | None:
        """Return the newest checkpoint of a thread, or None for a new thread."""

    @abstractmethod
    async def load(self, thread_id: str, step: int) -> Checkpoint | None:
        """Return the checkpoint of a specific step, or None."""

    @abstractmethod
    async def list_checkpoints(self, thread_id: str) -> list[CheckpointSummary]:
        """Checkpoint summaries of a thread, oldest first."""

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> bool:
        """Remove every checkpoint and interrupt of a thread."""

    @abstractmethod
    async def prune(self, thread_id: str, max_age_days: int) -> int:
        """Delete checkpoints older than ``max_age_days``, never the latest one."""

    @abstractmethod
    async def save_interrupt(self, thread_id: str, interrupt: Interrupt) -> None:
        """Durably store the thread's outstanding interrupt."""

    @abstractmethod
    async def load_interrupt(self, thread_id: str) -> Interrupt | None:
        """Return the thread's outstanding interrupt, if any."""

    @abstractmethod
    async def delete_interrupt(self, thread_id: str) -> bool:
        """Remove the thread's outstanding interrupt."""


class InMemoryCheckpointStore(CheckpointStore):
    """
    Process-local store for tests and short-lived runs.

    Checkpoints are deep-copied on the way in and out so callers can never
    alter stored history.
    """

    def __init__(self) -> None:
        self._checkpoints: dict[str, list[Checkpoint]] = {}
        self._interrupts: dict[str, Interrupt] = {}

    async def save(self, thread_id: str, checkpoint: Checkpoint) -> None:
        history = self._checkpoints.setdefault(thread_id, [])
        if any(cp.step == checkpoint.step for cp in history):
            raise ValueError(
                f"Thread '{thread_id}' already has a checkpoint for step {checkpoint.step}"
            )
        history.append(checkpoint.model_copy(deep=True))

    async def load_latest(self, thread_id: str) -> Checkpoint | None:
        history = self._checkpoints.get(thread_id)
        if not history:
            return None
        return history[-1].model_copy(deep=True)

    async def load(self, thread_id: str, step: int) -> Checkpoint | None:
        for checkpoint in self._checkpoints.get(thread_id, []):
            if checkpoint.step == step:
                return checkpoint.model_copy(deep=True)
        return None

    async def list_checkpoints(self, thread_id: str) -> list[CheckpointSummary]:
        history = self._checkpoints.get(thread_id, [])
        return [CheckpointSummary.from_checkpoint(cp) for cp in history]

    async def delete_thread(self, thread_id: str) -> bool:
        self._interrupts.pop(thread_id, None)
        return self._checkpoints.pop(thread_id, None) is not None

    async def prune(self, thread_id: str, max_age_days: int) -> int:
        history = self._checkpoints.get(thread_id, [])
        if len(history) <= 1:
            return 0
        cutoff = datetime.now() - timedelta(days=max_age_days)
        keep = [cp for cp in history[:-1] if datetime.fromisoformat(cp.created_at) >= cutoff]
        keep.append(history[-1])
        deleted = len(history) - len(keep)
        self._checkpoints[thread_id] = keep
        return deleted

    async def save_interrupt(self, thread_id: str, interrupt: Interrupt) -> None:
        self._interrupts[thread_id] = interrupt.model_copy(deep=True)

    async def load_interrupt(self, thread_id: str) -> Interrupt | None:
        interrupt = self._interrupts.get(thread_id)
        return interrupt.model_copy(deep=True) if interrupt else None

    async def delete_interrupt(self, thread_id: str) -> bool:
        return self._interrupts.pop(thread_id, None) is not None

    def threads(self) -> list[str]:
        return sorted(self._checkpoints)


class FileCheckpointStore(CheckpointStore):
    """
    Stores checkpoints as JSON files with atomic writes.

    Directory structure:
        {base_path}/
            {thread_id}/
                interrupt.json              # Outstanding interrupt, if any
                checkpoints/
                    latest.json             # Pointer to the newest checkpoint
                    index.json              # Checkpoint manifest
                    cp_{source}_s{step}_{uuid8}.json
    """

    def __init__(self, base_path: str | Path):
        """
        Initialize checkpoint store.

        Args:
            base_path: Root directory holding one sub-directory per thread
        """
        self.base_path = Path(base_path)
        self._index_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, thread_id: str) -> asyncio.Lock:
        # One lock per thread so different threads never contend
        lock = self._index_locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._index_locks[thread_id] = lock
        return lock

    # === PATHS ===

    def _validate_thread_id(self, thread_id: str) -> None:
        """
        Validate a thread ID before using it as a directory name.

        Raises:
            ValueError: If the ID is empty or could escape the base directory
        """
        if not thread_id or thread_id.strip() == "":
            raise ValueError("Thread ID cannot be empty")
        if "/" in thread_id or "\\" in thread_id:
            raise ValueError(f"Invalid thread ID: path separators not allowed in '{thread_id}'")
        if ".." in thread_id or thread_id.startswith("."):
            raise ValueError(f"Invalid thread ID: path traversal detected in '{thread_id}'")
        if "\x00" in thread_id:
            raise ValueError("Invalid thread ID: null bytes not allowed")
        dangerous_chars = {"<", ">", "|", "&", "$", "`", "'", '"', ":"}
        if any(char in thread_id for char in dangerous_chars):
            raise ValueError(f"Invalid thread ID: contains dangerous characters in '{thread_id}'")

    def thread_dir(self, thread_id: str) -> Path:
        self._validate_thread_id(thread_id)
        return self.base_path / thread_id

    def _checkpoints_dir(self, thread_id: str) -> Path:
        return self.thread_dir(thread_id) / "checkpoints"

    def _index_path(self, thread_id: str) -> Path:
        return self._checkpoints_dir(thread_id) / "index.json"

    def _interrupt_path(self, thread_id: str) -> Path:
        return self.thread_dir(thread_id) / "interrupt.json"

    # === CHECKPOINTS ===

    async def save(self, thread_id: str, checkpoint: Checkpoint) -> None:
        """
        Atomically save a checkpoint, move the latest pointer, then update the index.

        The checkpoint counts as saved once ``latest.json`` names it. A crash
        before that leaves an orphan file and the previous latest checkpoint
        intact; a crash after it leaves the index one entry short, which the
        next read fills in from the pointer.

        Raises:
            ValueError: If the step already has a checkpoint
            OSError: If a file write fails
        """
        checkpoints_dir = self._checkpoints_dir(thread_id)

        async with self._lock_for(thread_id):
            index = await self._load_manifest(thread_id)
            if index.get_by_step(checkpoint.step):
                raise ValueError(
                    f"Thread '{thread_id}' already has a checkpoint for step {checkpoint.step}"
                )

            def _write() -> None:
                checkpoints_dir.mkdir(parents=True, exist_ok=True)
                checkpoint_path = checkpoints_dir / f"{checkpoint.checkpoint_id}.json"
                with atomic_write(checkpoint_path) as f:
                    f.write(checkpoint.model_dump_json(indent=2))
                with atomic_write(checkpoints_dir / "latest.json") as f:
                    f.write(CheckpointSummary.from_checkpoint(checkpoint).model_dump_json())

            await asyncio.to_thread(_write)

            index.add_checkpoint(checkpoint)
            await self._write_index(thread_id, index)

        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id}")

    async def load_latest(self, thread_id: str) -> Checkpoint | None:
        """Read the latest pointer and its checkpoint; the index is not touched."""
        pointer = await self._load_pointer(thread_id)
        if pointer is None:
            return None
        return await self._read_checkpoint(thread_id, pointer.checkpoint_id)

    async def load(self, thread_id: str, step: int) -> Checkpoint | None:
        index = await self._load_manifest(thread_id)
        summary = index.get_by_step(step)
        if summary is None:
            return None
        return await self._read_checkpoint(thread_id, summary.checkpoint_id)

    async def list_checkpoints(self, thread_id: str) -> list[CheckpointSummary]:
        index = await self._load_manifest(thread_id)
        return list(index.checkpoints)

    async def delete_thread(self, thread_id: str) -> bool:
        thread_dir = self.thread_dir(thread_id)

        def _delete() -> bool:
            if not thread_dir.exists():
                return False
            for path in sorted(thread_dir.rglob("*"), reverse=True):
                if path.is_dir():
                    path.rmdir()
                else:
                    path.unlink()
            thread_dir.rmdir()
            return True

        async with self._lock_for(thread_id):
            deleted = await asyncio.to_thread(_delete)
        if deleted:
            logger.info(f"Deleted thread {thread_id}")
        return deleted

    async def prune(self, thread_id: str, max_age_days: int) -> int:
        """
        Prune checkpoints older than max_age_days.

        Returns:
            Number of checkpoints deleted
        """
        checkpoints_dir = self._checkpoints_dir(thread_id)
        cutoff = datetime.now() - timedelta(days=max_age_days)

        async with self._lock_for(thread_id):
            index = await self._load_manifest(thread_id)
            if len(index.checkpoints) <= 1:
                return 0

            old = []
            for cp in index.checkpoints[:-1]:
                try:
                    if datetime.fromisoformat(cp.created_at) < cutoff:
                        old.append(cp.checkpoint_id)
                except ValueError as e:
                    logger.warning(f"Failed to parse timestamp for {cp.checkpoint_id}: {e}")

            if not old:
                return 0

            # Drop from the index first so a crash never leaves dangling entries
            for checkpoint_id in old:
                index.remove_checkpoint(checkpoint_id)
            await self._write_index(thread_id, index)

            def _unlink() -> None:
                for checkpoint_id in old:
                    (checkpoints_dir / f"{checkpoint_id}.json").unlink(missing_ok=True)

            await asyncio.to_thread(_unlink)

        logger.info(f"Pruned {len(old)} checkpoints older than {max_age_days} days")
        return len(old)

    def threads(self) -> list[str]:
        """Thread IDs with at least one checkpoint directory."""
        if not self.base_path.exists():
            return []
        return sorted(
            p.name for p in self.base_path.iterdir() if (p / "checkpoints" / "latest.json").exists()
        )

    # === INTERRUPTS ===

    async def save_interrupt(self, thread_id: str, interrupt: Interrupt) -> None:
        path = self._interrupt_path(thread_id)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(path) as f:
                f.write(interrupt.model_dump_json(indent=2))

        await asyncio.to_thread(_write)

    async def load_interrupt(self, thread_id: str) -> Interrupt | None:
        path = self._interrupt_path(thread_id)

        def _read() -> Interrupt | None:
            if not path.exists():
                return None
            return Interrupt.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def delete_interrupt(self, thread_id: str) -> bool:
        path = self._interrupt_path(thread_id)

        def _delete() -> bool:
            if not path.exists():
                return False
            path.unlink()
            return True

        return await asyncio.to_thread(_delete)

    # === INTERNALS ===

    async def _read_checkpoint(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        checkpoint_path = self._checkpoints_dir(thread_id) / f"{checkpoint_id}.json"

        def _read() -> Checkpoint | None:
            if not checkpoint_path.exists():
                logger.warning(f"Checkpoint file not found: {checkpoint_path}")
                return None
            return Checkpoint.model_validate_json(checkpoint_path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def _load_pointer(self, thread_id: str) -> CheckpointSummary | None:
        pointer_path = self._checkpoints_dir(thread_id) / "latest.json"

        def _read() -> CheckpointSummary | None:
            if not pointer_path.exists():
                return None
            return CheckpointSummary.model_validate_json(pointer_path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def _load_manifest(self, thread_id: str) -> CheckpointIndex:
        """The index, completed with the latest pointer if a crash cut its update short."""
        index = await self._load_index(thread_id) or CheckpointIndex(thread_id=thread_id)
        pointer = await self._load_pointer(thread_id)
        if pointer is not None and index.get_checkpoint_summary(pointer.checkpoint_id) is None:
            index.add_summary(pointer)
        return index

    async def _load_index(self, thread_id: str) -> CheckpointIndex | None:
        index_path = self._index_path(thread_id)

        def _read() -> CheckpointIndex | None:
            if not index_path.exists():
                return None
            return CheckpointIndex.model_validate_json(index_path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def _write_index(self, thread_id: str, index: CheckpointIndex) -> None:
        """Write the index atomically. Call with the thread lock held."""
        index_path = self._index_path(thread_id)

        def _write() -> None:
            index_path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(index_path) as f:
                f.write(index.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
