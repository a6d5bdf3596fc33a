"""
Channel Store - Versioned named state slots.

Each channel has a name, a current value, a monotonic version and a reducer.
Nodes never touch channels directly: they get a read-only snapshot taken
before the step starts and return write proposals. The scheduler buffers the
proposals with ``propose()`` and applies them all at once in ``commit()``.
"""

import copy
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field

from stepgraph.errors import ReducerConflict
from stepgraph.graph.reducers import REDUCER_DEFAULTS, Reducer, resolve_reducer

logger = logging.getLogger(__name__)


class ChannelSpec(BaseModel):
    """
    Declaration of a channel at graph-definition time.

    Examples:
        ChannelSpec(name="messages", reducer="append")
        ChannelSpec(name="approved", reducer="overwrite", default=False)
        ChannelSpec(name="score", reducer=max)
    """

    name: str
    reducer: str | Reducer | None = Field(
        default=None,
        description="Built-in reducer name, custom callable, or None for overwrite",
    )
    default: Any = None
    description: str = ""

    model_config = {"extra": "allow", "arbitrary_types_allowed": True}

    @property
    def reducer_name(self) -> str:
        if self.reducer is None:
            return "overwrite"
        if isinstance(self.reducer, str):
            return self.reducer
        return getattr(self.reducer, "__name__", "custom")

    def initial_value(self) -> Any:
        if self.default is not None:
            return copy.deepcopy(self.default)
        if isinstance(self.reducer, str) and self.reducer in REDUCER_DEFAULTS:
            return REDUCER_DEFAULTS[self.reducer]()
        return None


@dataclass
class Channel:
    """A single versioned slot. Owned by the ChannelStore."""

    name: str
    reducer: Reducer
    value: Any = None
    version: int = 0


class ChannelStore:
    """
    Holds the channels of one thread and the write buffer of the in-flight step.

    Example:
        store = ChannelStore([ChannelSpec(name="log", reducer="append")])
        snapshot = store.read(["log"])
        store.propose("log", "a", order=0)
        store.propose("log", "b", order=1)
        changed = store.commit(step=0)   # {"log"}
    """

    def __init__(self, specs: Iterable[ChannelSpec]):
        self._channels: dict[str, Channel] = {}
        for spec in specs:
            self._channels[spec.name] = Channel(
                name=spec.name,
                reducer=resolve_reducer(spec.reducer),
                value=spec.initial_value(),
            )
        # (order, sequence, channel, value)
        self._pending: list[tuple[int, int, str, Any]] = []

    def __contains__(self, name: object) -> bool:
        return name in self._channels

    @property
    def names(self) -> list[str]:
        return list(self._channels)

    def read(self, channel_names: Iterable[str] | None = None) -> Mapping[str, Any]:
        """
        Take an immutable snapshot of the named channels (all if None).

        Values are deep-copied so a node mutating what it was given cannot
        leak into the store or into a sibling task's view.
        """
        names = self._channels.keys() if channel_names is None else channel_names
        snapshot = {}
        for name in names:
            if name not in self._channels:
                raise KeyError(f"Unknown channel '{name}'")
            snapshot[name] = copy.deepcopy(self._channels[name].value)
        return MappingProxyType(snapshot)

    def propose(self, channel_name: str, value: Any, order: int = 0) -> None:
        """
        Buffer a write for the in-flight step.

        Args:
            channel_name: Target channel
            value: Proposed value, merged by the channel's reducer at commit
            order: Declaration index of the writing node; fixes merge order
        """
        if channel_name not in self._channels:
            raise KeyError(f"Unknown channel '{channel_name}'")
        self._pending.append((order, len(self._pending), channel_name, value))

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def discard(self) -> None:
        """Drop every buffered write (step aborted)."""
        self._pending.clear()

    def commit(self, step: int | None = None) -> set[str]:
        """
        Apply the buffered writes and return the channels whose version changed.

        All new values are computed before any is assigned, so a failing
        reducer leaves every channel untouched.

        Raises:
            ReducerConflict: A reducer raised while merging
        """
        pending = sorted(self._pending, key=lambda p: (p[0], p[1]))
        self._pending.clear()

        writes_by_channel: dict[str, list[Any]] = {}
        for _, _, name, value in pending:
            writes_by_channel.setdefault(name, []).append(value)

        new_values: dict[str, Any] = {}
        for name in self._channels:
            if name not in writes_by_channel:
                continue
            channel = self._channels[name]
            value = copy.deepcopy(channel.value)
            for write in writes_by_channel[name]:
                try:
                    value = channel.reducer(value, write)
                except Exception as e:
                    raise ReducerConflict(name, e, step=step) from e
            new_values[name] = value

        changed: set[str] = set()
        for name, value in new_values.items():
            channel = self._channels[name]
            if _differs(channel.value, value):
                channel.value = value
                channel.version += 1
                changed.add(name)

        if changed:
            logger.debug(f"Committed step {step}: updated channels {sorted(changed)}")
        return changed

    def values(self) -> dict[str, Any]:
        return {name: copy.deepcopy(ch.value) for name, ch in self._channels.items()}

    def versions(self) -> dict[str, int]:
        return {name: ch.version for name, ch in self._channels.items()}

    def restore(self, values: Mapping[str, Any], versions: Mapping[str, int]) -> None:
        """Load channel values and versions from a checkpoint."""
        self._pending.clear()
        for name, channel in self._channels.items():
            if name in values:
                channel.value = copy.deepcopy(values[name])
            channel.version = versions.get(name, 0)
        unknown = set(values) - set(self._channels)
        if unknown:
            logger.warning(f"Checkpoint holds channels not in graph, ignoring: {sorted(unknown)}")


def _differs(old: Any, new: Any) -> bool:
    try:
        return bool(old != new)
    except Exception:
        # Values that cannot be compared are treated as changed
        return True
