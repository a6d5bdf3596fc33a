"""
Built-in reducers.

A reducer merges one proposed write into a channel's current value:
``reducer(current, write) -> new_value``. The channel store folds every write
of a step through it in node declaration order, so a reducer only has to be
a pure binary function. Reducers must not mutate ``current``.
"""

from collections.abc import Callable
from typing import Any

Reducer = Callable[[Any, Any], Any]


def overwrite(current: Any, write: Any) -> Any:
    """Last writer wins (last in node declaration order)."""
    return write


def append(current: Any, write: Any) -> list[Any]:
    """Append-only sequence. A list/tuple write extends, anything else appends."""
    base = list(current) if current is not None else []
    if isinstance(write, (list, tuple)):
        return base + list(write)
    return base + [write]


def union(current: Any, write: Any) -> list[Any]:
    """
    Set union kept as a first-seen ordered list.

    Stored as a list so checkpoints stay JSON-serialisable and the order is
    reproducible across runs.
    """
    result = list(current) if current is not None else []
    items = write if isinstance(write, (list, tuple, set, frozenset)) else [write]
    if isinstance(items, (set, frozenset)):
        items = sorted(items, key=repr)
    for item in items:
        if item not in result:
            result.append(item)
    return result


def add(current: Any, write: Any) -> Any:
    """Numeric accumulation."""
    if current is None:
        return write
    return current + write


BUILTIN_REDUCERS: dict[str, Reducer] = {
    "overwrite": overwrite,
    "append": append,
    "union": union,
    "add": add,
}

# Default value of a channel that declares no explicit default
REDUCER_DEFAULTS: dict[str, Callable[[], Any]] = {
    "append": list,
    "union": list,
}


def resolve_reducer(reducer: str | Reducer | None) -> Reducer:
    """Return the callable for a reducer name, a custom callable, or None (overwrite)."""
    if reducer is None:
        return overwrite
    if callable(reducer):
        return reducer
    try:
        return BUILTIN_REDUCERS[reducer]
    except KeyError:
        raise ValueError(
            f"Unknown reducer '{reducer}'. Valid: {sorted(BUILTIN_REDUCERS)}"
        ) from None
