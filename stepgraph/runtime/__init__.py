"""Runtime plumbing: step events and their subscribers."""

from stepgraph.runtime.event_bus import EventBus, EventType, StepEvent, StreamMode

__all__ = ["EventBus", "EventType", "StepEvent", "StreamMode"]
