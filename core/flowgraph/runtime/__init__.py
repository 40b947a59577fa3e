"""Runtime notifications."""

from flowgraph.runtime.event_bus import EventBus, EventType, FlowEvent

__all__ = ["EventBus", "EventType", "FlowEvent"]
