"""
flowgraph - Async flow-graph execution engine.

Nodes wrap Python callables; data flows along edges into path-addressable
JSON documents, and port-driven nodes route control flow.
"""

from flowgraph.builder import GraphExecutionResult, NodeGraphBuilder
from flowgraph.config import FlowConfig
from flowgraph.graph import (
    MISSING,
    BindingError,
    CoercionError,
    Graph,
    GraphExecutionContext,
    GraphStructureError,
    Node,
    NodeContext,
    PathDocument,
    PathMapEntry,
    UnknownPortError,
)
from flowgraph.runner import (
    FunctionNotFoundError,
    FunctionRegistry,
    flow_node,
    flow_ports,
    get_default_registry,
)
from flowgraph.runtime import EventBus, EventType, FlowEvent
from flowgraph.storage import deserialize_flow, serialize_flow, validate_flow

__version__ = "0.1.0"

__all__ = [
    "MISSING",
    "BindingError",
    "CoercionError",
    "EventBus",
    "EventType",
    "FlowConfig",
    "FlowEvent",
    "FunctionNotFoundError",
    "FunctionRegistry",
    "Graph",
    "GraphExecutionContext",
    "GraphExecutionResult",
    "GraphStructureError",
    "Node",
    "NodeContext",
    "NodeGraphBuilder",
    "PathDocument",
    "PathMapEntry",
    "UnknownPortError",
    "deserialize_flow",
    "flow_node",
    "flow_ports",
    "get_default_registry",
    "serialize_flow",
    "validate_flow",
]
