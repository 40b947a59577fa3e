"""Graph structures: documents, nodes, binding and execution."""

from flowgraph.graph.binding import (
    BindingError,
    CoercionError,
    ExpressionEvaluator,
    JinjaExpressionEvaluator,
    ParameterBinder,
)
from flowgraph.graph.context import GraphExecutionContext
from flowgraph.graph.document import MISSING, PathDocument
from flowgraph.graph.graph import Graph, GraphStructureError
from flowgraph.graph.node import Node, NodeContext, NodeState, PathMapEntry, UnknownPortError

__all__ = [
    # Documents
    "MISSING",
    "PathDocument",
    # Binding
    "BindingError",
    "CoercionError",
    "ExpressionEvaluator",
    "JinjaExpressionEvaluator",
    "ParameterBinder",
    # Nodes
    "Node",
    "NodeContext",
    "NodeState",
    "PathMapEntry",
    "UnknownPortError",
    # Graph
    "Graph",
    "GraphExecutionContext",
    "GraphStructureError",
]
