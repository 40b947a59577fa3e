"""Programmatic graph construction."""

from flowgraph.builder.graph_builder import GraphExecutionResult, NodeBuilder, NodeGraphBuilder

__all__ = ["GraphExecutionResult", "NodeBuilder", "NodeGraphBuilder"]
