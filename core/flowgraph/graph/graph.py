"""
Graph - A keyed collection of nodes and the entry point for running them.

A run:
1. Resets every node and attaches the run's GraphExecutionContext
2. Finds the entry nodes (function key or callable name equals the start marker)
3. Executes all entry nodes concurrently and waits for any port executions
   they scheduled in the background
4. Returns the shared context document

Graphs can be run repeatedly; every run starts from a clean slate.
"""

import asyncio
import logging
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any

from flowgraph.config import get_start_marker
from flowgraph.graph.binding import JinjaExpressionEvaluator, has_template_markers
from flowgraph.graph.context import WORKFLOW_PARAMETERS_PATH, GraphExecutionContext
from flowgraph.graph.document import PATH_SEPARATOR, PathDocument, split_path
from flowgraph.graph.node import Node, UnknownPortError
from flowgraph.observability import trace_scope

if TYPE_CHECKING:
    from flowgraph.runner.function_registry import FunctionRegistry

logger = logging.getLogger(__name__)

__all__ = ["Graph", "GraphExecutionContext", "GraphStructureError"]

_PARAMETERS_PREFIX = WORKFLOW_PARAMETERS_PATH + PATH_SEPARATOR

# Nodes backed by this key read the workflow parameter named by their "name" input
GET_INPUT_KEY = "get_input"


def _get_input_names(node: Node) -> set[str]:
    names = set()
    for entry in node.input_map:
        if entry.to != "name":
            continue
        literal = entry.from_.strip().strip('"')
        if literal and not has_template_markers(literal):
            names.add(literal)
    return names


class GraphStructureError(ValueError):
    """Invalid graph topology: unknown node ids, duplicate ids, undeclared ports."""


class Graph:
    """
    A runnable graph of nodes.

    Example:
        graph = Graph()
        graph.add_node(Node(start, id="start"))
        graph.add_node(Node(add, id="add", input_map=[...], output_map=[...]))
        graph.connect("start", "add")

        shared = await graph.run(GraphExecutionContext(parameters={"x": "5"}))
    """

    def __init__(
        self,
        nodes: Iterable[Node] | None = None,
        start_marker: str | None = None,
        name: str = "",
    ):
        self.nodes: dict[str, Node] = {}
        self.start_marker = start_marker or get_start_marker()
        self.name = name
        self.metadata: dict[str, Any] = {}
        self.last_context: GraphExecutionContext | None = None

        for node in nodes or []:
            self.add_node(node)

    # === STRUCTURE ===

    def add_node(self, node: Node) -> Node:
        """
        Add a node.

        Raises:
            GraphStructureError: If a node with the same id already exists
        """
        if node.id in self.nodes:
            raise GraphStructureError(f"Duplicate node id '{node.id}'")
        self.nodes[node.id] = node
        return node

    def get_node(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def connect(self, source_id: str, target_id: str, port: str | None = None) -> None:
        """
        Add an edge, optionally behind a named output port of the source.

        Raises:
            GraphStructureError: If either node is unknown or the port is not declared
        """
        source = self.nodes.get(source_id)
        if source is None:
            raise GraphStructureError(f"Unknown source node '{source_id}'")
        target = self.nodes.get(target_id)
        if target is None:
            raise GraphStructureError(f"Unknown target node '{target_id}'")

        try:
            source.add_output_connection(port, target)
        except UnknownPortError as e:
            raise GraphStructureError(str(e)) from e
        target.add_input_node(source)

    def is_entry(self, node: Node) -> bool:
        marker = self.start_marker.lower()
        return node.function_key.lower() == marker or node.name.lower() == marker

    @property
    def entry_nodes(self) -> list[Node]:
        return [node for node in self.nodes.values() if self.is_entry(node)]

    @property
    def failed_nodes(self) -> list[Node]:
        return [node for node in self.nodes.values() if node.has_error]

    # === EXECUTION ===

    async def run(self, context: GraphExecutionContext | None = None) -> PathDocument:
        """
        Execute the graph from its entry nodes.

        Args:
            context: Run inputs and services; a default context is created if omitted

        Returns:
            The run's shared context document
        """
        context = context or GraphExecutionContext()
        self.last_context = context

        for node in self.nodes.values():
            node.reset(context)

        entries = self.entry_nodes
        bus = context.event_bus

        with trace_scope(run_id=context.run_id):
            if not entries:
                logger.warning(
                    f"Graph has no entry nodes (start marker '{self.start_marker}'); nothing to run"
                )
            else:
                logger.info(f"Running graph with {len(entries)} entry node(s)")

            if bus is not None:
                await bus.emit_run_started(
                    context.run_id, [n.id for n in entries], dict(context.parameters)
                )

            if entries:
                await asyncio.gather(*(node.execute_node() for node in entries))
            await context.drain()

            failed = [node.id for node in self.failed_nodes]
            if failed:
                logger.warning(f"Run finished with {len(failed)} failed node(s): {failed}")
            else:
                logger.info("Run finished")

            if bus is not None:
                await bus.emit_run_completed(context.run_id, failed)

        return context.shared_context

    # === INTROSPECTION ===

    def discover_inputs(self) -> list[str]:
        """
        Names of workflow parameters referenced by any node mapping.

        Both plain paths (``workflow.parameters.name``) and template
        references (``{{ workflow.parameters.name | upper }}``) count.
        """
        evaluator = JinjaExpressionEvaluator()
        found: set[str] = set()

        for node in self.nodes.values():
            if node.function_key == GET_INPUT_KEY:
                found.update(_get_input_names(node))

            expressions = [entry.from_ for entry in node.input_map]
            for entries in node.dictionary_parameter_mappings.values():
                expressions.extend(entry.from_ for entry in entries)

            for expression in expressions:
                if has_template_markers(expression):
                    paths = evaluator.referenced_paths(expression)
                else:
                    paths = {expression.strip()}
                for path in paths:
                    if path.startswith(_PARAMETERS_PREFIX):
                        segments = split_path(path[len(_PARAMETERS_PREFIX) :])
                        if segments:
                            found.add(segments[0])

        return sorted(found)

    # === PERSISTENCE ===

    def to_json(self, flow_name: str | None = None, indent: int | None = 2) -> str:
        from flowgraph.storage.flow_serializer import serialize_flow

        return serialize_flow(
            list(self.nodes.values()),
            flow_name=flow_name or self.name or None,
            metadata=self.metadata,
            indent=indent,
        )

    @classmethod
    def from_json(
        cls,
        text: str,
        registry: "FunctionRegistry | None" = None,
        start_marker: str | None = None,
    ) -> "Graph":
        from flowgraph.storage.flow_serializer import deserialize_flow

        nodes, meta = deserialize_flow(text, registry=registry)
        graph = cls(nodes, start_marker=start_marker, name=meta.flow_name or "")
        graph.metadata = dict(meta.metadata)
        return graph

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes.values())

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes
