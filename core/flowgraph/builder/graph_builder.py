"""
Graph Builder - Fluent API for assembling and running node graphs in code.

Example:
    builder = NodeGraphBuilder()
    (
        builder.add_node("start", start)
        .connect_to("add")
        .add_node("add", add)
        .map_input("a", "5")
        .map_input("b", "10")
        .auto_map_outputs()
    )
    result = await builder.execute()
    result.get_output("add", "result")  # 15
"""

from collections.abc import Callable
from typing import Any

from flowgraph.graph.binding import coerce_to_type
from flowgraph.graph.context import GraphExecutionContext
from flowgraph.graph.document import MISSING, PATH_SEPARATOR, PathDocument
from flowgraph.graph.graph import Graph, GraphStructureError
from flowgraph.graph.node import Node, PathMapEntry
from flowgraph.graph.shaping import return_members


class GraphExecutionResult:
    """Node results and shared context of a finished run."""

    def __init__(self, nodes: dict[str, Node], shared_context: PathDocument):
        self._nodes = nodes
        self.shared_context = shared_context

    def _node(self, name: str) -> Node:
        node = self._nodes.get(name)
        if node is None:
            raise KeyError(f"Node '{name}' not found")
        return node

    def get_node_result(self, name: str) -> PathDocument | None:
        return self._node(name).result

    def get_output(self, name: str, path: str, as_type: Any = None) -> Any:
        """
        Value at ``output.<path>`` of a node's result (None if absent).

        Args:
            name: Node id
            path: Path below ``output``
            as_type: Optional type to coerce the value to
        """
        result = self.get_node_result(name)
        if result is None:
            return None
        value = result.get(f"output{PATH_SEPARATOR}{path}")
        if value is MISSING:
            return None
        return coerce_to_type(value, as_type) if as_type is not None else value

    def get_output_object(self, name: str) -> Any:
        result = self.get_node_result(name)
        if result is None:
            return None
        return result.get("output", None)

    def has_error(self, name: str | None = None) -> bool:
        """Whether a node (or any node, if ``name`` is omitted) failed."""
        if name is not None:
            return self._node(name).has_error
        return any(node.has_error for node in self._nodes.values())

    @property
    def workflow_outputs(self) -> dict[str, Any]:
        outputs = self.shared_context.get("workflow.output", None)
        return dict(outputs) if isinstance(outputs, dict) else {}


class NodeBuilder:
    """Configures one node; chain back to the graph builder with ``build()``."""

    def __init__(self, graph_builder: "NodeGraphBuilder", node: Node):
        self._graph_builder = graph_builder
        self.node = node

    def map_input(self, parameter: str, expression: str) -> "NodeBuilder":
        """Bind ``parameter`` to a path (``input.value``), literal (``10``) or template."""
        self.node.input_map.append(PathMapEntry(expression, parameter))
        return self

    def map_output(self, member: str, output_name: str | None = None) -> "NodeBuilder":
        """Expose return member ``member`` as ``output.<output_name>``."""
        self.node.output_map.append(PathMapEntry(member, output_name or member))
        return self

    def auto_map_outputs(self) -> "NodeBuilder":
        """Map every member the callable's return annotation exposes."""
        for member in return_members(self.node.func):
            self.node.output_map.append(PathMapEntry(member, member))
        return self

    def map_dictionary(self, parameter: str, key: str, expression: str) -> "NodeBuilder":
        """Add one key of a dict-typed parameter."""
        self.node.dictionary_parameter_mappings.setdefault(parameter, []).append(
            PathMapEntry(expression, key)
        )
        return self

    def with_output_ports(self, *ports: str) -> "NodeBuilder":
        self.node.declared_output_ports = list(ports)
        return self

    def merge_output_with_input(self, merge: bool = True) -> "NodeBuilder":
        self.node.merge_output_with_input = merge
        return self

    def connect_to(self, target: str, port: str | None = None) -> "NodeBuilder":
        """Queue an edge from this node to ``target`` (resolved at build time)."""
        self._graph_builder.connect(self.node.id, target, port)
        return self

    def add_node(self, name: str, func: Callable[..., Any], **kwargs: Any) -> "NodeBuilder":
        return self._graph_builder.add_node(name, func, **kwargs)

    def build(self) -> "NodeGraphBuilder":
        return self._graph_builder


class NodeGraphBuilder:
    """
    Fluent graph assembly.

    Connections may name nodes that are added later; they are resolved
    when the graph is built or executed.
    """

    def __init__(self, start_marker: str | None = None):
        self._graph = Graph(start_marker=start_marker)
        self._pending_connections: list[tuple[str, str, str | None]] = []

    def add_node(self, name: str, func: Callable[..., Any], **kwargs: Any) -> NodeBuilder:
        """
        Add a node backed by ``func`` under id ``name``.

        Raises:
            GraphStructureError: If ``name`` is already used
        """
        node = self._graph.add_node(Node(func, id=name, **kwargs))
        return NodeBuilder(self, node)

    def get_node(self, name: str) -> Node:
        node = self._graph.get_node(name)
        if node is None:
            raise GraphStructureError(f"Node '{name}' not found")
        return node

    def connect(self, source: str, target: str, port: str | None = None) -> "NodeGraphBuilder":
        self._pending_connections.append((source, target, port))
        return self

    def build(self) -> Graph:
        """
        Resolve queued connections and return the graph.

        Raises:
            GraphStructureError: If a connection names an unknown node or undeclared port
        """
        pending, self._pending_connections = self._pending_connections, []
        for source, target, port in pending:
            self._graph.connect(source, target, port)
        return self._graph

    async def execute(
        self,
        start_node: str | None = None,
        context: GraphExecutionContext | None = None,
    ) -> GraphExecutionResult:
        """
        Build and run the graph.

        Args:
            start_node: Run from this node only; by default every entry node runs
            context: Run inputs; a default context is created if omitted
        """
        graph = self.build()
        context = context or GraphExecutionContext()

        if start_node is None:
            shared = await graph.run(context)
        else:
            start = self.get_node(start_node)
            for node in graph.nodes.values():
                node.reset(context)
            await start.execute_node()
            await context.drain()
            shared = context.shared_context

        return GraphExecutionResult(dict(graph.nodes), shared)

    def get_all_nodes(self) -> list[Node]:
        return list(self._graph.nodes.values())
