"""
End-to-end scenarios run through Graph.run().

Each scenario wires a small flow from a start node and checks the
observable results: node outputs, which callables were invoked and what
landed in the shared context.
"""

import pytest

from flowgraph.graph.context import GraphExecutionContext
from flowgraph.graph.graph import Graph
from flowgraph.graph.node import Node, PathMapEntry
from flowgraph.runner.core_nodes import if_node, start


def make_node(func, id, inputs=None, outputs=None) -> Node:
    if outputs is None:
        outputs = {"result": "result"}
    return Node(
        func,
        id=id,
        input_map=[PathMapEntry(expr, param) for param, expr in (inputs or {}).items()],
        output_map=[PathMapEntry(member, name) for name, member in outputs.items()],
    )


class Calls:
    """Records invocations of the arithmetic callables."""

    def __init__(self):
        self.names: list[str] = []

    def add(self):
        def add(a: int, b: int) -> int:
            self.names.append("add")
            return a + b

        return add

    def multiply(self):
        def multiply(a: int, b: int) -> int:
            self.names.append("multiply")
            return a * b

        return multiply


@pytest.fixture
def calls() -> Calls:
    return Calls()


@pytest.mark.asyncio
async def test_add_from_start(calls):
    graph = Graph()
    graph.add_node(Node(start, id="start"))
    add = graph.add_node(make_node(calls.add(), "add", inputs={"a": "5", "b": "10"}))
    graph.connect("start", "add")

    shared = await graph.run(GraphExecutionContext())

    assert add.result.get("output.result") == 15
    assert shared.get("nodes.add.output.result") == 15
    assert calls.names == ["add"]


@pytest.mark.asyncio
async def test_true_branch_runs_multiply(calls):
    graph = Graph()
    graph.add_node(Node(start, id="start"))
    graph.add_node(make_node(if_node, "if", inputs={"condition": "true"}, outputs={}))
    multiply = graph.add_node(
        make_node(calls.multiply(), "multiply", inputs={"a": "10", "b": "2"})
    )
    graph.connect("start", "if")
    graph.connect("if", "multiply", port="true")

    await graph.run(GraphExecutionContext())

    assert multiply.result.get("output.result") == 20
    assert calls.names == ["multiply"]


@pytest.mark.asyncio
async def test_unconnected_branch_is_not_invoked(calls):
    graph = Graph()
    graph.add_node(Node(start, id="start"))
    graph.add_node(make_node(if_node, "if", inputs={"condition": "true"}, outputs={}))
    multiply = graph.add_node(
        make_node(calls.multiply(), "multiply", inputs={"a": "10", "b": "2"})
    )
    graph.connect("start", "if")
    graph.connect("if", "multiply", port="false")

    await graph.run(GraphExecutionContext())

    assert multiply.result is None
    assert calls.names == []


@pytest.mark.asyncio
async def test_condition_from_parameter(calls):
    graph = Graph()
    graph.add_node(Node(start, id="start"))
    graph.add_node(
        make_node(
            if_node,
            "if",
            inputs={"condition": "{{ workflow.parameters.mode == 'fast' }}"},
            outputs={},
        )
    )
    fast = graph.add_node(make_node(calls.add(), "fast", inputs={"a": "1", "b": "1"}))
    slow = graph.add_node(make_node(calls.multiply(), "slow", inputs={"a": "1", "b": "1"}))
    graph.connect("start", "if")
    graph.connect("if", "fast", port="true")
    graph.connect("if", "slow", port="false")

    await graph.run(GraphExecutionContext(parameters={"mode": "slow"}))

    assert fast.result is None
    assert slow.result.get("output.result") == 1


@pytest.mark.asyncio
async def test_siblings_share_one_upstream_invocation(calls):
    def double(value: int) -> int:
        return value * 2

    def increment(value: int) -> int:
        return value + 1

    graph = Graph()
    graph.add_node(Node(start, id="start"))
    graph.add_node(make_node(calls.add(), "add", inputs={"a": "10", "b": "20"}))
    left = graph.add_node(make_node(double, "double", inputs={"value": "input.result"}))
    right = graph.add_node(make_node(increment, "increment", inputs={"value": "input.result"}))
    graph.connect("start", "add")
    graph.connect("add", "double")
    graph.connect("add", "increment")

    await graph.run(GraphExecutionContext())

    assert left.result.get("output.result") == 60
    assert right.result.get("output.result") == 31
    assert calls.names == ["add"]


@pytest.mark.asyncio
async def test_failed_node_payload_reaches_consumers(calls):
    def explode() -> int:
        raise RuntimeError("disk full")

    def report(message: str) -> str:
        return f"saw: {message}"

    graph = Graph()
    graph.add_node(Node(start, id="start"))
    graph.add_node(make_node(explode, "explode"))
    reporter = graph.add_node(
        make_node(report, "report", inputs={"message": "nodes.explode.error.message"})
    )
    graph.connect("start", "explode")
    graph.connect("explode", "report")

    shared = await graph.run(GraphExecutionContext())

    assert [node.id for node in graph.failed_nodes] == ["explode"]
    assert "disk full" in shared.get("nodes.explode.error.message")
    assert "disk full" in reporter.result.get("output.result")
