"""Tests for the core node library: branching, loops and workflow I/O."""

import asyncio
import logging

import pytest

from flowgraph.graph.context import GraphExecutionContext
from flowgraph.graph.graph import Graph
from flowgraph.graph.node import Node, PathMapEntry
from flowgraph.runner.core_nodes import (
    CORE_NODES,
    for_each,
    for_loop,
    get_input,
    log_message,
    repeat,
    set_output,
    start,
    wait,
    while_loop,
)


def make_node(func, id, inputs=None, outputs=None) -> Node:
    if outputs is None:
        outputs = {"result": "result"}
    return Node(
        func,
        id=id,
        input_map=[PathMapEntry(expr, param) for param, expr in (inputs or {}).items()],
        output_map=[PathMapEntry(member, name) for name, member in outputs.items()],
    )


def loop_graph(loop: Node, body: Node, done: Node | None = None, body_port: str = "loop") -> Graph:
    graph = Graph()
    graph.add_node(Node(start, id="start"))
    graph.add_node(loop)
    graph.add_node(body)
    graph.connect("start", loop.id)
    graph.connect(loop.id, body.id, port=body_port)
    if done is not None:
        graph.add_node(done)
        graph.connect(loop.id, done.id, port="done")
    return graph


class TestForLoop:
    @pytest.mark.asyncio
    async def test_body_runs_once_per_index(self):
        seen = []

        def body(index: int) -> None:
            seen.append(index)

        loop = make_node(for_loop, "loop", inputs={"start": "0", "end": "3"}, outputs={})
        graph = loop_graph(loop, make_node(body, "body", inputs={"index": "input.index"}))

        await graph.run()
        assert seen == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_done_sees_iteration_count(self):
        finished = []

        def body() -> None:
            pass

        def after(total: int) -> None:
            finished.append(total)

        loop = make_node(
            for_loop, "loop", inputs={"start": "2", "end": "5"}, outputs={"iterations": "result"}
        )
        graph = loop_graph(
            loop,
            make_node(body, "body", outputs={}),
            make_node(after, "after", inputs={"total": "input.iterations"}, outputs={}),
        )

        await graph.run()

        assert finished == [3]
        assert loop.result.get("output.iterations") == 3

    @pytest.mark.asyncio
    async def test_bounds_from_parameters(self):
        seen = []

        def body(index: int) -> None:
            seen.append(index)

        loop = make_node(
            for_loop,
            "loop",
            inputs={"start": "0", "end": "workflow.parameters.count"},
            outputs={},
        )
        graph = loop_graph(loop, make_node(body, "body", inputs={"index": "input.index"}))

        await graph.run(GraphExecutionContext(parameters={"count": "2"}))
        assert seen == [0, 1]

    @pytest.mark.asyncio
    async def test_empty_range_only_fires_done(self):
        seen = []

        def body() -> None:
            seen.append("body")

        def after() -> None:
            seen.append("done")

        loop = make_node(for_loop, "loop", inputs={"start": "3", "end": "3"}, outputs={})
        graph = loop_graph(
            loop, make_node(body, "body", outputs={}), make_node(after, "after", outputs={})
        )

        await graph.run()
        assert seen == ["done"]


    @pytest.mark.asyncio
    async def test_consumer_pulling_a_running_loop_sees_its_final_result(self):
        seen = []

        async def body(index: int) -> None:
            await asyncio.sleep(0.02)

        async def delay() -> None:
            await asyncio.sleep(0.005)

        def consumer(total: int) -> None:
            seen.append(total)

        loop = make_node(
            for_loop, "loop", inputs={"start": "0", "end": "3"}, outputs={"iterations": "result"}
        )
        body_node = make_node(body, "body", inputs={"index": "input.index"}, outputs={})
        graph = loop_graph(loop, body_node)
        graph.add_node(make_node(delay, "delay", outputs={}))
        graph.add_node(
            make_node(consumer, "consumer", inputs={"total": "input.iterations"}, outputs={})
        )
        graph.connect("start", "delay")
        graph.connect("delay", "consumer")
        graph.connect("loop", "consumer", port="done")

        await asyncio.wait_for(graph.run(), timeout=2)

        assert not graph.get_node("consumer").has_error
        assert seen == [3]
        assert loop.result.get("output") == {"iterations": 3}


class TestRepeat:
    @pytest.mark.asyncio
    async def test_repeats_body(self):
        seen = []

        def body(index: int) -> None:
            seen.append(index)

        loop = make_node(repeat, "repeat", inputs={"count": "4"}, outputs={})
        graph = loop_graph(loop, make_node(body, "body", inputs={"index": "input.index"}))

        await graph.run()
        assert seen == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_negative_count_runs_nothing(self):
        seen = []

        def body() -> None:
            seen.append(1)

        loop = make_node(repeat, "repeat", inputs={"count": "-2"}, outputs={"n": "result"})
        graph = loop_graph(loop, make_node(body, "body", outputs={}))

        await graph.run()
        assert seen == []
        assert loop.result.get("output.n") == 0


class TestForEach:
    @pytest.mark.asyncio
    async def test_iterates_items_with_position_flags(self):
        seen = []

        def body(item: str, index: int, first: bool, last: bool, total: int) -> None:
            seen.append((item, index, first, last, total))

        loop = make_node(
            for_each,
            "each",
            inputs={"items": "{{ workflow.parameters.names }}"},
            outputs={"count": "item_count"},
        )
        body_node = make_node(
            body,
            "body",
            inputs={
                "item": "input.current_item",
                "index": "input.current_index",
                "first": "input.is_first",
                "last": "input.is_last",
                "total": "input.total_count",
            },
            outputs={},
        )
        graph = loop_graph(loop, body_node, body_port="item")

        await graph.run(GraphExecutionContext(parameters={"names": '["a", "b"]'}))

        assert seen == [("a", 0, True, False, 2), ("b", 1, False, True, 2)]
        assert loop.result.get("output.count") == 2

    @pytest.mark.asyncio
    async def test_body_recomputes_each_iteration(self):
        calls = []

        def body(item: int) -> int:
            calls.append(item)
            return item * 10

        loop = make_node(for_each, "each", inputs={"items": "[1, 2, 3]"}, outputs={})
        graph = loop_graph(
            loop,
            make_node(body, "body", inputs={"item": "input.current_item"}),
            body_port="item",
        )

        await graph.run()
        assert calls == [1, 2, 3]
        # The body keeps the result of the last iteration
        assert graph.get_node("body").result.get("output.result") == 30


class TestWhileLoop:
    @pytest.mark.asyncio
    async def test_fires_done_when_condition_is_false(self):
        seen = []

        def body() -> None:
            seen.append("loop")

        def after() -> None:
            seen.append("done")

        loop = make_node(while_loop, "while", inputs={"condition": "false"}, outputs={})
        graph = loop_graph(
            loop, make_node(body, "body", outputs={}), make_node(after, "after", outputs={})
        )

        await graph.run()
        assert seen == ["done"]

    @pytest.mark.asyncio
    async def test_fires_loop_when_condition_is_true(self):
        seen = []

        def body() -> None:
            seen.append("loop")

        loop = make_node(while_loop, "while", inputs={"condition": "true"}, outputs={})
        graph = loop_graph(loop, make_node(body, "body", outputs={}))

        await graph.run()
        assert seen == ["loop"]


class TestWorkflowIO:
    def test_get_input_without_context(self):
        assert get_input("anything") == ""

    def test_get_input_missing_parameter(self):
        context = GraphExecutionContext(parameters={"a": "1"})
        assert get_input("b", context) == ""
        assert get_input("a", context) == "1"

    def test_set_output_publishes_and_passes_through(self):
        context = GraphExecutionContext()
        assert set_output("answer", 42, context) == 42
        assert context.get_output("answer") == 42


class TestUtility:
    @pytest.mark.asyncio
    async def test_wait_completes(self):
        assert await wait(1) is None

    def test_log_message(self, caplog):
        with caplog.at_level(logging.INFO):
            log_message("hello from a flow", level="warning")
        assert "hello from a flow" in caplog.text
        assert caplog.records[-1].levelno == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, caplog):
        with caplog.at_level(logging.INFO):
            log_message("plain", level="chatty")
        assert caplog.records[-1].levelno == logging.INFO

    def test_core_nodes_are_decorated(self):
        keys = {func._flow_key for func in CORE_NODES}
        assert {"start", "if_node", "for_loop", "for_each", "get_input", "set_output"} <= keys
        assert for_loop._flow_ports == ["loop", "done"]
