"""
Node - A callable wrapped with data mappings and control-flow ports.

Execution protocol:
- ``get_result`` is lazy and memoized: the first caller computes the node
  (pulling every upstream result first), later callers get the cached
  result. A per-node lock guarantees at most one invocation per run.
- ``execute_node`` computes the node, then fans out to every downstream
  node unless the node is port-driven.
- Port-driven nodes route control flow by firing named ports through their
  ``NodeContext``. Ports fired while the node is still running are queued
  and flushed in order once the result exists.

Failures never escape a node: binding or invocation errors are captured
into an error result (``error.message``, ``error.nodeId``, ...) that flows
downstream as data.
"""

import asyncio
import inspect
import logging
import threading
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from flowgraph.graph.binding import ParameterBinder, describe_parameters
from flowgraph.graph.context import WORKFLOW_OUTPUT_PATH, GraphExecutionContext
from flowgraph.graph.document import MISSING, PATH_SEPARATOR, PathDocument
from flowgraph.graph.shaping import shape_output
from flowgraph.observability import trace_scope

logger = logging.getLogger(__name__)

_DEFAULT_BINDER = ParameterBinder()

WORKFLOW_OUTPUT_PREFIX = WORKFLOW_OUTPUT_PATH + PATH_SEPARATOR


class NodeState(StrEnum):
    """Lifecycle state of a node within the current run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class UnknownPortError(LookupError):
    """A port name that the node does not declare."""

    def __init__(self, node_id: str, port: str, declared: Iterable[str]):
        self.node_id = node_id
        self.port = port
        self.declared = list(declared)
        super().__init__(
            f"Node '{node_id}' has no output port '{port}' (declared: {', '.join(self.declared)})"
        )


@dataclass(frozen=True)
class PathMapEntry:
    """
    A single data mapping.

    For input maps ``from_`` is the source expression and ``to`` the
    parameter name; for output maps ``from_`` is the member path of the
    return value and ``to`` the output name.
    """

    from_: str
    to: str


def port_key(port: str) -> str:
    """Ports compare case-insensitively."""
    return port.strip().lower()


def _completed() -> asyncio.Future:
    future = asyncio.get_running_loop().create_future()
    future.set_result(None)
    return future


class NodeContext:
    """
    Control-flow handle handed to callables that ask for it.

    A callable receives it by annotating a parameter with ``NodeContext``:

        @flow_ports("true", "false")
        def if_node(condition: bool, ctx: NodeContext) -> None:
            ctx.execute_port("true" if condition else "false")
    """

    def __init__(self, node: "Node", execution: GraphExecutionContext | None = None):
        self.current_node = node
        self.execution = execution
        self.context: dict[str, Any] = {}

    @property
    def input_nodes(self) -> list["Node"]:
        return list(self.current_node.input_nodes)

    @property
    def output_nodes(self) -> list["Node"]:
        return list(self.current_node.output_nodes)

    def execute_port(self, port: str) -> Awaitable[None]:
        """
        Fire a named output port.

        While the node is still running the port is queued and runs once
        the node has a result. The returned awaitable may be ignored.

        Raises:
            UnknownPortError: If the node does not declare the port
        """
        return self.current_node.execute_port(port)

    async def run_iteration(self, port: str, values: Mapping[str, Any]) -> None:
        """
        Run the subgraph behind ``port`` once, with ``values`` as this node's output.

        Downstream results are cleared first so the subgraph recomputes.
        Only nodes behind ``port`` see the iteration values; every other
        caller keeps waiting for the node's real result.
        """
        node = self.current_node
        scope = node.get_downstream_nodes(port)
        Node.clear_nodes(n for n in scope if n is not node)

        node._iteration_result = PathDocument({"output": dict(values)})
        node._iteration_scope = {id(n) for n in scope}
        try:
            await node.execute_port_now(port)
        finally:
            node._iteration_result = None
            node._iteration_scope = set()

    def publish(self, path: str, value: Any) -> None:
        """Publish a value into the shared context under this node's namespace."""
        if self.execution is not None:
            self.execution.publish(self.current_node.id, path, value)


class Node:
    """
    A graph node backed by a Python callable.

    Example:
        def add(a: int, b: int) -> int:
            return a + b

        node = Node(
            add,
            id="add",
            input_map=[PathMapEntry("5", "a"), PathMapEntry("10", "b")],
            output_map=[PathMapEntry("result", "result")],
        )
        result = await node.get_result()
        result.get("output.result")  # 15
    """

    def __init__(
        self,
        func: Callable[..., Any],
        id: str | None = None,
        *,
        function_key: str | None = None,
        name_override: str | None = None,
        section: str = "",
        display_id: str = "",
        pos_x: float = 0.0,
        pos_y: float = 0.0,
        input_map: Iterable[PathMapEntry] | None = None,
        output_map: Iterable[PathMapEntry] | None = None,
        dictionary_parameter_mappings: Mapping[str, Iterable[PathMapEntry]] | None = None,
        declared_output_ports: Iterable[str] | None = None,
        merge_output_with_input: bool = False,
    ):
        if func is None or not callable(func):
            raise ValueError("Node requires a callable")

        self.id = id or uuid.uuid4().hex
        if PATH_SEPARATOR in self.id:
            raise ValueError(f"Node id '{self.id}' must not contain '{PATH_SEPARATOR}'")

        self.func = func
        self.function_key = (
            function_key
            or getattr(func, "_flow_key", None)
            or getattr(func, "__name__", type(func).__name__)
        )
        self.name_override = name_override
        self.section = section or getattr(func, "_flow_section", "")
        self.display_id = display_id
        self.pos_x = pos_x
        self.pos_y = pos_y

        self.input_map: list[PathMapEntry] = list(input_map or [])
        self.output_map: list[PathMapEntry] = list(output_map or [])
        self.dictionary_parameter_mappings: dict[str, list[PathMapEntry]] = {
            name: list(entries) for name, entries in (dictionary_parameter_mappings or {}).items()
        }
        if declared_output_ports is None:
            declared_output_ports = getattr(func, "_flow_ports", ())
        self.declared_output_ports: list[str] = list(declared_output_ports)
        self.merge_output_with_input = merge_output_with_input

        # Topology
        self.input_nodes: list[Node] = []
        self.output_nodes: list[Node] = []
        self.output_ports: dict[str, list[Node]] = {}

        # Per-run state
        self.execution_context: GraphExecutionContext | None = None
        self.input = PathDocument()
        self.result: PathDocument | None = None
        self.has_error = False
        self.error_message: str | None = None
        self.last_exception: BaseException | None = None
        self._running = False
        self._lock = asyncio.Lock()
        self._pending_ports: list[str] = []
        self._pending_lock = threading.Lock()
        self._iteration_result: PathDocument | None = None
        self._iteration_scope: set[int] = set()
        self._background: set[asyncio.Future] = set()

    # === IDENTITY ===

    @property
    def name(self) -> str:
        return getattr(self.func, "__name__", self.function_key)

    @property
    def display_name(self) -> str:
        return self.name_override or self.name

    @property
    def is_port_driven(self) -> bool:
        return bool(self.declared_output_ports)

    @property
    def state(self) -> NodeState:
        if self.has_error:
            return NodeState.FAILED
        if self.result is not None:
            return NodeState.COMPLETED
        if self._running:
            return NodeState.RUNNING
        return NodeState.IDLE

    def has_port(self, port: str) -> bool:
        key = port_key(port)
        return any(port_key(declared) == key for declared in self.declared_output_ports)

    # === TOPOLOGY ===

    def add_output_connection(self, port: str | None, target: "Node") -> None:
        """
        Connect ``target`` downstream of this node, optionally behind a port.

        Raises:
            UnknownPortError: If ``port`` is given and not declared
        """
        if port is not None:
            if not self.has_port(port):
                raise UnknownPortError(self.id, port, self.declared_output_ports)
            targets = self.output_ports.setdefault(port_key(port), [])
            if target not in targets:
                targets.append(target)

        if target not in self.output_nodes:
            self.output_nodes.append(target)

    def add_input_node(self, source: "Node") -> None:
        if source not in self.input_nodes:
            self.input_nodes.append(source)

    def port_targets(self, port: str) -> list["Node"]:
        return list(self.output_ports.get(port_key(port), []))

    def get_downstream_nodes(self, port: str | None = None) -> list["Node"]:
        """All nodes reachable from ``port`` (or from every output), breadth-first."""
        start = self.output_nodes if port is None else self.port_targets(port)

        visited: set[int] = set()
        queue: deque[Node] = deque()
        for target in start:
            if id(target) not in visited:
                visited.add(id(target))
                queue.append(target)

        reachable: list[Node] = []
        while queue:
            node = queue.popleft()
            reachable.append(node)
            for child in node.output_nodes:
                if id(child) not in visited:
                    visited.add(id(child))
                    queue.append(child)
        return reachable

    # === STATE MANAGEMENT ===

    def clear_result(self) -> None:
        """Forget the cached result so the node runs again on next request."""
        self.result = None
        self.input = PathDocument()
        self.has_error = False
        self.error_message = None
        self.last_exception = None
        with self._pending_lock:
            self._pending_ports.clear()

    def clear_downstream_results(self, port: str | None = None) -> None:
        """Clear every node reachable from ``port`` (or all outputs), except this one."""
        Node.clear_nodes(n for n in self.get_downstream_nodes(port) if n is not self)

    @staticmethod
    def clear_nodes(nodes: Iterable["Node"]) -> None:
        for node in nodes:
            node.clear_result()

    def reset(self, execution_context: GraphExecutionContext | None = None) -> None:
        """Prepare for a fresh run."""
        self.clear_result()
        self.execution_context = execution_context
        self._running = False
        self._lock = asyncio.Lock()
        self._iteration_result = None
        self._iteration_scope = set()

    # === EXECUTION ===

    async def execute_node(self, caller: "Node | None" = None) -> None:
        """Compute this node, then fan out downstream unless port-driven."""
        await self.get_result(caller or self)

        if not self.is_port_driven and self.output_nodes:
            await asyncio.gather(*(target.execute_node(self) for target in self.output_nodes))

    async def get_result(self, caller: "Node | None" = None) -> PathDocument:
        """
        Return this node's result, computing it on first request.

        Never raises for binding or invocation failures; those produce an
        error result instead.
        """
        return await self._resolve(caller, pulled=False)

    async def _resolve(self, caller: "Node | None", pulled: bool) -> PathDocument:
        if self.result is not None:
            return self.result
        if self._iteration_result is not None and caller is not None:
            if id(caller) in self._iteration_scope:
                return self._iteration_result

        computed = False
        async with self._lock:
            if self.result is None:
                await self._compute()
                computed = True

        if computed:
            if pulled:
                # The puller holds its own lock and may be a port target
                self._schedule(self._flush_pending_ports())
            else:
                await self._flush_pending_ports()
        return self.result

    async def _compute(self) -> None:
        ctx = self.execution_context
        bus = ctx.event_bus if ctx is not None else None
        run_id = ctx.run_id if ctx is not None else None

        self._running = True
        self.has_error = False
        self.error_message = None
        self.last_exception = None

        with trace_scope(node_id=self.id):
            if bus is not None:
                await bus.emit_node_started(run_id, self.id, self.display_name)

            try:
                upstream = await self._merge_upstream()

                input_doc = PathDocument()
                upstream_output = upstream.get("output")
                input_doc.set("input", None if upstream_output is MISSING else upstream_output)
                self.input = input_doc

                outcome = await self._invoke(input_doc)
                result = self._shape(outcome)

                if self.merge_output_with_input:
                    result = upstream.merge(result)

                self.result = result
                logger.debug(f"Node '{self.display_name}' completed")
            except Exception as e:
                self._fail(e)

            self._running = False

            if ctx is not None:
                for key, value in self.result.data.items():
                    ctx.publish(self.id, key, value)

            if bus is not None:
                if self.has_error:
                    await bus.emit_node_failed(run_id, self.id, self.error_message or "")
                else:
                    await bus.emit_node_completed(run_id, self.id, self.result.get("output", None))

    async def _merge_upstream(self) -> PathDocument:
        """Results of every input node merged in declaration order, later wins."""
        merged = PathDocument()
        if not self.input_nodes:
            return merged

        results = await asyncio.gather(
            *(node._resolve(self, pulled=True) for node in self.input_nodes)
        )
        for result in results:
            merged.merge(result)
        return merged

    async def _invoke(self, input_doc: PathDocument) -> Any:
        ctx = self.execution_context
        binder = ctx.binder if ctx is not None else _DEFAULT_BINDER

        arguments = binder.bind(
            self.func,
            input_map={entry.to: entry.from_ for entry in self.input_map},
            input_doc=input_doc,
            shared_doc=ctx.shared_context if ctx is not None else None,
            dictionary_mappings={
                name: {entry.to: entry.from_ for entry in entries}
                for name, entries in self.dictionary_parameter_mappings.items()
            },
            injected={
                NodeContext: NodeContext(self, ctx),
                GraphExecutionContext: ctx,
            },
        )

        args: list[Any] = []
        kwargs: dict[str, Any] = {}
        for param in describe_parameters(self.func):
            if param.name not in arguments:
                continue
            if param.kind is inspect.Parameter.POSITIONAL_ONLY:
                args.append(arguments[param.name])
            else:
                kwargs[param.name] = arguments[param.name]

        outcome = self.func(*args, **kwargs)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    def _shape(self, outcome: Any) -> PathDocument:
        result = PathDocument()
        ctx = self.execution_context
        shaped = shape_output(outcome, [(entry.from_, entry.to) for entry in self.output_map])
        for name, value in shaped:
            if ctx is not None and name.startswith(WORKFLOW_OUTPUT_PREFIX):
                ctx.publish_output(name[len(WORKFLOW_OUTPUT_PREFIX) :], value)
            else:
                result.set(f"output{PATH_SEPARATOR}{name}", value)
        return result

    def _fail(self, error: Exception) -> None:
        self.has_error = True
        self.error_message = f"Node '{self.name}' failed: {error}"
        self.last_exception = error
        with self._pending_lock:
            self._pending_ports.clear()

        logger.error(self.error_message, extra={"node_id": self.id, "event": "node_failed"})

        self.result = PathDocument(
            {
                "error": {
                    "message": self.error_message,
                    "nodeId": self.display_id or self.id,
                    "nodeName": self.name,
                    "timestamp": datetime.now(UTC).isoformat(),
                }
            }
        )

    # === PORTS ===

    def execute_port(self, port: str) -> Awaitable[None]:
        """
        Fire ``port``: queued while the node is running, executed now otherwise.

        Returns:
            An awaitable that completes when the port's targets have run.
            For a queued port it is already done.

        Raises:
            UnknownPortError: If the node is port-driven and does not declare ``port``
        """
        if not self.is_port_driven:
            return self._schedule(self.execute_port_now(port))

        if not port or not port.strip():
            return _completed()
        if not self.has_port(port):
            raise UnknownPortError(self.id, port, self.declared_output_ports)

        with self._pending_lock:
            if self.result is None:
                self._pending_ports.append(port)
                logger.debug(f"Queued port '{port}' on node '{self.display_name}'")
                return _completed()

        return self._schedule(self.execute_port_now(port))

    async def execute_port_now(self, port: str) -> None:
        """Execute the targets of ``port`` immediately (all outputs if not port-driven)."""
        if self.is_port_driven:
            targets = self.port_targets(port)
        else:
            targets = list(self.output_nodes)

        ctx = self.execution_context
        if ctx is not None and ctx.event_bus is not None:
            await ctx.event_bus.emit_port_fired(
                ctx.run_id, self.id, port, [target.id for target in targets]
            )

        if targets:
            await asyncio.gather(*(target.execute_node(self) for target in targets))

    async def _flush_pending_ports(self) -> None:
        with self._pending_lock:
            ports = list(self._pending_ports)
            self._pending_ports.clear()

        for port in ports:
            await self.execute_port_now(port)

    def _schedule(self, coro: Awaitable[None]) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        if self.execution_context is not None:
            self.execution_context.track(task)
        else:
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return task

    def __repr__(self) -> str:
        return f"Node(id={self.id!r}, func={self.name!r}, state={self.state.value!r})"
