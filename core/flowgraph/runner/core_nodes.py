"""Core nodes shipped with every registry: entry marker, branching, loops, workflow I/O."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from flowgraph.graph.context import GraphExecutionContext
from flowgraph.graph.node import NodeContext
from flowgraph.runner.function_registry import flow_node, flow_ports

logger = logging.getLogger(__name__)


# ==========================================
# EVENTS
# ==========================================


@flow_node(section="Events")
def start() -> None:
    """Entry point of a flow. Every node keyed ``start`` is run first."""


# ==========================================
# BRANCHING
# ==========================================


@flow_node(section="Logic")
@flow_ports("true", "false")
def if_node(ctx: NodeContext, condition: bool) -> None:
    """Route control flow to the ``true`` or ``false`` port."""
    ctx.execute_port("true" if condition else "false")


# ==========================================
# LOOPS
# ==========================================


@flow_node(section="Loops")
@flow_ports("loop", "done")
async def for_loop(ctx: NodeContext, start: int, end: int) -> int:
    """
    Run the ``loop`` subgraph for each index in [start, end), then fire ``done``.

    Each iteration exposes ``output.index`` to the loop body.
    """
    iterations = 0
    for index in range(start, end):
        await ctx.run_iteration("loop", {"index": index})
        iterations += 1

    ctx.execute_port("done")
    return iterations


@flow_node(section="Loops")
@flow_ports("loop", "done")
async def repeat(ctx: NodeContext, count: int) -> int:
    """Run the ``loop`` subgraph ``count`` times, then fire ``done``."""
    count = max(count, 0)
    for index in range(count):
        await ctx.run_iteration("loop", {"index": index})

    ctx.execute_port("done")
    return count


@flow_node(section="Loops")
@flow_ports("loop", "done")
def while_loop(ctx: NodeContext, condition: bool) -> None:
    """
    Fire ``loop`` if ``condition`` holds, ``done`` otherwise.

    The condition is evaluated once per execution of the node. Results are
    memoized for the run, so wiring the body back into ``condition`` does
    not repeat the loop; use ``repeat`` or ``for_loop`` for bounded iteration.
    """
    ctx.execute_port("loop" if condition else "done")


@dataclass
class ForEachResult:
    """Summary of a for_each run, exposed to the ``done`` subgraph."""

    item_count: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)


@flow_node(section="Collections")
@flow_ports("item", "done")
async def for_each(ctx: NodeContext, items: list[Any]) -> ForEachResult:
    """
    Run the ``item`` subgraph once per element, then fire ``done``.

    Each iteration exposes ``output.current_item``, ``output.current_index``,
    ``output.total_count``, ``output.is_first`` and ``output.is_last``.
    """
    items = list(items or [])
    summary = ForEachResult(item_count=len(items))

    for index, item in enumerate(items):
        await ctx.run_iteration(
            "item",
            {
                "current_item": item,
                "current_index": index,
                "total_count": len(items),
                "is_first": index == 0,
                "is_last": index == len(items) - 1,
            },
        )
        summary.results.append({"index": index, "item": item, "processed": True})

    ctx.execute_port("done")
    return summary


# ==========================================
# WORKFLOW I/O
# ==========================================


@flow_node(section="Workflow")
def get_input(name: str, execution: GraphExecutionContext | None = None) -> str:
    """Read a workflow parameter by name ("" if absent)."""
    if execution is None:
        return ""
    return execution.parameters.get(name, "")


@flow_node(section="Workflow")
def set_output(name: str, value: Any, execution: GraphExecutionContext | None = None) -> Any:
    """Publish ``value`` as workflow output ``name`` and pass it through."""
    if execution is not None:
        execution.publish_output(name, value)
    return value


# ==========================================
# UTILITY
# ==========================================


@flow_node(section="Utility")
async def wait(milliseconds: int) -> None:
    await asyncio.sleep(max(milliseconds, 0) / 1000)


@flow_node(section="Utility")
def log_message(message: str, level: str = "info") -> None:
    """Write ``message`` to the flowgraph log at ``level``."""
    numeric = logging.getLevelName(level.upper())
    logger.log(numeric if isinstance(numeric, int) else logging.INFO, message)


CORE_NODES = [
    start,
    if_node,
    for_loop,
    repeat,
    while_loop,
    for_each,
    get_input,
    set_output,
    wait,
    log_message,
]
