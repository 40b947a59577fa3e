"""
Graph Execution Context - Run-scoped inputs, services and shared output.

One context is attached to every node of a graph for the duration of a run.
It carries:
- Read-only run inputs: ``parameters`` and ``environment``
- ``services``: the capability bundle callables may ask for
- The shared document that collects node outputs and workflow outputs

Nodes never write the shared document directly; they go through
``publish`` (namespaced under ``nodes.<node_id>``) or ``publish_output``
(global ``workflow.output`` namespace, last writer wins).
"""

import asyncio
import logging
import uuid
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from flowgraph.config import get_strict_templates
from flowgraph.graph.binding import ExpressionEvaluator, JinjaExpressionEvaluator, ParameterBinder
from flowgraph.graph.document import PATH_SEPARATOR, PathDocument

if TYPE_CHECKING:
    from flowgraph.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)

WORKFLOW_PARAMETERS_PATH = "workflow.parameters"
WORKFLOW_OUTPUT_PATH = "workflow.output"
ENVIRONMENT_PATH = "environment"
NODES_PATH = "nodes"


def _join(*parts: str) -> str:
    return PATH_SEPARATOR.join(part for part in parts if part)


class GraphExecutionContext:
    """
    Per-run state shared by every node of a graph.

    Example:
        context = GraphExecutionContext(
            parameters={"name": "Ada"},
            environment={"region": "eu"},
        )
        shared = await graph.run(context)
        shared.get("workflow.output.greeting")
    """

    def __init__(
        self,
        parameters: Mapping[str, str] | None = None,
        environment: Mapping[str, str] | None = None,
        services: Any = None,
        event_bus: "EventBus | None" = None,
        evaluator: ExpressionEvaluator | None = None,
        run_id: str | None = None,
    ):
        self.parameters: Mapping[str, str] = MappingProxyType(dict(parameters or {}))
        self.environment: Mapping[str, str] = MappingProxyType(dict(environment or {}))
        if services is None or isinstance(services, Mapping):
            services = MappingProxyType(dict(services or {}))
        self.services = services
        self.event_bus = event_bus
        self.binder = ParameterBinder(
            evaluator or JinjaExpressionEvaluator(strict=get_strict_templates())
        )
        self.run_id = run_id or uuid.uuid4().hex

        self._shared_context: PathDocument | None = None
        self._tasks: set[asyncio.Future] = set()

    @property
    def shared_context(self) -> PathDocument:
        """The run's shared document, created on first access."""
        if self._shared_context is None:
            shared = PathDocument()
            shared.set(WORKFLOW_PARAMETERS_PATH, dict(self.parameters))
            shared.set(ENVIRONMENT_PATH, dict(self.environment))
            self._shared_context = shared
        return self._shared_context

    # === PUBLISHING ===

    def publish(self, node_id: str, path: str, value: Any) -> None:
        """Write ``value`` under ``nodes.<node_id>.<path>``."""
        self.shared_context.set(_join(NODES_PATH, node_id, path), value)

    def publish_output(self, path: str, value: Any) -> None:
        """Write a workflow output under ``workflow.output.<path>``."""
        self.shared_context.set(_join(WORKFLOW_OUTPUT_PATH, path), value)

    def get_output(self, path: str, default: Any = None) -> Any:
        return self.shared_context.get(_join(WORKFLOW_OUTPUT_PATH, path), default)

    @property
    def outputs(self) -> dict[str, Any]:
        outputs = self.shared_context.get(WORKFLOW_OUTPUT_PATH, None)
        return dict(outputs) if isinstance(outputs, dict) else {}

    # === BACKGROUND WORK ===

    def track(self, task: asyncio.Future) -> asyncio.Future:
        """Track a port execution scheduled outside the awaiting call chain."""
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every tracked task (and any it schedules) has finished."""
        while self._tasks:
            batch = list(self._tasks)
            self._tasks.difference_update(batch)
            results = await asyncio.gather(*batch, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException) and not isinstance(
                    result, asyncio.CancelledError
                ):
                    logger.error(f"Background port execution failed: {result}")
