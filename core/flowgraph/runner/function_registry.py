"""Function discovery and registration for flow nodes.

Persisted flows refer to callables by a stable key; the registry resolves
those keys back to callables when a flow is loaded.
"""

import importlib.util
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flowgraph.graph.binding import describe_parameters, unwrap_optional
from flowgraph.graph.context import GraphExecutionContext
from flowgraph.graph.node import NodeContext
from flowgraph.graph.shaping import return_members

logger = logging.getLogger(__name__)

_INJECTED_TYPES = (NodeContext, GraphExecutionContext)


class FunctionNotFoundError(LookupError):
    """No callable is registered under the requested key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No function registered under key '{key}'")


@dataclass
class RegisteredFunction:
    """A callable with the metadata a flow editor or loader needs."""

    key: str
    func: Callable[..., Any]
    section: str = ""
    description: str = ""
    ports: list[str] = field(default_factory=list)
    parameters: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)

    @property
    def is_port_driven(self) -> bool:
        return bool(self.ports)


def _bindable_parameters(func: Callable) -> list[str]:
    """Parameter names that come from mappings (injected handles excluded)."""
    names = []
    for param in describe_parameters(func):
        if param.is_variadic:
            continue
        annotation = unwrap_optional(param.annotation)
        if isinstance(annotation, type) and issubclass(annotation, _INJECTED_TYPES):
            continue
        names.append(param.name)
    return names


class FunctionRegistry:
    """
    Maps stable keys to node callables.

    Discovery:
    1. Core nodes (start, branching, loops, workflow I/O) in the default registry
    2. Functions decorated with @flow_node in a module file
    3. Manually registered functions
    """

    def __init__(self):
        self._functions: dict[str, RegisteredFunction] = {}

    def register(
        self,
        key: str,
        func: Callable[..., Any],
        section: str = "",
        description: str | None = None,
    ) -> RegisteredFunction:
        """
        Register a callable under an explicit key.

        Args:
            key: Stable key persisted in flow documents
            func: Sync or async callable
            section: Grouping label (e.g. "Logic", "Loops")
            description: Human description (defaults to docstring)
        """
        if key in self._functions and self._functions[key].func is not func:
            logger.warning(f"Function key '{key}' re-registered; previous callable replaced")

        registered = RegisteredFunction(
            key=key,
            func=func,
            section=section,
            description=description or inspect.getdoc(func) or f"Execute {key}",
            ports=list(getattr(func, "_flow_ports", [])),
            parameters=_bindable_parameters(func),
            outputs=return_members(func),
        )
        self._functions[key] = registered
        return registered

    def register_function(
        self,
        func: Callable[..., Any],
        name: str | None = None,
        section: str | None = None,
        description: str | None = None,
    ) -> RegisteredFunction:
        """
        Register a function, taking key and section from @flow_node metadata when present.

        Args:
            func: Function to register
            name: Key (defaults to the @flow_node name, then the function name)
            section: Section (defaults to the @flow_node section)
            description: Description (defaults to docstring)
        """
        metadata = getattr(func, "_flow_metadata", {})
        key = name or metadata.get("name") or func.__name__
        return self.register(
            key,
            func,
            section=section if section is not None else metadata.get("section", ""),
            description=description or metadata.get("description"),
        )

    def discover_from_module(self, module_path: Path) -> int:
        """
        Load @flow_node decorated functions from a Python module file.

        Args:
            module_path: Path to a .py file

        Returns:
            Number of functions discovered
        """
        module_path = Path(module_path)
        if not module_path.exists():
            return 0

        spec = importlib.util.spec_from_file_location(f"flow_nodes_{module_path.stem}", module_path)
        if spec is None or spec.loader is None:
            return 0

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        count = 0
        for attr in dir(module):
            obj = getattr(module, attr)
            if callable(obj) and hasattr(obj, "_flow_metadata"):
                self.register_function(obj)
                count += 1

        logger.info(f"Discovered {count} flow node(s) in {module_path}")
        return count

    def get(self, key: str) -> Callable[..., Any]:
        """
        Resolve a key to its callable.

        Raises:
            FunctionNotFoundError: If nothing is registered under ``key``
        """
        return self.describe(key).func

    def describe(self, key: str) -> RegisteredFunction:
        registered = self._functions.get(key)
        if registered is None:
            raise FunctionNotFoundError(key)
        return registered

    def key_for(self, func: Callable[..., Any]) -> str | None:
        """Reverse lookup: the key a callable is registered under, if any."""
        for key, registered in self._functions.items():
            if registered.func is func:
                return key
        return None

    def list_functions(self, section: str | None = None) -> list[RegisteredFunction]:
        functions = list(self._functions.values())
        if section is not None:
            functions = [f for f in functions if f.section.lower() == section.lower()]
        return functions

    def get_registered_names(self) -> list[str]:
        return list(self._functions.keys())

    def has_function(self, key: str) -> bool:
        return key in self._functions

    def copy(self) -> "FunctionRegistry":
        clone = FunctionRegistry()
        clone._functions = dict(self._functions)
        return clone

    def __contains__(self, key: object) -> bool:
        return key in self._functions

    def __len__(self) -> int:
        return len(self._functions)


def flow_node(
    name: str | None = None,
    section: str = "",
    description: str | None = None,
) -> Callable:
    """
    Decorator to mark a function as a flow node.

    Usage:
        @flow_node(section="Math")
        def add(a: int, b: int) -> int:
            return a + b
    """

    def decorator(func: Callable) -> Callable:
        func._flow_metadata = {
            "name": name or func.__name__,
            "section": section,
            "description": description or func.__doc__,
        }
        func._flow_key = name or func.__name__
        func._flow_section = section
        return func

    return decorator


def flow_ports(*ports: str) -> Callable:
    """
    Decorator declaring a function's named output ports.

    A node backed by such a function is port-driven: it routes control flow
    only through the ports it fires.

    Usage:
        @flow_ports("true", "false")
        def if_node(condition: bool, ctx: NodeContext) -> None:
            ctx.execute_port("true" if condition else "false")
    """
    if not ports:
        raise ValueError("flow_ports requires at least one port name")

    def decorator(func: Callable) -> Callable:
        func._flow_ports = list(ports)
        return func

    return decorator


_default_registry: FunctionRegistry | None = None


def get_default_registry() -> FunctionRegistry:
    """The process-wide registry, pre-populated with the core nodes."""
    global _default_registry
    if _default_registry is None:
        from flowgraph.runner import core_nodes

        registry = FunctionRegistry()
        for func in core_nodes.CORE_NODES:
            registry.register_function(func)
        _default_registry = registry
    return _default_registry
