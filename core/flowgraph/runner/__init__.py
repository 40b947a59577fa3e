"""Function registry and the core node library."""

from flowgraph.runner.function_registry import (
    FunctionNotFoundError,
    FunctionRegistry,
    RegisteredFunction,
    flow_node,
    flow_ports,
    get_default_registry,
)

__all__ = [
    "FunctionNotFoundError",
    "FunctionRegistry",
    "RegisteredFunction",
    "flow_node",
    "flow_ports",
    "get_default_registry",
]
