"""
Command-line interface for flowgraph.

Usage:
    flowgraph run flows/order.json -p customer=ada -e region=eu
    flowgraph run flows/order.json --module my_nodes.py --outputs-only
    flowgraph validate flows/order.json
    flowgraph inputs flows/order.json --module my_nodes.py
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from flowgraph.config import FlowConfig
from flowgraph.graph.context import GraphExecutionContext
from flowgraph.graph.graph import Graph
from flowgraph.observability import configure_logging
from flowgraph.runner.function_registry import (
    FunctionNotFoundError,
    FunctionRegistry,
    get_default_registry,
)
from flowgraph.storage.flow_serializer import FlowSerializationError, validate_flow

logger = logging.getLogger(__name__)


def _parse_pairs(pairs: list[str] | None, option: str) -> dict[str, str]:
    """Parse repeated KEY=VALUE options."""
    values: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"{option} expects KEY=VALUE, got '{pair}'")
        values[key.strip()] = value
    return values


def _build_registry(modules: list[str] | None) -> FunctionRegistry:
    registry = get_default_registry().copy()
    for module in modules or []:
        registry.discover_from_module(Path(module))
    return registry


def _load_graph(args: argparse.Namespace, config: FlowConfig) -> Graph:
    text = Path(args.flow).read_text(encoding="utf-8")
    return Graph.from_json(
        text,
        registry=_build_registry(args.module),
        start_marker=config.start_marker,
    )


def cmd_run(args: argparse.Namespace) -> int:
    """Run a flow and print the shared context (or only workflow outputs)."""
    config = FlowConfig()
    try:
        graph = _load_graph(args, config)
        parameters = _parse_pairs(args.param, "--param")
        environment = _parse_pairs(args.env, "--env")
    except (OSError, FlowSerializationError, FunctionNotFoundError, argparse.ArgumentTypeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    context = GraphExecutionContext(parameters=parameters, environment=environment)
    shared = asyncio.run(graph.run(context))

    payload = context.outputs if args.outputs_only else shared.to_flat_model()
    print(json.dumps(payload, indent=2, default=str))

    failed = graph.failed_nodes
    for node in failed:
        print(node.error_message, file=sys.stderr)
    return 1 if failed else 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a flow document's structure."""
    try:
        text = Path(args.flow).read_text(encoding="utf-8")
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    valid, error = validate_flow(text)
    if not valid:
        print(f"Invalid flow: {error}", file=sys.stderr)
        return 1

    print("Flow is valid")
    return 0


def cmd_inputs(args: argparse.Namespace) -> int:
    """List the workflow parameters a flow references."""
    config = FlowConfig()
    try:
        graph = _load_graph(args, config)
    except (OSError, FlowSerializationError, FunctionNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for name in graph.discover_inputs():
        print(name)
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register run, validate and inputs subcommands."""
    run_parser = subparsers.add_parser("run", help="Run a flow document")
    run_parser.add_argument("flow", help="Path to flow JSON")
    run_parser.add_argument(
        "-p", "--param", action="append", metavar="KEY=VALUE", help="Workflow parameter"
    )
    run_parser.add_argument(
        "-e", "--env", action="append", metavar="KEY=VALUE", help="Environment value"
    )
    run_parser.add_argument(
        "--module",
        action="append",
        metavar="FILE",
        help="Python file with @flow_node functions to register",
    )
    run_parser.add_argument(
        "--outputs-only",
        action="store_true",
        help="Print only workflow outputs instead of the whole shared context",
    )
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Validate a flow document")
    validate_parser.add_argument("flow", help="Path to flow JSON")
    validate_parser.set_defaults(func=cmd_validate)

    inputs_parser = subparsers.add_parser("inputs", help="List workflow parameters a flow uses")
    inputs_parser.add_argument("flow", help="Path to flow JSON")
    inputs_parser.add_argument("--module", action="append", metavar="FILE")
    inputs_parser.set_defaults(func=cmd_inputs)


def main(argv: list[str] | None = None) -> int:
    config = FlowConfig()

    parser = argparse.ArgumentParser(
        prog="flowgraph",
        description="flowgraph - Run and inspect flow graphs",
    )
    parser.add_argument("--log-level", default=config.log_level, help="Log level")
    parser.add_argument(
        "--log-format",
        default=config.log_format,
        choices=["auto", "json", "human"],
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
