"""Tests for the flowgraph command-line interface."""

import json
import logging
import textwrap

import pytest

from flowgraph.cli import main
from flowgraph.graph.graph import Graph
from flowgraph.graph.node import Node, PathMapEntry
from flowgraph.runner.core_nodes import get_input, set_output, start


def adder(a: int, b: int) -> int:
    return a + b


@pytest.fixture(autouse=True)
def restore_logging(monkeypatch):
    """main() reconfigures the root logger."""
    for name in ("FLOWGRAPH_LOG_LEVEL", "FLOWGRAPH_LOG_FORMAT", "FLOWGRAPH_START_MARKER"):
        monkeypatch.delenv(name, raising=False)
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def greeting_flow(tmp_path):
    graph = Graph(name="Greeting")
    graph.add_node(Node(start, id="start"))
    graph.add_node(
        Node(
            get_input,
            id="region",
            input_map=[PathMapEntry('"region"', "name")],
            output_map=[PathMapEntry("result", "result")],
        )
    )
    graph.add_node(
        Node(
            set_output,
            id="greet",
            input_map=[
                PathMapEntry('"greeting"', "name"),
                PathMapEntry("Hello {{ workflow.parameters.who }}", "value"),
            ],
        )
    )
    graph.connect("start", "region")
    graph.connect("start", "greet")

    path = tmp_path / "greeting.json"
    path.write_text(graph.to_json(), encoding="utf-8")
    return path


@pytest.fixture
def module_flow(tmp_path):
    module = tmp_path / "math_nodes.py"
    module.write_text(
        textwrap.dedent(
            """
            from flowgraph.runner.function_registry import flow_node

            @flow_node(name="math.add", section="Math")
            def add(a: int, b: int) -> int:
                return a + b
            """
        )
    )

    graph = Graph()
    graph.add_node(Node(start, id="start"))
    graph.add_node(
        Node(
            adder,
            id="add",
            function_key="math.add",
            input_map=[
                PathMapEntry("workflow.parameters.a", "a"),
                PathMapEntry("{{ workflow.parameters.b }}", "b"),
            ],
            output_map=[PathMapEntry("result", "workflow.output.sum")],
        )
    )
    graph.connect("start", "add")

    path = tmp_path / "math.json"
    path.write_text(graph.to_json(), encoding="utf-8")
    return path, module


def run_cli(*argv: str) -> int:
    return main(["--log-format", "human", *argv])


class TestRun:
    def test_outputs_only(self, greeting_flow, capsys):
        code = run_cli("run", str(greeting_flow), "-p", "who=ada", "--outputs-only")

        assert code == 0
        assert json.loads(capsys.readouterr().out) == {"greeting": "Hello ada"}

    def test_prints_shared_context(self, greeting_flow, capsys):
        code = run_cli("run", str(greeting_flow), "-p", "who=ada", "-p", "region=eu")

        assert code == 0
        shared = json.loads(capsys.readouterr().out)
        assert shared["workflow"]["parameters"] == {"who": "ada", "region": "eu"}
        assert shared["workflow"]["output"]["greeting"] == "Hello ada"
        assert shared["nodes"]["region"]["output"]["result"] == "eu"

    def test_module_functions_are_registered(self, module_flow, capsys):
        flow, module = module_flow
        code = run_cli(
            "run", str(flow), "--module", str(module), "-p", "a=2", "-p", "b=3", "--outputs-only"
        )

        assert code == 0
        assert json.loads(capsys.readouterr().out) == {"sum": 5}

    def test_unknown_function_key(self, module_flow, capsys):
        flow, _ = module_flow
        code = run_cli("run", str(flow))

        assert code == 1
        assert "math.add" in capsys.readouterr().err

    def test_bad_parameter_pair(self, greeting_flow, capsys):
        code = run_cli("run", str(greeting_flow), "-p", "no-equals-sign")

        assert code == 1
        assert "--param expects KEY=VALUE" in capsys.readouterr().err

    def test_failed_node_sets_exit_code(self, module_flow, capsys):
        flow, module = module_flow
        code = run_cli("run", str(flow), "--module", str(module), "-p", "a=two", "-p", "b=3")

        assert code == 1
        assert "Node 'add' failed" in capsys.readouterr().err

    def test_missing_file(self, tmp_path, capsys):
        code = run_cli("run", str(tmp_path / "absent.json"))

        assert code == 1
        assert capsys.readouterr().err.startswith("Error:")


class TestValidate:
    def test_valid(self, greeting_flow, capsys):
        assert run_cli("validate", str(greeting_flow)) == 0
        assert "Flow is valid" in capsys.readouterr().out

    def test_invalid(self, tmp_path, capsys):
        path = tmp_path / "empty.json"
        path.write_text(json.dumps({"nodes": []}), encoding="utf-8")

        assert run_cli("validate", str(path)) == 1
        assert "Invalid flow: Flow contains no nodes." in capsys.readouterr().err


class TestInputs:
    def test_lists_referenced_parameters(self, greeting_flow, capsys):
        assert run_cli("inputs", str(greeting_flow)) == 0
        assert capsys.readouterr().out.split() == ["region", "who"]


class TestArguments:
    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            main([])
