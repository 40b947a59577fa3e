"""
Parameter Binding - Turn upstream documents into typed call arguments.

Each node declares, per callable parameter, a source expression. The binder
resolves that expression against the node's input document:

1. No expression: the parameter default, else the type's zero value
2. Plain path (no template markers): direct lookup, structured values kept
3. Template: rendered by an ExpressionEvaluator against the flattened
   input + shared context, repaired into JSON, parsed as a literal

The result is then coerced to the parameter's annotation with pydantic.

Special parameters (control-flow handle, execution context) are injected by
annotation and never resolved from the document.
"""

import collections.abc
import inspect
import json
import logging
import types
import typing
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import jinja2
from jinja2 import nodes as jinja_nodes
from pydantic import ConfigDict, TypeAdapter, ValidationError
from pydantic.errors import PydanticSchemaGenerationError

from flowgraph.graph.document import MISSING, PathDocument

logger = logging.getLogger(__name__)

TEMPLATE_MARKERS = ("{{", "}}", "{%", "%}")

_ZERO_VALUES: dict[Any, Any] = {int: 0, float: 0.0, bool: False, complex: 0j}


class BindingError(ValueError):
    """A parameter expression could not be resolved."""

    def __init__(self, message: str, parameter: str = "", expression: str = ""):
        super().__init__(message)
        self.parameter = parameter
        self.expression = expression


class CoercionError(TypeError):
    """A resolved value could not be converted to the parameter's type."""


# === EXPRESSION EVALUATION ===


class ExpressionEvaluator(Protocol):
    """Renders a template expression against a plain data model."""

    def render(self, expression: str, model: Mapping[str, Any]) -> str: ...


def _finalize(value: Any) -> Any:
    """Render values the way a JSON-minded template engine would."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if value is None:
        return ""
    return value


class JinjaExpressionEvaluator:
    """
    Default evaluator backed by jinja2.

    Containers render as JSON and booleans as ``true``/``false`` so the
    rendered text can be parsed back into a literal. Missing members render
    empty unless ``strict`` is set.
    """

    def __init__(self, strict: bool = False):
        self.strict = strict
        self._env = jinja2.Environment(
            undefined=jinja2.StrictUndefined if strict else jinja2.ChainableUndefined,
            finalize=_finalize,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self._templates: dict[str, jinja2.Template] = {}

    def render(self, expression: str, model: Mapping[str, Any]) -> str:
        template = self._templates.get(expression)
        if template is None:
            template = self._env.from_string(expression)
            self._templates[expression] = template
        return template.render(**model)

    def referenced_paths(self, expression: str) -> set[str]:
        """
        Dotted variable paths an expression reads.

        ``{{ workflow.parameters.name }}`` yields "workflow",
        "workflow.parameters" and "workflow.parameters.name".
        """
        try:
            ast = self._env.parse(expression)
        except jinja2.TemplateSyntaxError:
            return set()

        paths: set[str] = set()
        for node in ast.find_all((jinja_nodes.Getattr, jinja_nodes.Getitem, jinja_nodes.Name)):
            path = _variable_chain(node)
            if path:
                paths.add(path)
        return paths


def _variable_chain(node: jinja_nodes.Node) -> str | None:
    segments: list[str] = []
    current: jinja_nodes.Node | None = node
    while current is not None:
        if isinstance(current, jinja_nodes.Getattr):
            segments.append(current.attr)
            current = current.node
        elif isinstance(current, jinja_nodes.Getitem):
            if not isinstance(current.arg, jinja_nodes.Const):
                return None
            segments.append(str(current.arg.value))
            current = current.node
        elif isinstance(current, jinja_nodes.Name):
            segments.append(current.name)
            current = None
        else:
            return None
    return ".".join(reversed(segments))


def has_template_markers(expression: str) -> bool:
    return any(marker in expression for marker in TEMPLATE_MARKERS)


# === JSON REPAIR ===


def ensure_valid_json(text: str) -> str:
    """
    Best-effort repair of array-looking template output.

    Template engines emit identifiers inside arrays unquoted, e.g.
    ``[a, b, 3]``; this quotes them into ``["a","b",3]``. Objects and
    anything that already parses are returned unchanged.
    """
    if not text or not text.strip():
        return text

    trimmed = text.strip()
    if not trimmed.startswith(("[", "{")):
        return text

    try:
        json.loads(trimmed)
        return text
    except ValueError:
        pass

    if trimmed.startswith("[") and trimmed.endswith("]"):
        return fix_array_quoting(trimmed)

    return text


def fix_array_quoting(array_text: str) -> str:
    """Quote bare string elements of a bracketed array."""
    content = array_text[1:-1].strip()
    if not content:
        return "[]"

    fixed: list[str] = []
    for element in split_array_elements(content):
        item = element.strip()
        if item.startswith('"') and item.endswith('"') and len(item) >= 2:
            fixed.append(item)
        elif item.startswith(("[", "{")):
            fixed.append(ensure_valid_json(item))
        elif item in ("true", "false", "null"):
            fixed.append(item)
        elif _is_number(item):
            fixed.append(item)
        else:
            fixed.append(json.dumps(item))
    return f"[{','.join(fixed)}]"


def split_array_elements(content: str) -> list[str]:
    """Split on top-level commas, respecting nesting and quoted strings."""
    elements: list[str] = []
    current: list[str] = []
    depth = 0
    in_string = False
    escape_next = False

    for ch in content:
        if escape_next:
            current.append(ch)
            escape_next = False
            continue
        if ch == "\\":
            current.append(ch)
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            current.append(ch)
            continue
        if not in_string:
            if ch in "[{":
                depth += 1
            elif ch in "]}":
                depth -= 1
            elif ch == "," and depth == 0:
                elements.append("".join(current))
                current = []
                continue
        current.append(ch)

    if current:
        elements.append("".join(current))
    return elements


def _is_number(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return text.lower() not in ("nan", "inf", "-inf", "+inf", "infinity", "-infinity")


def parse_literal(text: str) -> Any:
    """
    Parse rendered template text into a value.

    JSON-looking text (objects, arrays, quoted strings, numbers,
    true/false/null) is decoded; anything else, or anything that fails to
    decode, is returned as the raw string.
    """
    trimmed = text.strip()
    if not trimmed:
        return text

    first = trimmed[0]
    looks_like_json = first in '{["-+' or first.isdigit() or first.lower() in "tfn"
    if not looks_like_json:
        return text

    try:
        return json.loads(trimmed)
    except ValueError:
        return text


def unquote(text: str) -> str:
    """Decode a JSON string literal (``"a\\tb"`` -> ``a<TAB>b``); other text is returned as-is."""
    trimmed = text.strip()
    if len(trimmed) >= 2 and trimmed[0] == '"' and trimmed[-1] == '"':
        try:
            decoded = json.loads(trimmed)
        except ValueError:
            return text
        if isinstance(decoded, str):
            return decoded
    return text


# === TYPE COERCION ===


def unwrap_optional(annotation: Any) -> Any:
    """``X | None`` -> ``X``; anything else unchanged."""
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        args = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def zero_value(annotation: Any) -> Any:
    """Zero value of a type: 0/0.0/False for value types, None otherwise."""
    return _ZERO_VALUES.get(annotation)


@lru_cache(maxsize=512)
def _adapter_for(target: Any) -> TypeAdapter:
    try:
        return TypeAdapter(target)
    except PydanticSchemaGenerationError:
        return TypeAdapter(target, config=ConfigDict(arbitrary_types_allowed=True))


def coerce_to_type(value: Any, target: Any) -> Any:
    """
    Coerce a JSON-like value to ``target``.

    Raises:
        CoercionError: If the value cannot represent the target type
    """
    if target is inspect.Parameter.empty or target is Any:
        return value
    if value is None or value is MISSING:
        return zero_value(target)
    if isinstance(value, PathDocument):
        value = value.to_flat_model()

    if unwrap_optional(target) is str:
        if isinstance(value, str):
            return value
        return json.dumps(value)

    try:
        return _adapter_for(target).validate_python(value)
    except (ValidationError, TypeError) as e:
        raise CoercionError(
            f"Unable to convert {type(value).__name__} value {value!r} to {_type_name(target)}"
        ) from e


def _type_name(annotation: Any) -> str:
    return getattr(annotation, "__name__", None) or str(annotation)


def _is_mapping_type(annotation: Any) -> bool:
    annotation = unwrap_optional(annotation)
    origin = typing.get_origin(annotation) or annotation
    return origin in (dict, collections.abc.Mapping, collections.abc.MutableMapping, typing.Mapping)


def _mapping_value_type(annotation: Any) -> Any:
    args = typing.get_args(unwrap_optional(annotation))
    return args[1] if len(args) == 2 else Any


# === SIGNATURES ===


@dataclass(frozen=True)
class ParameterInfo:
    """A callable parameter with its resolved annotation."""

    name: str
    kind: inspect._ParameterKind
    annotation: Any
    default: Any

    @property
    def has_default(self) -> bool:
        return self.default is not inspect.Parameter.empty

    @property
    def is_variadic(self) -> bool:
        return self.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)


@lru_cache(maxsize=1024)
def describe_parameters(func: Callable) -> tuple[ParameterInfo, ...]:
    """Parameters of ``func`` with string annotations resolved."""
    sig = inspect.signature(func)
    try:
        hints = typing.get_type_hints(func)
    except Exception:
        hints = {}

    return tuple(
        ParameterInfo(
            name=name,
            kind=param.kind,
            annotation=hints.get(name, param.annotation),
            default=param.default,
        )
        for name, param in sig.parameters.items()
    )


# === BINDER ===


class ParameterBinder:
    """
    Resolves a node's declared parameter mappings into call arguments.

    Example:
        binder = ParameterBinder()
        args = binder.bind(
            func=add,
            input_map={"a": "input.result", "b": "10"},
            input_doc=node.input,
        )
        add(**args)
    """

    def __init__(self, evaluator: ExpressionEvaluator | None = None):
        self.evaluator = evaluator or JinjaExpressionEvaluator()

    def bind(
        self,
        func: Callable,
        input_map: Mapping[str, str],
        input_doc: PathDocument,
        shared_doc: PathDocument | None = None,
        dictionary_mappings: Mapping[str, Mapping[str, str]] | None = None,
        injected: Mapping[type, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Build the argument dict for ``func``.

        Args:
            func: Backing callable
            input_map: parameter name -> source expression
            input_doc: The node's input document
            shared_doc: Run-scoped shared document (fallback lookups, template model)
            dictionary_mappings: parameter name -> {key: expression} for dict parameters
            injected: annotation type -> instance for handles supplied by identity

        Returns:
            parameter name -> value, in signature order

        Raises:
            BindingError: If a template fails to render
            CoercionError: If a value cannot be converted to its parameter type
        """
        injected = injected or {}
        dictionary_mappings = dictionary_mappings or {}
        arguments: dict[str, Any] = {}

        for param in describe_parameters(func):
            if param.is_variadic:
                continue

            handle = self._injected_value(param.annotation, injected)
            if handle is not MISSING:
                arguments[param.name] = handle
                continue

            if param.name in dictionary_mappings and _is_mapping_type(param.annotation):
                value_type = _mapping_value_type(param.annotation)
                arguments[param.name] = {
                    key: self.resolve(expression, value_type, input_doc, shared_doc, param.name)
                    for key, expression in dictionary_mappings[param.name].items()
                }
                continue

            expression = input_map.get(param.name)
            if expression is None:
                arguments[param.name] = (
                    param.default if param.has_default else zero_value(param.annotation)
                )
                continue

            arguments[param.name] = self.resolve(
                expression, param.annotation, input_doc, shared_doc, param.name
            )

        return arguments

    def resolve(
        self,
        expression: str,
        target: Any,
        input_doc: PathDocument,
        shared_doc: PathDocument | None = None,
        parameter: str = "",
    ) -> Any:
        """Resolve one expression to a value of type ``target``."""
        if not has_template_markers(expression):
            for doc in (input_doc, shared_doc):
                if doc is None:
                    continue
                value = doc.get(expression)
                if value is not MISSING:
                    return coerce_to_type(value, target)

        model = input_doc.copy().merge(shared_doc).to_flat_model()

        try:
            rendered = self.evaluator.render(expression, model)
        except jinja2.TemplateError as e:
            raise BindingError(
                f"Failed to evaluate expression for parameter '{parameter}': {e}",
                parameter=parameter,
                expression=expression,
            ) from e

        # Text bound to a str parameter is never reinterpreted as a number or null
        if unwrap_optional(target) is str:
            return unquote(rendered)

        if rendered == "":
            return zero_value(target)

        rendered = ensure_valid_json(rendered)
        return coerce_to_type(parse_literal(rendered), target)

    def _injected_value(self, annotation: Any, injected: Mapping[type, Any]) -> Any:
        annotation = unwrap_optional(annotation)
        if not isinstance(annotation, type):
            return MISSING
        for handle_type, handle in injected.items():
            if issubclass(annotation, handle_type):
                return handle
        return MISSING
