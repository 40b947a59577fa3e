"""
Flow serialization - persisted JSON form of a node graph.

A flow document carries the format version, a name, creation time, free-form
metadata and one record per node. Callables are stored by registry key and
resolved through a FunctionRegistry on load; topology is stored as id lists
and rebuilt in a second pass.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from flowgraph.graph.node import Node, PathMapEntry
from flowgraph.runner.function_registry import FunctionRegistry, get_default_registry

logger = logging.getLogger(__name__)

FLOW_FORMAT_VERSION = "1.0"
DEFAULT_FLOW_NAME = "Untitled Flow"


class FlowSerializationError(ValueError):
    """A flow document could not be parsed."""


class SerializablePathMapEntry(BaseModel):
    """A mapping as stored on disk: ``{"from": ..., "to": ...}``."""

    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(default="", alias="from")
    to: str = ""


class SerializableNode(BaseModel):
    """One node of a persisted flow."""

    model_config = ConfigDict(extra="ignore")

    id: str
    function_key: str
    section: str = ""
    display_id: str = ""
    pos_x: float = 0.0
    pos_y: float = 0.0
    name_override: str | None = None

    input_map: list[SerializablePathMapEntry] = Field(default_factory=list)
    output_map: list[SerializablePathMapEntry] = Field(default_factory=list)
    dictionary_parameter_mappings: dict[str, list[SerializablePathMapEntry]] = Field(
        default_factory=dict
    )
    merge_output_with_input: bool = False
    declared_output_ports: list[str] = Field(default_factory=list)

    input_node_ids: list[str] = Field(default_factory=list)
    output_node_ids: list[str] = Field(default_factory=list)
    output_port_connections: dict[str, list[str]] = Field(default_factory=dict)


class SerializableFlow(BaseModel):
    """A persisted flow document."""

    version: str = FLOW_FORMAT_VERSION
    flow_name: str = DEFAULT_FLOW_NAME
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=dict)
    nodes: list[SerializableNode] = Field(default_factory=list)


class FlowMetadata(BaseModel):
    """Flow-level information returned alongside deserialized nodes."""

    version: str = FLOW_FORMAT_VERSION
    flow_name: str = DEFAULT_FLOW_NAME
    created_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def _entries_to_model(entries: Iterable[PathMapEntry]) -> list[SerializablePathMapEntry]:
    return [SerializablePathMapEntry(from_=entry.from_, to=entry.to) for entry in entries]


def _entries_from_model(entries: Iterable[SerializablePathMapEntry]) -> list[PathMapEntry]:
    return [PathMapEntry(entry.from_, entry.to) for entry in entries]


def _to_serializable(node: Node) -> SerializableNode:
    return SerializableNode(
        id=node.id,
        function_key=node.function_key,
        section=node.section,
        display_id=node.display_id,
        pos_x=node.pos_x,
        pos_y=node.pos_y,
        name_override=node.name_override,
        input_map=_entries_to_model(node.input_map),
        output_map=_entries_to_model(node.output_map),
        dictionary_parameter_mappings={
            name: _entries_to_model(entries)
            for name, entries in node.dictionary_parameter_mappings.items()
        },
        merge_output_with_input=node.merge_output_with_input,
        declared_output_ports=list(node.declared_output_ports),
        input_node_ids=[n.id for n in node.input_nodes],
        output_node_ids=[n.id for n in node.output_nodes],
        output_port_connections={
            port: [n.id for n in targets] for port, targets in node.output_ports.items()
        },
    )


def serialize_flow(
    nodes: Iterable[Node],
    flow_name: str | None = None,
    metadata: dict[str, Any] | None = None,
    indent: int | None = 2,
) -> str:
    """
    Serialize nodes (and their connections) to a flow JSON document.

    Args:
        nodes: Nodes to persist
        flow_name: Name stored in the document
        metadata: Free-form metadata stored in the document
        indent: JSON indentation (None for compact)

    Returns:
        The flow document as a JSON string
    """
    flow = SerializableFlow(
        flow_name=flow_name or DEFAULT_FLOW_NAME,
        metadata=dict(metadata or {}),
        nodes=[_to_serializable(node) for node in nodes],
    )
    return flow.model_dump_json(indent=indent, by_alias=True)


def _parse(text: str) -> SerializableFlow:
    try:
        return SerializableFlow.model_validate_json(text)
    except ValidationError as e:
        raise FlowSerializationError(f"Invalid flow document: {e}") from e


def deserialize_flow(
    text: str,
    registry: FunctionRegistry | None = None,
) -> tuple[list[Node], FlowMetadata]:
    """
    Rebuild nodes and their connections from a flow JSON document.

    Duplicate node ids keep their first occurrence. A connection to an id
    that is not in the document is an error.

    Args:
        text: Flow JSON
        registry: Resolves function keys (defaults to the core registry)

    Returns:
        (nodes in document order, flow metadata)

    Raises:
        FlowSerializationError: If the document is not a valid flow or a
            connection names an unknown node id
        FunctionNotFoundError: If a node's function key is not registered
        UnknownPortError: If a port connection names an undeclared port
    """
    if registry is None:
        registry = get_default_registry()
    flow = _parse(text)

    meta = FlowMetadata(
        version=flow.version,
        flow_name=flow.flow_name,
        created_at=flow.created_at,
        metadata=flow.metadata,
    )

    unique: dict[str, SerializableNode] = {}
    for record in flow.nodes:
        if record.id in unique:
            logger.warning(f"Duplicate node id '{record.id}' in flow; keeping first occurrence")
            continue
        unique[record.id] = record

    # First pass: create all nodes
    nodes: dict[str, Node] = {}
    for record in unique.values():
        nodes[record.id] = Node(
            registry.get(record.function_key),
            id=record.id,
            function_key=record.function_key,
            name_override=record.name_override,
            section=record.section,
            display_id=record.display_id,
            pos_x=record.pos_x,
            pos_y=record.pos_y,
            input_map=_entries_from_model(record.input_map),
            output_map=_entries_from_model(record.output_map),
            dictionary_parameter_mappings={
                name: _entries_from_model(entries)
                for name, entries in record.dictionary_parameter_mappings.items()
            },
            declared_output_ports=record.declared_output_ports or None,
            merge_output_with_input=record.merge_output_with_input,
        )

    def lookup(owner: str, node_id: str) -> Node:
        if node_id not in nodes:
            raise FlowSerializationError(
                f"Node '{owner}' is connected to unknown node id '{node_id}'"
            )
        return nodes[node_id]

    # Second pass: restore connections
    for record in unique.values():
        node = nodes[record.id]

        for input_id in record.input_node_ids:
            node.add_input_node(lookup(record.id, input_id))

        for output_id in record.output_node_ids:
            node.add_output_connection(None, lookup(record.id, output_id))

        for port, target_ids in record.output_port_connections.items():
            for target_id in target_ids:
                node.add_output_connection(port, lookup(record.id, target_id))

    return list(nodes.values()), meta


def validate_flow(text: str) -> tuple[bool, str | None]:
    """
    Check a flow document without resolving any functions.

    Returns:
        (True, None) if valid, else (False, error message)
    """
    try:
        flow = _parse(text)
    except FlowSerializationError as e:
        return False, str(e)

    if not flow.nodes:
        return False, "Flow contains no nodes."

    seen: set[str] = set()
    for record in flow.nodes:
        if record.id in seen:
            return False, f"Duplicate node ID found: {record.id}"
        seen.add(record.id)

    for record in flow.nodes:
        connected = [*record.input_node_ids, *record.output_node_ids]
        for target_ids in record.output_port_connections.values():
            connected.extend(target_ids)
        for node_id in connected:
            if node_id not in seen:
                return False, f"Node '{record.id}' is connected to unknown node id '{node_id}'"

    return True, None


def load_flow_file(
    path: str, registry: FunctionRegistry | None = None
) -> tuple[list[Node], FlowMetadata]:
    """Read and deserialize a flow document from disk."""
    with open(path, encoding="utf-8") as f:
        return deserialize_flow(f.read(), registry=registry)
