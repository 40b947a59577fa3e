"""Persisted flow documents."""

from flowgraph.storage.flow_serializer import (
    FlowMetadata,
    FlowSerializationError,
    SerializableFlow,
    SerializableNode,
    deserialize_flow,
    load_flow_file,
    serialize_flow,
    validate_flow,
)

__all__ = [
    "FlowMetadata",
    "FlowSerializationError",
    "SerializableFlow",
    "SerializableNode",
    "deserialize_flow",
    "load_flow_file",
    "serialize_flow",
    "validate_flow",
]
