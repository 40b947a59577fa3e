"""
Path Document - Hierarchical JSON-like data addressed by dotted paths.

A document is a tree of dicts (string keys), lists and scalars
(str/int/float/bool/None). It is the container used for:
- a node's private input and result
- the shared, run-scoped context of a graph execution

Paths are dotted segment lists such as ``output.items.0.name``. A segment
that is a non-negative integer addresses a list index; any segment addresses
a dict key (including numeric-looking ones).

Example:
    doc = PathDocument()
    doc.set("output.items.0.name", "first")

    doc.get("output.items.0.name")   # "first"
    doc.get("output.missing")        # MISSING
"""

import copy
import json
from collections.abc import Iterator, Mapping
from typing import Any

from pydantic_core import to_jsonable_python


class _MissingSentinel:
    """Marks a path that does not exist in a document."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_MissingSentinel":
        return self

    def __deepcopy__(self, memo: dict) -> "_MissingSentinel":
        return self


MISSING: Any = _MissingSentinel()

PATH_SEPARATOR = "."


def split_path(path: str, separator: str = PATH_SEPARATOR) -> list[str]:
    """Split a dotted path, dropping empty segments."""
    return [segment for segment in path.split(separator) if segment]


def _as_index(segment: str) -> int | None:
    """Return the list index a segment denotes, or None."""
    if segment.isdigit():
        return int(segment)
    return None


def to_plain(value: Any) -> Any:
    """
    Convert a value to a deep, JSON-like copy.

    PathDocuments are unwrapped, dataclasses/pydantic models/datetimes are
    converted the way pydantic serializes them in JSON mode.
    """
    if isinstance(value, PathDocument):
        return copy.deepcopy(value.data)
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Mapping):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return to_jsonable_python(value)


class PathDocument:
    """
    Mutable JSON-like document with dotted-path access.

    ``get`` never raises for a missing path; it returns ``MISSING``.
    ``set`` creates intermediate containers as the path demands and
    overwrites anything in the way.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any] | None = None):
        self._data: dict[str, Any] = to_plain(data) if data else {}

    @property
    def data(self) -> dict[str, Any]:
        """The underlying root dict (live, not a copy)."""
        return self._data

    @property
    def is_empty(self) -> bool:
        return not self._data

    # === PATH ACCESS ===

    def get(self, path: str, default: Any = MISSING) -> Any:
        """
        Get the value at a dotted path.

        Args:
            path: Dotted path (e.g. "output.items.0")
            default: Value returned when the path does not exist

        Returns:
            The stored value (live reference for containers) or ``default``
        """
        current: Any = self._data
        for segment in split_path(path):
            if isinstance(current, dict):
                if segment not in current:
                    return default
                current = current[segment]
            elif isinstance(current, list):
                index = _as_index(segment)
                if index is None or index >= len(current):
                    return default
                current = current[index]
            else:
                return default
        return current

    def set(self, path: str, value: Any) -> "PathDocument":
        """
        Set the value at a dotted path, creating intermediate containers.

        A list is created when the next segment is a non-negative integer,
        a dict otherwise. Scalars in the way are replaced; a list addressed
        by a non-integer segment is replaced by a dict. Lists are padded
        with None up to the requested index.

        Args:
            path: Dotted path
            value: Value to store (deep-copied into plain JSON-like data)

        Returns:
            self, for chaining

        Raises:
            ValueError: If the path has no segments
        """
        segments = split_path(path)
        if not segments:
            raise ValueError("Path must contain at least one segment")

        plain = to_plain(value)
        parent: Any = self._data

        for i, segment in enumerate(segments[:-1]):
            wants_list = _as_index(segments[i + 1]) is not None
            child = self._child(parent, segment)
            if not isinstance(child, (dict, list)) or (isinstance(child, list) and not wants_list):
                child = [] if wants_list else {}
                self._assign(parent, segment, child)
            parent = child

        self._assign(parent, segments[-1], plain)
        return self

    def _child(self, container: Any, segment: str) -> Any:
        if isinstance(container, dict):
            return container.get(segment)
        index = _as_index(segment)
        if index is None or index >= len(container):
            return None
        return container[index]

    def _assign(self, container: Any, segment: str, value: Any) -> None:
        if isinstance(container, dict):
            container[segment] = value
            return

        index = _as_index(segment)
        if index is None:
            raise TypeError(f"Cannot address list with non-integer segment '{segment}'")
        while len(container) <= index:
            container.append(None)
        container[index] = value

    def delete(self, path: str) -> bool:
        """Remove the value at a path. Returns True if something was removed."""
        segments = split_path(path)
        if not segments:
            return False
        parent = self.get(PATH_SEPARATOR.join(segments[:-1])) if len(segments) > 1 else self._data
        last = segments[-1]
        if isinstance(parent, dict) and last in parent:
            del parent[last]
            return True
        index = _as_index(last)
        if isinstance(parent, list) and index is not None and index < len(parent):
            del parent[index]
            return True
        return False

    # === WHOLE-DOCUMENT OPERATIONS ===

    def merge(self, other: "PathDocument | Mapping[str, Any] | None") -> "PathDocument":
        """
        Deep-merge ``other`` into this document.

        - Both values are dicts: merge recursively
        - Otherwise: ``other``'s value overwrites (as a deep copy)

        Returns:
            self, for chaining
        """
        if other is None:
            return self
        source = other.data if isinstance(other, PathDocument) else to_plain(other)
        _merge_dicts(self._data, source)
        return self

    def to_flat_model(self) -> dict[str, Any]:
        """Return a plain nested dict/list/scalar copy for template evaluation."""
        return copy.deepcopy(self._data)

    def copy(self) -> "PathDocument":
        clone = PathDocument()
        clone._data = copy.deepcopy(self._data)
        return clone

    def to_json(self, indent: int | None = None) -> str:
        return json.dumps(self._data, indent=indent, default=str)

    @classmethod
    def from_json(cls, text: str) -> "PathDocument":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("PathDocument JSON must be an object")
        return cls(data)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.get(path) is not MISSING

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PathDocument):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"PathDocument({self._data!r})"


def _merge_dicts(target: dict[str, Any], source: dict[str, Any]) -> None:
    for key, value in source.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            _merge_dicts(existing, value)
        else:
            target[key] = copy.deepcopy(value)
