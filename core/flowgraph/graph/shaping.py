"""
Output shaping - map a callable's return value into named node outputs.

Three categories of return value:
- Single values (scalars, enums, UUIDs, collections, dicts, documents) are
  mapped whole: every output mapping receives the entire value.
- Curated types (datetime, date, time, timedelta) expose a hand-picked set
  of members instead of their full attribute surface.
- Everything else (dataclasses, pydantic models, named tuples, plain
  objects) is decomposed into members and each mapping picks one by path.
"""

import dataclasses
import datetime
import decimal
import enum
import inspect
import types
import typing
import uuid
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from flowgraph.graph.document import MISSING, PathDocument, to_plain

RESULT_MEMBER = "result"

_SCALAR_TYPES = (str, bytes, bool, int, float, complex, decimal.Decimal, uuid.UUID, enum.Enum)
_COLLECTION_TYPES = (list, tuple, set, frozenset, dict, Mapping)

_DATETIME_MEMBERS: dict[str, Callable[[Any], Any]] = {
    "year": lambda v: v.year,
    "month": lambda v: v.month,
    "day": lambda v: v.day,
    "hour": lambda v: v.hour,
    "minute": lambda v: v.minute,
    "second": lambda v: v.second,
    "microsecond": lambda v: v.microsecond,
    "weekday": lambda v: v.weekday(),
    "day_of_year": lambda v: v.timetuple().tm_yday,
    "date": lambda v: v.date().isoformat(),
    "time": lambda v: v.time().isoformat(),
    "timestamp": lambda v: v.timestamp(),
    "iso": lambda v: v.isoformat(),
}

_DATE_MEMBERS: dict[str, Callable[[Any], Any]] = {
    "year": lambda v: v.year,
    "month": lambda v: v.month,
    "day": lambda v: v.day,
    "weekday": lambda v: v.weekday(),
    "day_of_year": lambda v: v.timetuple().tm_yday,
    "iso": lambda v: v.isoformat(),
}

_TIME_MEMBERS: dict[str, Callable[[Any], Any]] = {
    "hour": lambda v: v.hour,
    "minute": lambda v: v.minute,
    "second": lambda v: v.second,
    "microsecond": lambda v: v.microsecond,
    "iso": lambda v: v.isoformat(),
}

_TIMEDELTA_MEMBERS: dict[str, Callable[[Any], Any]] = {
    "total_days": lambda v: v.total_seconds() / 86400,
    "total_hours": lambda v: v.total_seconds() / 3600,
    "total_minutes": lambda v: v.total_seconds() / 60,
    "total_seconds": lambda v: v.total_seconds(),
    "days": lambda v: v.days,
    "seconds": lambda v: v.seconds,
    "microseconds": lambda v: v.microseconds,
}

# datetime is a date subclass, so order matters
_CURATED: list[tuple[type, dict[str, Callable[[Any], Any]]]] = [
    (datetime.datetime, _DATETIME_MEMBERS),
    (datetime.date, _DATE_MEMBERS),
    (datetime.time, _TIME_MEMBERS),
    (datetime.timedelta, _TIMEDELTA_MEMBERS),
]


def curated_members_for(tp: Any) -> dict[str, Callable[[Any], Any]] | None:
    """Curated member extractors for a type, or None if it has none."""
    if not isinstance(tp, type):
        return None
    for curated_type, members in _CURATED:
        if issubclass(tp, curated_type):
            return members
    return None


def is_single_value_type(tp: Any) -> bool:
    """Whether values of ``tp`` are mapped whole rather than decomposed."""
    if tp is None or tp is type(None) or tp is Any:
        return True
    origin = typing.get_origin(tp)
    if origin is not None:
        # list[int], dict[str, Any], X | None, Literal[...] ...
        if origin in (typing.Union, typing.Literal, types.UnionType):
            return True
        tp = origin
    if not isinstance(tp, type):
        return True
    if issubclass(tp, PathDocument):
        return True
    if _is_named_tuple(tp):
        return False
    return issubclass(tp, _SCALAR_TYPES + _COLLECTION_TYPES)


def is_single_value(value: Any) -> bool:
    return value is None or is_single_value_type(type(value))


def _is_named_tuple(tp: type) -> bool:
    return issubclass(tp, tuple) and hasattr(tp, "_fields")


def extract_members(value: Any) -> dict[str, Any]:
    """
    Decompose a structured value into a plain member dict.

    Curated types use their curated members; dataclasses, pydantic models
    and named tuples use their declared fields; other objects their public
    instance attributes.
    """
    curated = curated_members_for(type(value))
    if curated is not None:
        return {name: to_plain(getter(value)) for name, getter in curated.items()}

    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_jsonable_python(value)
    if _is_named_tuple(type(value)):
        return {k: to_plain(v) for k, v in value._asdict().items()}

    attrs = getattr(value, "__dict__", None)
    if attrs is not None:
        return {k: to_plain(v) for k, v in attrs.items() if not k.startswith("_")}

    plain = to_jsonable_python(value, fallback=str)
    return plain if isinstance(plain, dict) else {RESULT_MEMBER: plain}


def shape_output(value: Any, output_map: Iterable[tuple[str, str]]) -> list[tuple[str, Any]]:
    """
    Project a return value through output mappings.

    Args:
        value: The callable's return value
        output_map: (member path, output name) pairs

    Returns:
        (output name, plain value) pairs in mapping order. Members that do
        not exist produce None.
    """
    if is_single_value(value):
        whole = to_plain(value)
        return [(to, whole) for _, to in output_map]

    members = PathDocument(extract_members(value))
    shaped = []
    for from_, to in output_map:
        member = members.get(from_)
        shaped.append((to, None if member is MISSING else member))
    return shaped


def return_members(func: Callable) -> list[str]:
    """
    Output members a callable exposes, derived from its return annotation.

    Used to auto-generate output mappings. Unannotated or single-value
    returns expose one member, ``result``; ``None`` returns expose nothing.
    """
    try:
        hints = typing.get_type_hints(func)
        annotation = hints.get("return", inspect.Signature.empty)
    except Exception:
        annotation = inspect.signature(func).return_annotation

    if annotation is None or annotation is type(None):
        return []
    if annotation is inspect.Signature.empty:
        return [RESULT_MEMBER]

    curated = curated_members_for(annotation)
    if curated is not None:
        return list(curated)
    if is_single_value_type(annotation):
        return [RESULT_MEMBER]
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return list(annotation.model_fields)
    if dataclasses.is_dataclass(annotation):
        return [f.name for f in dataclasses.fields(annotation)]
    if _is_named_tuple(annotation):
        return list(annotation._fields)
    return [RESULT_MEMBER]
