"""Tests for output shaping: single values, curated members and decomposition."""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel

from flowgraph.graph.document import PathDocument
from flowgraph.graph.shaping import (
    RESULT_MEMBER,
    extract_members,
    is_single_value_type,
    return_members,
    shape_output,
)


@dataclass
class Point:
    x: int
    y: int


@dataclass
class Envelope:
    label: str
    point: Point


class Order(BaseModel):
    id: str
    total: float


class Pair(NamedTuple):
    left: str
    right: str


class Color(Enum):
    RED = "red"


class TestSingleValues:
    def test_scalar_maps_whole(self):
        assert shape_output(15, [("result", "result")]) == [("result", 15)]

    def test_every_mapping_gets_the_whole_value(self):
        shaped = shape_output([1, 2], [("result", "items"), ("anything", "copy")])
        assert shaped == [("items", [1, 2]), ("copy", [1, 2])]

    def test_dict_is_not_decomposed(self):
        assert shape_output({"a": 1}, [("a", "value")]) == [("value", {"a": 1})]

    def test_none_maps_to_none(self):
        assert shape_output(None, [("result", "result")]) == [("result", None)]

    def test_enum_maps_to_its_value(self):
        assert shape_output(Color.RED, [("result", "color")]) == [("color", "red")]

    def test_document_is_a_single_value(self):
        doc = PathDocument({"a": 1})
        assert shape_output(doc, [("result", "doc")]) == [("doc", {"a": 1})]

    def test_single_value_types(self):
        assert is_single_value_type(int)
        assert is_single_value_type(list[int])
        assert is_single_value_type(dict[str, Any])
        assert is_single_value_type(int | None)
        assert not is_single_value_type(Point)
        assert not is_single_value_type(Pair)


class TestDecomposition:
    def test_dataclass_members(self):
        shaped = shape_output(Point(1, 2), [("x", "x"), ("y", "y")])
        assert shaped == [("x", 1), ("y", 2)]

    def test_missing_member_is_none(self):
        assert shape_output(Point(1, 2), [("z", "z")]) == [("z", None)]

    def test_nested_member_path(self):
        shaped = shape_output(Envelope("a", Point(3, 4)), [("point.y", "y"), ("point", "p")])
        assert shaped == [("y", 4), ("p", {"x": 3, "y": 4})]

    def test_pydantic_model_members(self):
        shaped = shape_output(Order(id="o-1", total=9.5), [("id", "order_id"), ("total", "total")])
        assert shaped == [("order_id", "o-1"), ("total", 9.5)]

    def test_named_tuple_members(self):
        assert shape_output(Pair("a", "b"), [("right", "r")]) == [("r", "b")]

    def test_plain_object_public_attributes(self):
        class Thing:
            def __init__(self):
                self.name = "widget"
                self._secret = "hidden"

        assert extract_members(Thing()) == {"name": "widget"}


class TestCuratedMembers:
    def test_datetime(self):
        value = datetime(2024, 3, 5, 10, 30)
        shaped = dict(shape_output(value, [("year", "year"), ("date", "day"), ("hour", "hour")]))
        assert shaped == {"year": 2024, "day": "2024-03-05", "hour": 10}

    def test_date(self):
        members = extract_members(date(2024, 2, 1))
        assert members["day_of_year"] == 32
        assert members["iso"] == "2024-02-01"
        assert "hour" not in members

    def test_timedelta(self):
        members = extract_members(timedelta(hours=2))
        assert members["total_minutes"] == 120.0
        assert members["seconds"] == 7200


class TestReturnMembers:
    def test_none_return_has_no_members(self):
        def func() -> None:
            pass

        assert return_members(func) == []

    def test_unannotated_return_is_result(self):
        def func():
            pass

        assert return_members(func) == [RESULT_MEMBER]

    def test_single_value_returns(self):
        def count() -> int:
            return 0

        def items() -> list[str]:
            return []

        assert return_members(count) == [RESULT_MEMBER]
        assert return_members(items) == [RESULT_MEMBER]

    def test_structured_returns(self):
        def point() -> Point:
            return Point(0, 0)

        def order() -> Order:
            return Order(id="", total=0)

        def pair() -> Pair:
            return Pair("", "")

        assert return_members(point) == ["x", "y"]
        assert return_members(order) == ["id", "total"]
        assert return_members(pair) == ["left", "right"]

    def test_curated_returns(self):
        def now() -> datetime:
            return datetime.now()

        members = return_members(now)
        assert "year" in members
        assert "iso" in members
