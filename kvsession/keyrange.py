"""Comparison-style range translation.

A comparison mapping such as ``{"gte": 3, "lt": 9}`` is turned into one of the
range descriptors below; anything that is not a mapping is passed through
unchanged so plain keys and native ``KeyRange`` handles keep working.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

from ._store.engine import KeyRange
from .errors import ConflictingRangeKeysError, InvalidRangeKeyError

RANGE_OPERATORS = ("eq", "gt", "gte", "lt", "lte")

# operator -> inclusive
_LOWER = {"gt": False, "gte": True}
_UPPER = {"lt": False, "lte": True}


@dataclass(frozen=True)
class Equals:
    value: Any


@dataclass(frozen=True)
class LowerBound:
    value: Any
    inclusive: bool = True


@dataclass(frozen=True)
class UpperBound:
    value: Any
    inclusive: bool = True


@dataclass(frozen=True)
class Bound:
    lower: Any
    upper: Any
    lower_inclusive: bool = True
    upper_inclusive: bool = True


class _Unbounded:
    _instance = None

    def __new__(cls) -> "_Unbounded":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNBOUNDED"


UNBOUNDED = _Unbounded()

RangeDescriptor = Union[Equals, Bound, LowerBound, UpperBound, _Unbounded]


def translate_range(constraint: Any) -> Any:
    """Translate a comparison mapping into a range descriptor.

    Args:
        constraint: A mapping drawn from ``eq``, ``gt``, ``gte``, ``lt``, ``lte``,
            or any other value (returned as is)

    Raises:
        InvalidRangeKeyError: A single operator outside the known set
        ConflictingRangeKeysError: Operators that do not form one lower/upper pair
    """
    if not isinstance(constraint, Mapping):
        return constraint
    operators = list(constraint)
    if len(operators) == 1:
        op = operators[0]
        value = constraint[op]
        if op == "eq":
            return Equals(value)
        if op in _LOWER:
            return LowerBound(value, _LOWER[op])
        if op in _UPPER:
            return UpperBound(value, _UPPER[op])
        raise InvalidRangeKeyError(
            f"unknown range operator {op!r}; expected one of {', '.join(RANGE_OPERATORS)}"
        )
    if len(operators) == 2:
        lower = [op for op in operators if op in _LOWER]
        upper = [op for op in operators if op in _UPPER]
        if len(lower) == 1 and len(upper) == 1:
            return Bound(
                constraint[lower[0]],
                constraint[upper[0]],
                _LOWER[lower[0]],
                _UPPER[upper[0]],
            )
        raise ConflictingRangeKeysError(
            f"range operators {operators!r} must pair one of gt/gte with one of lt/lte"
        )
    raise ConflictingRangeKeysError(
        f"a range takes one or two operators, got {len(operators)}"
    )


def to_native_range(descriptor: Any) -> Any:
    """Turn a descriptor into a ``KeyRange``; ``UNBOUNDED`` becomes ``None``.

    Primitive keys and native handles are returned unchanged.
    """
    if isinstance(descriptor, Equals):
        return KeyRange.only(descriptor.value)
    if isinstance(descriptor, LowerBound):
        return KeyRange.lower_bound(descriptor.value, lower_open=not descriptor.inclusive)
    if isinstance(descriptor, UpperBound):
        return KeyRange.upper_bound(descriptor.value, upper_open=not descriptor.inclusive)
    if isinstance(descriptor, Bound):
        return KeyRange.bound(
            descriptor.lower,
            descriptor.upper,
            lower_open=not descriptor.lower_inclusive,
            upper_open=not descriptor.upper_inclusive,
        )
    if descriptor is UNBOUNDED:
        return None
    return descriptor


def resolve_key(key: Any) -> Any:
    return to_native_range(translate_range(key))
