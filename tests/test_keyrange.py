import pytest

from kvsession import (
    UNBOUNDED,
    Bound,
    ConflictingRangeKeysError,
    Equals,
    ErrorCode,
    InvalidRangeKeyError,
    LowerBound,
    UpperBound,
    translate_range,
)
from kvsession._store.engine import KeyRange
from kvsession._store.errors import DataError
from kvsession.keyrange import resolve_key, to_native_range


@pytest.mark.parametrize(
    "constraint, expected",
    [
        ({"eq": 4}, Equals(4)),
        ({"gt": 4}, LowerBound(4, inclusive=False)),
        ({"gte": 4}, LowerBound(4, inclusive=True)),
        ({"lt": 4}, UpperBound(4, inclusive=False)),
        ({"lte": 4}, UpperBound(4, inclusive=True)),
    ],
)
def test_single_operator_translation(constraint, expected) -> None:
    assert translate_range(constraint) == expected


@pytest.mark.parametrize("operator", ["ne", "between", "GT", ""])
def test_unknown_single_operator_raises(operator: str) -> None:
    with pytest.raises(InvalidRangeKeyError) as excinfo:
        translate_range({operator: 1})
    assert excinfo.value.code == ErrorCode.INVALID_RANGE_KEY


@pytest.mark.parametrize(
    "constraint, expected",
    [
        ({"gt": 1, "lt": 9}, Bound(1, 9, False, False)),
        ({"gt": 1, "lte": 9}, Bound(1, 9, False, True)),
        ({"gte": 1, "lt": 9}, Bound(1, 9, True, False)),
        ({"gte": 1, "lte": 9}, Bound(1, 9, True, True)),
        ({"lte": 9, "gte": 1}, Bound(1, 9, True, True)),
    ],
)
def test_valid_pairs_produce_bounds(constraint, expected) -> None:
    assert translate_range(constraint) == expected


@pytest.mark.parametrize(
    "constraint",
    [
        {"gt": 1, "gte": 2},
        {"lt": 1, "lte": 2},
        {"eq": 1, "lt": 2},
        {"gt": 1, "nope": 2},
        {"foo": 1, "bar": 2},
    ],
)
def test_invalid_pairs_raise_conflict(constraint) -> None:
    with pytest.raises(ConflictingRangeKeysError) as excinfo:
        translate_range(constraint)
    assert excinfo.value.code == ErrorCode.CONFLICTING_RANGE_KEYS


def test_three_operators_and_empty_mapping_raise_conflict() -> None:
    with pytest.raises(ConflictingRangeKeysError):
        translate_range({"gt": 1, "lt": 5, "eq": 3})
    with pytest.raises(ConflictingRangeKeysError):
        translate_range({})


def test_non_mappings_pass_through() -> None:
    handle = KeyRange.only(3)
    assert translate_range(5) == 5
    assert translate_range("abc") == "abc"
    assert translate_range([1, 2]) == [1, 2]
    assert translate_range(handle) is handle


def test_native_range_flags_follow_inclusivity() -> None:
    native = to_native_range(Bound(1, 5, lower_inclusive=False, upper_inclusive=True))
    assert isinstance(native, KeyRange)
    assert (native.lower, native.upper) == (1, 5)
    assert native.lower_open is True
    assert native.upper_open is False
    assert native.includes(5)
    assert not native.includes(1)

    lower = to_native_range(LowerBound("m", inclusive=False))
    assert lower.includes("n") and not lower.includes("m")
    upper = to_native_range(UpperBound("m"))
    assert upper.includes("m") and not upper.includes("z")


def test_unbounded_resolves_to_none_and_keys_pass_through() -> None:
    assert to_native_range(UNBOUNDED) is None
    assert resolve_key(7) == 7
    assert resolve_key({"eq": 7}).includes(7)


def test_inverted_bounds_fail_at_conversion() -> None:
    descriptor = translate_range({"gte": 9, "lte": 1})
    assert descriptor == Bound(9, 1, True, True)
    with pytest.raises(DataError):
        to_native_range(descriptor)
