"""Fluent query builder.

A query starts from an ``IndexQuery`` range constructor and moves through the
states of ``BuilderState``. Each state is its own facade class exposing only
the calls valid there:

- ``Query`` (INITIAL): filter, desc, distinct, limit, map, keys, modify,
  count, execute
- ``KeyQuery`` (KEYS): filter, desc, distinct, map, execute
- ``FinalQuery`` (WRITE / COUNT): execute

Nothing runs until ``execute()``. Every execution snapshots the accumulated
intent into a frozen ``QuerySpec``, so executing the same builder again
re-runs the same query against current data.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, List, Mapping, Optional, Tuple, Union

from .errors import SessionClosedError
from .keyrange import UNBOUNDED, Bound, Equals, LowerBound, UpperBound

if TYPE_CHECKING:
    from .session import Session


class BuilderState(enum.Enum):
    INITIAL = "initial"
    KEYS = "keys"
    WRITE = "write"
    COUNT = "count"


def _kind(value: Any) -> type:
    if isinstance(value, bool):
        return bool
    if isinstance(value, (int, float)):
        return float
    return type(value)


def strict_equals(left: Any, right: Any) -> bool:
    return _kind(left) is _kind(right) and left == right


@dataclass(frozen=True)
class FieldFilter:
    """Matches records whose ``name`` field strictly equals ``value``.

    Numbers compare across int and float, but never against booleans or
    numeric strings.
    """

    name: str
    value: Any

    def matches(self, record: Any) -> bool:
        if not isinstance(record, Mapping) or self.name not in record:
            return False
        return strict_equals(record[self.name], self.value)


@dataclass(frozen=True)
class PredicateFilter:
    predicate: Callable[[Any], Any]

    def matches(self, record: Any) -> bool:
        return bool(self.predicate(record))


Filter = Union[FieldFilter, PredicateFilter]


@dataclass(frozen=True)
class QuerySpec:
    collection: str
    index: Optional[str]
    key_range: Any
    state: BuilderState = BuilderState.INITIAL
    descending: bool = False
    distinct: bool = False
    filters: Tuple[Filter, ...] = ()
    window: Optional[Tuple[int, int]] = None
    modify: Optional[Tuple[Tuple[str, Any], ...]] = None
    mapper: Optional[Callable[[Any], Any]] = None

    @property
    def keys_only(self) -> bool:
        return self.state is BuilderState.KEYS

    @property
    def count(self) -> bool:
        return self.state is BuilderState.COUNT

    @property
    def cursor_direction(self) -> str:
        direction = "prev" if self.descending else "next"
        return direction + "unique" if self.distinct else direction


def _check_count(value: Any, ctx: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{ctx} must be an integer")
    if value < 0:
        raise ValueError(f"{ctx} must be >= 0")
    return value


class _QueryState:
    """Mutable intent shared by the facades of one query chain."""

    def __init__(
        self,
        session: "Session",
        collection: str,
        index: Optional[str],
        key_range: Any,
        *,
        poisoned: bool = False,
    ) -> None:
        self.session = session
        self.collection = collection
        self.index = index
        self.key_range = key_range
        self.poisoned = poisoned
        self.state = BuilderState.INITIAL
        self.descending = False
        self.distinct = False
        self.filters: List[Filter] = []
        self.window: Optional[Tuple[int, int]] = None
        self.modify: Optional[Tuple[Tuple[str, Any], ...]] = None
        self.mapper: Optional[Callable[[Any], Any]] = None

    def add_filter(self, args: Tuple[Any, ...]) -> None:
        if not args or not args[0]:
            return
        if len(args) == 1:
            if not callable(args[0]):
                raise TypeError("filter() takes a predicate or a field name and a value")
            self.filters.append(PredicateFilter(args[0]))
        elif len(args) == 2:
            if not isinstance(args[0], str):
                raise TypeError("filter() field names must be strings")
            self.filters.append(FieldFilter(args[0], args[1]))
        else:
            raise TypeError(f"filter() takes one or two arguments, got {len(args)}")

    def set_mapper(self, fn: Callable[[Any], Any]) -> None:
        if not callable(fn):
            raise TypeError("map() requires a callable")
        self.mapper = fn

    def snapshot(self) -> QuerySpec:
        return QuerySpec(
            collection=self.collection,
            index=self.index,
            key_range=self.key_range,
            state=self.state,
            descending=self.descending,
            distinct=self.distinct,
            filters=tuple(self.filters),
            window=self.window,
            modify=self.modify,
            mapper=self.mapper,
        )

    async def execute(self) -> Any:
        if self.poisoned:
            raise SessionClosedError()
        return await self.session._execute_query(self.snapshot())


class _Stage:
    _expected = BuilderState.INITIAL

    def __init__(self, query: _QueryState) -> None:
        self._query = query

    def _ensure_state(self, op: str) -> _QueryState:
        if self._query.state is not self._expected:
            raise RuntimeError(f"{op}() is not available in the {self._query.state.value} state")
        return self._query

    @property
    def state(self) -> BuilderState:
        return self._query.state

    def spec(self) -> QuerySpec:
        return self._query.snapshot()

    async def execute(self) -> Any:
        """Run the query in one transaction and return its results."""
        return await self._query.execute()


class FinalQuery(_Stage):
    """A write or count query; it can only be executed."""


class KeyQuery(_Stage):
    """Key-only traversal: results are cursor keys instead of records."""

    _expected = BuilderState.KEYS

    def filter(self, *args: Any) -> "KeyQuery":
        self._ensure_state("filter").add_filter(args)
        return self

    def desc(self) -> "KeyQuery":
        self._ensure_state("desc").descending = True
        return self

    def distinct(self) -> "KeyQuery":
        self._ensure_state("distinct").distinct = True
        return self

    def map(self, fn: Callable[[Any], Any]) -> "KeyQuery":
        self._ensure_state("map").set_mapper(fn)
        return self


class Query(_Stage):
    def filter(self, *args: Any) -> "Query":
        """Add a filter: ``filter(field, value)`` or ``filter(predicate)``.

        Filters combine with AND in declaration order. An empty filter is
        ignored.
        """
        self._ensure_state("filter").add_filter(args)
        return self

    def desc(self) -> "Query":
        self._ensure_state("desc").descending = True
        return self

    def distinct(self) -> "Query":
        self._ensure_state("distinct").distinct = True
        return self

    def limit(self, first: int, second: Optional[int] = None) -> "Query":
        """``limit(take)`` or ``limit(skip, take)``."""
        if second is None:
            window = (0, _check_count(first, "limit"))
        else:
            window = (_check_count(first, "skip"), _check_count(second, "limit"))
        self._ensure_state("limit").window = window
        return self

    def map(self, fn: Callable[[Any], Any]) -> "Query":
        self._ensure_state("map").set_mapper(fn)
        return self

    def keys(self) -> KeyQuery:
        self._ensure_state("keys").state = BuilderState.KEYS
        return KeyQuery(self._query)

    def modify(self, rule: Mapping[str, Any]) -> FinalQuery:
        """Set fields on every matching record and write it back.

        Values of ``rule`` are literals or callables taking the record.
        """
        if not isinstance(rule, Mapping):
            raise TypeError("modify() requires a mapping of field -> value")
        self._ensure_state("modify").modify = tuple(rule.items())
        self._query.state = BuilderState.WRITE
        return FinalQuery(self._query)

    def count(self) -> FinalQuery:
        self._ensure_state("count").state = BuilderState.COUNT
        return FinalQuery(self._query)


class IndexQuery:
    """Range constructors for a collection, or for one of its indexes."""

    def __init__(
        self,
        session: "Session",
        collection: str,
        index: Optional[str] = None,
        *,
        poisoned: bool = False,
    ) -> None:
        self._session = session
        self._collection = collection
        self._index = index
        self._poisoned = poisoned

    def _start(self, key_range: Any) -> Query:
        return Query(
            _QueryState(
                self._session,
                self._collection,
                self._index,
                key_range,
                poisoned=self._poisoned,
            )
        )

    def equals(self, value: Any) -> Query:
        return self._start(Equals(value))

    only = equals

    def bound(
        self,
        lower: Any,
        upper: Any,
        lower_inclusive: bool = True,
        upper_inclusive: bool = True,
    ) -> Query:
        return self._start(Bound(lower, upper, lower_inclusive, upper_inclusive))

    def lower_bound(self, value: Any, inclusive: bool = True) -> Query:
        return self._start(LowerBound(value, inclusive))

    def upper_bound(self, value: Any, inclusive: bool = True) -> Query:
        return self._start(UpperBound(value, inclusive))

    def range(self, constraint: Mapping[str, Any]) -> Query:
        """Start from a comparison mapping such as ``{"gt": 1, "lte": 5}``.

        The mapping is translated when the query executes.
        """
        return self._start(constraint)

    def filter(self, *args: Any) -> Query:
        return self.all().filter(*args)

    def all(self) -> Query:
        return self._start(UNBOUNDED)
