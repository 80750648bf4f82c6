"""Session and query layer over an ordered, versioned key-value store."""

from ._store import version as _engine_version
from .config import StoreConfig
from .errors import (
    BlockedUpgradeError,
    ConflictingRangeKeysError,
    ConstraintError,
    DataError,
    ErrorCode,
    InvalidRangeKeyError,
    InvalidStateError,
    KvSessionError,
    NameCollisionError,
    NotFoundError,
    ReadOnlyError,
    SessionClosedError,
    StoreError,
    VersionError,
    wrap_store_error,
)
from .keyrange import UNBOUNDED, Bound, Equals, LowerBound, UpperBound, translate_range
from .query import BuilderState, FinalQuery, IndexQuery, KeyQuery, Query, QuerySpec
from .registry import ConnectionRegistry
from .schema import CollectionDefinition, IndexDefinition, KeyOptions, StoreSchema
from .session import (
    Bare,
    CollectionProxy,
    Keyed,
    Session,
    SessionFactory,
    compare_keys,
    delete_store,
    open_session,
)

__all__ = [
    "version",
    "open_session",
    "delete_store",
    "compare_keys",
    "SessionFactory",
    "Session",
    "CollectionProxy",
    "Bare",
    "Keyed",
    "ConnectionRegistry",
    "StoreConfig",
    # Queries
    "IndexQuery",
    "Query",
    "KeyQuery",
    "FinalQuery",
    "BuilderState",
    "QuerySpec",
    # Ranges
    "translate_range",
    "Equals",
    "Bound",
    "LowerBound",
    "UpperBound",
    "UNBOUNDED",
    # Schema
    "StoreSchema",
    "CollectionDefinition",
    "IndexDefinition",
    "KeyOptions",
    # Error types
    "ErrorCode",
    "KvSessionError",
    "SessionClosedError",
    "InvalidRangeKeyError",
    "ConflictingRangeKeysError",
    "StoreError",
    "ConstraintError",
    "DataError",
    "NotFoundError",
    "ReadOnlyError",
    "VersionError",
    "InvalidStateError",
    "BlockedUpgradeError",
    "NameCollisionError",
    "wrap_store_error",
]


def version() -> str:
    """Return the package version string."""
    return _engine_version().split("+", 1)[0]
