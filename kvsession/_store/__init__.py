"""Ordered, versioned key-value store engine backing kvsession sessions."""

import sqlite3

from .engine import (
    DIRECTIONS,
    EVENT_TYPES,
    READONLY,
    READWRITE,
    VERSIONCHANGE,
    Cursor,
    Database,
    Index,
    KeyRange,
    ObjectStore,
    StoreEvent,
    Transaction,
    UpgradeTransaction,
    delete_database,
    live_connections,
    open_database,
)
from .keys import compare_keys, decode_key, encode_key, is_valid_key

_ENGINE_VERSION = "0.1.0"

__all__ = [
    "DIRECTIONS",
    "EVENT_TYPES",
    "READONLY",
    "READWRITE",
    "VERSIONCHANGE",
    "Cursor",
    "Database",
    "Index",
    "KeyRange",
    "ObjectStore",
    "StoreEvent",
    "Transaction",
    "UpgradeTransaction",
    "compare_keys",
    "decode_key",
    "delete_database",
    "encode_key",
    "is_valid_key",
    "live_connections",
    "open_database",
    "version",
]


def version() -> str:
    return f"{_ENGINE_VERSION}+sqlite{sqlite3.sqlite_version}"
