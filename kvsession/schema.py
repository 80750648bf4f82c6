"""Declared store schemas and their reconciliation during an upgrade."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import structlog
from typing_extensions import TypedDict

from ._store.engine import UpgradeTransaction

logger = structlog.get_logger()

KeyPath = Union[str, Sequence[str]]


class KeyOptions(TypedDict, total=False):
    keyPath: KeyPath
    key_path: KeyPath
    autoIncrement: bool
    auto_increment: bool


class IndexDefinition(TypedDict, total=False):
    key: KeyPath
    unique: bool
    multiEntry: bool
    multi_entry: bool


class CollectionDefinition(TypedDict, total=False):
    key: KeyOptions
    indexes: Mapping[str, IndexDefinition]


StoreSchema = Mapping[str, CollectionDefinition]


class NormalizedIndex(TypedDict):
    key_path: KeyPath
    unique: bool
    multi_entry: bool


class NormalizedCollection(TypedDict):
    key_path: Optional[KeyPath]
    auto_increment: bool
    indexes: Dict[str, NormalizedIndex]


@dataclass
class ReconcileSummary:
    dropped: List[str] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    indexes_created: List[Tuple[str, str]] = field(default_factory=list)


def _pick(definition: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in definition:
            return definition[name]
    return None


def _check_key_path(value: Any, ctx: str) -> KeyPath:
    if isinstance(value, str):
        return value
    if isinstance(value, Sequence) and value and all(isinstance(part, str) for part in value):
        return list(value)
    raise TypeError(f"{ctx} must be a string or a non-empty sequence of strings")


def normalize_schema(schema: StoreSchema) -> Dict[str, NormalizedCollection]:
    if not isinstance(schema, Mapping):
        raise TypeError("schema must be a mapping from collection name -> definition")

    normalized: Dict[str, NormalizedCollection] = {}
    for name, definition in schema.items():
        if not isinstance(name, str) or not name:
            raise ValueError("collection names must be non-empty strings")
        definition = definition or {}
        if not isinstance(definition, Mapping):
            raise TypeError(f"definition for collection '{name}' must be a mapping")

        key_options = definition.get("key") or {}
        if not isinstance(key_options, Mapping):
            raise TypeError(f"'key' for collection '{name}' must be a mapping of key options")
        raw_path = _pick(key_options, "keyPath", "key_path")
        key_path = None if raw_path is None else _check_key_path(raw_path, f"key path of '{name}'")
        auto_increment = bool(_pick(key_options, "autoIncrement", "auto_increment"))

        raw_indexes = definition.get("indexes") or {}
        if not isinstance(raw_indexes, Mapping):
            raise TypeError(f"'indexes' for collection '{name}' must be a mapping")
        indexes: Dict[str, NormalizedIndex] = {}
        for index_name, index in raw_indexes.items():
            if not isinstance(index_name, str) or not index_name:
                raise ValueError(f"index names of '{name}' must be non-empty strings")
            index = index or {}
            if not isinstance(index, Mapping):
                raise TypeError(f"definition for index '{name}.{index_name}' must be a mapping")
            index_path = index.get("key") or index_name
            indexes[index_name] = {
                "key_path": _check_key_path(index_path, f"key of index '{name}.{index_name}'"),
                "unique": bool(index.get("unique", False)),
                "multi_entry": bool(_pick(index, "multiEntry", "multi_entry")),
            }

        normalized[name] = {
            "key_path": key_path,
            "auto_increment": auto_increment,
            "indexes": indexes,
        }
    return normalized


async def reconcile_schema(
    tx: UpgradeTransaction, schema: Mapping[str, NormalizedCollection]
) -> ReconcileSummary:
    """Bring the store's collections in line with ``schema``.

    Undeclared collections are dropped, missing ones are created, and missing
    indexes are added. Existing indexes are never altered.
    """
    summary = ReconcileSummary()
    for name in await tx.object_store_names():
        if name not in schema:
            await tx.delete_object_store(name)
            summary.dropped.append(name)
            logger.info("collection_dropped", collection=name, version=tx.new_version)

    existing = set(await tx.object_store_names())
    for name, definition in schema.items():
        if name in existing:
            store = await tx.object_store(name)
        else:
            store = await tx.create_object_store(
                name,
                key_path=definition["key_path"],
                auto_increment=definition["auto_increment"],
            )
            summary.created.append(name)
            logger.info("collection_created", collection=name, version=tx.new_version)

        present = set(await store.index_names())
        for index_name, index in definition["indexes"].items():
            if index_name in present:
                continue
            await store.create_index(
                index_name,
                index["key_path"],
                unique=index["unique"],
                multi_entry=index["multi_entry"],
            )
            summary.indexes_created.append((name, index_name))
            logger.info("index_created", collection=name, index=index_name)
    return summary
