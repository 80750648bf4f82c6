"""Record serialization and key path evaluation."""

from __future__ import annotations

import base64
import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Sequence, Union

from .errors import DataError

KeyPath = Union[str, Sequence[str]]

MISSING = object()


def _encode_default(value: Any) -> Dict[str, Any]:
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"$bytes": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, (set, frozenset)):
        return {"$set": sorted(value, key=repr)}
    raise DataError(f"value of type {type(value)!r} cannot be stored")


def _decode_hook(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1:
        if "$date" in obj:
            return datetime.fromisoformat(obj["$date"])
        if "$bytes" in obj:
            return base64.b64decode(obj["$bytes"])
        if "$set" in obj:
            return set(obj["$set"])
    return obj


def _check_mapping_keys(value: Any) -> None:
    if isinstance(value, Mapping):
        for name, item in value.items():
            if not isinstance(name, str):
                raise DataError(f"mapping keys must be strings, got {name!r}")
            _check_mapping_keys(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_mapping_keys(item)


def dumps(value: Any) -> str:
    _check_mapping_keys(value)
    try:
        return json.dumps(value, default=_encode_default, separators=(",", ":"), allow_nan=True)
    except (TypeError, ValueError) as exc:
        raise DataError(f"value cannot be stored: {exc}") from exc


def loads(text: str) -> Any:
    return json.loads(text, object_hook=_decode_hook)


def clone(value: Any) -> Any:
    """Copy a record the way the store would see it.

    Records are JSON documents: tuples come back as lists, and mappings may
    only use string keys (others raise ``DataError``). Datetimes, bytes and
    sets are tagged and restored.
    """
    return loads(dumps(value))


def normalize_key_path(key_path: Optional[KeyPath]) -> Optional[KeyPath]:
    if key_path is None:
        return None
    if isinstance(key_path, str):
        return key_path
    if isinstance(key_path, Sequence):
        paths: List[str] = []
        for entry in key_path:
            if not isinstance(entry, str):
                raise DataError("compound key paths must contain strings")
            paths.append(entry)
        if not paths:
            raise DataError("compound key paths must not be empty")
        return paths
    raise DataError("key path must be a string or a sequence of strings")


def evaluate_key_path(value: Any, key_path: KeyPath) -> Any:
    """Return the value found at ``key_path`` or ``MISSING``."""
    if not isinstance(key_path, str):
        parts = []
        for path in key_path:
            part = evaluate_key_path(value, path)
            if part is MISSING:
                return MISSING
            parts.append(part)
        return parts
    if key_path == "":
        return value
    current = value
    for segment in key_path.split("."):
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        else:
            return MISSING
    return current


def inject_key(value: Any, key_path: str, key: Any) -> None:
    """Write a generated key into ``value`` at ``key_path``."""
    segments = key_path.split(".")
    current = value
    for segment in segments[:-1]:
        if not isinstance(current, MutableMapping):
            raise DataError(f"cannot inject key at '{key_path}'")
        current = current.setdefault(segment, {})
    if not isinstance(current, MutableMapping):
        raise DataError(f"cannot inject key at '{key_path}'")
    current[segments[-1]] = key
