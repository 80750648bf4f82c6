"""Single-cursor query execution.

``run_query`` is awaited as one connection job. One call is one
transaction: the cursor is driven to the end of the window inside it, and the
results are returned only once the transaction has committed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, MutableMapping, Tuple

from ._store import engine

if TYPE_CHECKING:
    from .query import QuerySpec


def apply_modification(record: Any, rule: Tuple[Tuple[str, Any], ...]) -> Any:
    """Apply a modify rule in place; callables receive the record being modified."""
    if not isinstance(record, MutableMapping):
        raise TypeError("modify() requires records that are mappings")
    for name, value in rule:
        record[name] = value(record) if callable(value) else value
    return record


async def _traverse(cursor: engine.Cursor, spec: "QuerySpec") -> List[Any]:
    results: List[Any] = []
    counter = 0
    skip, take = spec.window if spec.window is not None else (0, None)
    while not cursor.done:
        if skip > counter:
            # jump straight to the first windowed entry
            counter = skip
            await cursor.advance(skip)
            continue
        if take is not None and counter >= skip + take:
            break
        record = cursor.key if spec.keys_only else cursor.value
        if all(entry.matches(record) for entry in spec.filters):
            counter += 1
            if spec.modify:
                record = apply_modification(record, spec.modify)
                await cursor.update(record)
            results.append(spec.mapper(record) if spec.mapper is not None else record)
        await cursor.continue_()
    return results


async def run_query(db: engine.Database, spec: "QuerySpec", key_range: Any) -> Any:
    """Execute ``spec`` against ``db`` over an already resolved ``key_range``.

    Returns the native count for counting queries, otherwise the list of
    mapped results.
    """
    mode = engine.READWRITE if spec.modify else engine.READONLY
    async with db.transaction(spec.collection, mode) as tx:
        store = await tx.object_store(spec.collection)
        source = await store.index(spec.index) if spec.index is not None else store
        if spec.count:
            return await source.count(key_range)
        if spec.keys_only:
            cursor = await source.open_key_cursor(key_range, spec.cursor_direction)
        else:
            cursor = await source.open_cursor(key_range, spec.cursor_direction)
        results = await _traverse(cursor, spec)
    return results
