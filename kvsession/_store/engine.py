"""SQLite-backed ordered key-value engine.

One SQLite file per store. Collections, indexes and the key generator live in
catalog tables; records and index entries are keyed by order-preserving key
encodings (see ``keys``), so every range scan and cursor step is a single
indexed query. The schema version is SQLite's ``user_version``. All I/O goes
through ``aiosqlite``, so every store operation is a coroutine.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import aiosqlite
import structlog

from . import values
from .errors import (
    BlockedError,
    ConstraintError,
    DataError,
    InvalidStateError,
    NotFoundError,
    ReadOnlyError,
    TransactionInactiveError,
    VersionError,
)
from .keys import compare_keys, decode_key, encode_key, is_valid_key

logger = structlog.get_logger()

READONLY = "readonly"
READWRITE = "readwrite"
VERSIONCHANGE = "versionchange"
DIRECTIONS = ("next", "nextunique", "prev", "prevunique")
EVENT_TYPES = ("abort", "error", "versionchange")

_MAX_GENERATED_KEY = 2 ** 53

_CATALOG = (
    """CREATE TABLE IF NOT EXISTS kv_stores (
        name TEXT PRIMARY KEY,
        key_path TEXT,
        auto_increment INTEGER NOT NULL DEFAULT 0,
        current_key INTEGER NOT NULL DEFAULT 0
    )""",
    """CREATE TABLE IF NOT EXISTS kv_indexes (
        store TEXT NOT NULL,
        name TEXT NOT NULL,
        key_path TEXT NOT NULL,
        is_unique INTEGER NOT NULL DEFAULT 0,
        multi_entry INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (store, name)
    )""",
    """CREATE TABLE IF NOT EXISTS kv_records (
        store TEXT NOT NULL,
        k BLOB NOT NULL,
        v TEXT NOT NULL,
        PRIMARY KEY (store, k)
    ) WITHOUT ROWID""",
    """CREATE TABLE IF NOT EXISTS kv_index_entries (
        store TEXT NOT NULL,
        idx TEXT NOT NULL,
        ik BLOB NOT NULL,
        pk BLOB NOT NULL,
        PRIMARY KEY (store, idx, ik, pk)
    ) WITHOUT ROWID""",
    "CREATE INDEX IF NOT EXISTS kv_index_entries_by_pk ON kv_index_entries (store, pk)",
)


@dataclass
class StoreEvent:
    type: str
    old_version: int = 0
    new_version: Optional[int] = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class KeyRange:
    """Native key range. ``*_open`` flags exclude the bound itself."""

    lower: Any = None
    upper: Any = None
    lower_open: bool = False
    upper_open: bool = False
    lower_key: Optional[bytes] = field(default=None, repr=False, compare=False)
    upper_key: Optional[bytes] = field(default=None, repr=False, compare=False)

    @classmethod
    def only(cls, value: Any) -> "KeyRange":
        encoded = encode_key(value)
        return cls(value, value, False, False, encoded, encoded)

    @classmethod
    def lower_bound(cls, value: Any, lower_open: bool = False) -> "KeyRange":
        return cls(value, None, bool(lower_open), True, encode_key(value), None)

    @classmethod
    def upper_bound(cls, value: Any, upper_open: bool = False) -> "KeyRange":
        return cls(None, value, True, bool(upper_open), None, encode_key(value))

    @classmethod
    def bound(
        cls, lower: Any, upper: Any, lower_open: bool = False, upper_open: bool = False
    ) -> "KeyRange":
        lo = encode_key(lower)
        hi = encode_key(upper)
        if lo > hi:
            raise DataError("lower bound is greater than upper bound")
        if lo == hi and (lower_open or upper_open):
            raise DataError("bound range with equal open bounds is empty")
        return cls(lower, upper, bool(lower_open), bool(upper_open), lo, hi)

    def includes(self, key: Any) -> bool:
        encoded = encode_key(key)
        if self.lower_key is not None:
            if encoded < self.lower_key or (self.lower_open and encoded == self.lower_key):
                return False
        if self.upper_key is not None:
            if encoded > self.upper_key or (self.upper_open and encoded == self.upper_key):
                return False
        return True

    def sql(self, column: str) -> Tuple[str, List[bytes]]:
        clauses: List[str] = []
        params: List[bytes] = []
        if self.lower_key is not None:
            clauses.append(f"{column} {'>' if self.lower_open else '>='} ?")
            params.append(self.lower_key)
        if self.upper_key is not None:
            clauses.append(f"{column} {'<' if self.upper_open else '<='} ?")
            params.append(self.upper_key)
        return " AND ".join(clauses) or "1", params


Query = Union[KeyRange, Any]


def _as_range(query: Query) -> Optional[KeyRange]:
    if query is None:
        return None
    if isinstance(query, KeyRange):
        return query
    return KeyRange.only(query)


# --- Live connection registry (per file) -----------------------------------------

_live: Dict[str, List["Database"]] = {}
_waiters: Dict[str, List[Callable[[], None]]] = {}


def _register(db: "Database") -> None:
    _live.setdefault(db.path, []).append(db)


def _release(db: "Database") -> None:
    peers = _live.get(db.path, [])
    if db in peers:
        peers.remove(db)
    if peers:
        return
    _live.pop(db.path, None)
    for waiter in _waiters.pop(db.path, []):
        waiter()


def live_connections(path: str) -> List["Database"]:
    return list(_live.get(os.path.abspath(path), []))


def _check_blockers(
    path: str, old_version: int, new_version: Optional[int], on_unblocked: Optional[Callable[[], None]]
) -> None:
    for other in live_connections(path):
        other.dispatch(StoreEvent("versionchange", old_version=other.version, new_version=new_version))
    if not _live.get(path):
        return
    if on_unblocked is not None:
        _waiters.setdefault(path, []).append(on_unblocked)
    raise BlockedError(
        f"store at {path} is held open by another connection",
        old_version=old_version,
        new_version=new_version,
    )


# --- Connections ---------------------------------------------------------------


class Database:
    """One open connection to a store file at a fixed version.

    Statements run on the aiosqlite worker thread of ``conn`` in submission
    order; callers that share a ``Database`` must not interleave transactions.
    """

    def __init__(self, conn: aiosqlite.Connection, path: str, name: str, version: int):
        self._conn = conn
        self.path = path
        self.name = name
        self.version = version
        self._closed = False
        self._store_names: Tuple[str, ...] = ()
        self._listeners: Dict[str, List[Callable[[StoreEvent], None]]] = {ev: [] for ev in EVENT_TYPES}

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def object_store_names(self) -> Tuple[str, ...]:
        return self._store_names

    async def _refresh_store_names(self) -> None:
        async with self._conn.execute("SELECT name FROM kv_stores ORDER BY name") as cursor:
            rows = await cursor.fetchall()
        self._store_names = tuple(row[0] for row in rows)

    def transaction(self, store_names: Union[str, Sequence[str]], mode: str = READONLY) -> "Transaction":
        """Scope a transaction; it starts when entered with ``async with``."""
        if self._closed:
            raise InvalidStateError("connection is closed")
        if mode not in (READONLY, READWRITE):
            raise ValueError(f"invalid transaction mode: {mode}")
        names = [store_names] if isinstance(store_names, str) else list(store_names)
        if not names:
            raise ValueError("transaction requires at least one collection")
        for name in names:
            if name not in self._store_names:
                raise NotFoundError(f"collection '{name}' does not exist")
        return Transaction(self, names, mode)

    def add_listener(self, event_type: str, listener: Callable[[StoreEvent], None]) -> None:
        if event_type not in self._listeners:
            raise ValueError(f"unrecognized event type {event_type}")
        self._listeners[event_type].append(listener)

    def remove_listener(self, event_type: str, listener: Callable[[StoreEvent], None]) -> None:
        if event_type not in self._listeners:
            raise ValueError(f"unrecognized event type {event_type}")
        if listener in self._listeners[event_type]:
            self._listeners[event_type].remove(listener)

    def dispatch(self, event: StoreEvent) -> None:
        for listener in list(self._listeners.get(event.type, ())):
            try:
                listener(event)
            except Exception:
                logger.exception("store_listener_failed", event=event.type, store=self.name)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._conn.close()
        finally:
            _release(self)


async def _exec(conn: aiosqlite.Connection, sql: str, params: Sequence[Any] = ()) -> None:
    cursor = await conn.execute(sql, params)
    await cursor.close()


async def _connect(path: str, busy_timeout_ms: int, journal_mode: str, synchronous: str) -> aiosqlite.Connection:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = await aiosqlite.connect(path, isolation_level=None, timeout=busy_timeout_ms / 1000.0)
    try:
        await _exec(conn, f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        async with conn.execute(f"PRAGMA journal_mode={journal_mode}") as cursor:
            mode = (await cursor.fetchone())[0]
        if str(mode).lower() != journal_mode.lower():
            logger.warning("journal_mode_unexpected", got=mode, wanted=journal_mode, path=path)
        await _exec(conn, f"PRAGMA synchronous={synchronous}")
    except BaseException:
        await conn.close()
        raise
    return conn


async def _user_version(conn: aiosqlite.Connection) -> int:
    async with conn.execute("PRAGMA user_version") as cursor:
        return int((await cursor.fetchone())[0])


async def open_database(
    path: str,
    name: str,
    version: int,
    upgrade: Optional[Callable[["UpgradeTransaction", int, int], Awaitable[None]]] = None,
    *,
    on_unblocked: Optional[Callable[[], None]] = None,
    busy_timeout_ms: int = 5000,
    journal_mode: str = "WAL",
    synchronous: str = "NORMAL",
) -> Database:
    """Open ``path`` at ``version``, awaiting ``upgrade`` when the version grows.

    Raises:
        VersionError: ``version`` is lower than the stored version
        BlockedError: an upgrade is needed while other connections stay open;
            ``on_unblocked`` fires once the last of them closes
    """
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise ValueError("version must be a positive integer")
    path = os.path.abspath(path)
    conn = await _connect(path, busy_timeout_ms, journal_mode, synchronous)
    try:
        current = await _user_version(conn)
        if version < current:
            raise VersionError(
                f"requested version ({version}) is less than the existing version ({current})"
            )
        db = Database(conn, path, name, version)
        if version > current:
            _check_blockers(path, current, version, on_unblocked)
            tx = UpgradeTransaction(db, current, version)
            await tx.begin()
            try:
                for statement in _CATALOG:
                    await tx._execute(statement)
                if upgrade is not None:
                    await upgrade(tx, current, version)
                await tx._execute(f"PRAGMA user_version = {int(version)}")
            except BaseException as exc:
                await tx.abort(exc)
                raise
            await tx.commit()
        await db._refresh_store_names()
    except BaseException:
        await conn.close()
        raise
    _register(db)
    return db


async def delete_database(path: str, *, on_unblocked: Optional[Callable[[], None]] = None) -> int:
    """Remove the store file; returns the version it had (0 if absent)."""
    path = os.path.abspath(path)
    if not os.path.exists(path):
        return 0
    async with aiosqlite.connect(path) as probe:
        old_version = await _user_version(probe)
    _check_blockers(path, old_version, None, on_unblocked)
    for suffix in ("", "-wal", "-shm", "-journal"):
        if os.path.exists(path + suffix):
            os.remove(path + suffix)
    return old_version


# --- Transactions ---------------------------------------------------------------


class Transaction:
    def __init__(self, db: Database, store_names: Sequence[str], mode: str):
        self._db = db
        self._scope = frozenset(store_names)
        self.mode = mode
        self._started = False
        self._active = False

    @property
    def db(self) -> Database:
        return self._db

    @property
    def active(self) -> bool:
        return self._active

    async def begin(self) -> None:
        if self._started:
            raise InvalidStateError("transaction has already started")
        self._started = True
        await _exec(self._db._conn, "BEGIN" if self.mode == READONLY else "BEGIN IMMEDIATE")
        self._active = True

    async def object_store(self, name: str) -> "ObjectStore":
        self._ensure_active()
        if name not in self._scope:
            raise NotFoundError(f"collection '{name}' is not in the transaction scope")
        row = await self._fetchone(
            "SELECT key_path, auto_increment FROM kv_stores WHERE name = ?", (name,)
        )
        if row is None:
            raise NotFoundError(f"collection '{name}' does not exist")
        key_path = json.loads(row[0]) if row[0] is not None else None
        return ObjectStore(self, name, key_path, bool(row[1]))

    async def commit(self) -> None:
        self._ensure_active()
        self._active = False
        await _exec(self._db._conn, "COMMIT")

    async def abort(self, error: Optional[BaseException] = None) -> None:
        if not self._active:
            return
        self._active = False
        await _exec(self._db._conn, "ROLLBACK")
        if error is not None:
            self._db.dispatch(StoreEvent("error", old_version=self._db.version, error=error))
        self._db.dispatch(StoreEvent("abort", old_version=self._db.version, error=error))

    async def __aenter__(self) -> "Transaction":
        await self.begin()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_val is None:
            await self.commit()
        else:
            await self.abort(exc_val)

    def _ensure_active(self) -> None:
        if not self._active:
            raise TransactionInactiveError("transaction is not active")

    def _ensure_writable(self) -> None:
        self._ensure_active()
        if self.mode == READONLY:
            raise ReadOnlyError("transaction is read-only")

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        self._ensure_active()
        await _exec(self._db._conn, sql, params)

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Tuple[Any, ...]]:
        self._ensure_active()
        async with self._db._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Tuple[Any, ...]]:
        self._ensure_active()
        async with self._db._conn.execute(sql, params) as cursor:
            return list(await cursor.fetchall())


class UpgradeTransaction(Transaction):
    """The single ``versionchange`` transaction of an upgrade."""

    def __init__(self, db: Database, old_version: int, new_version: int):
        super().__init__(db, (), VERSIONCHANGE)
        self.old_version = old_version
        self.new_version = new_version

    async def object_store_names(self) -> List[str]:
        rows = await self._fetchall("SELECT name FROM kv_stores ORDER BY name")
        return [row[0] for row in rows]

    async def object_store(self, name: str) -> "ObjectStore":
        self._scope = frozenset(await self.object_store_names())
        return await super().object_store(name)

    async def create_object_store(
        self,
        name: str,
        key_path: Optional[values.KeyPath] = None,
        auto_increment: bool = False,
    ) -> "ObjectStore":
        if not isinstance(name, str):
            raise DataError("collection names must be strings")
        normalized = values.normalize_key_path(key_path)
        if auto_increment and (normalized == "" or isinstance(normalized, list)):
            raise DataError("auto-increment requires an out-of-line or non-empty string key path")
        if await self._fetchone("SELECT 1 FROM kv_stores WHERE name = ?", (name,)):
            raise ConstraintError(f"collection '{name}' already exists")
        await self._execute(
            "INSERT INTO kv_stores (name, key_path, auto_increment) VALUES (?, ?, ?)",
            (name, json.dumps(normalized) if normalized is not None else None, int(bool(auto_increment))),
        )
        return await self.object_store(name)

    async def delete_object_store(self, name: str) -> None:
        if not await self._fetchone("SELECT 1 FROM kv_stores WHERE name = ?", (name,)):
            raise NotFoundError(f"collection '{name}' does not exist")
        for table, column in (
            ("kv_index_entries", "store"),
            ("kv_indexes", "store"),
            ("kv_records", "store"),
            ("kv_stores", "name"),
        ):
            await self._execute(f"DELETE FROM {table} WHERE {column} = ?", (name,))


# --- Collections and indexes ---------------------------------------------------------


class ObjectStore:
    def __init__(self, tx: Transaction, name: str, key_path: Optional[values.KeyPath], auto_increment: bool):
        self.transaction = tx
        self.name = name
        self.key_path = key_path
        self.auto_increment = auto_increment

    async def index_names(self) -> List[str]:
        rows = await self.transaction._fetchall(
            "SELECT name FROM kv_indexes WHERE store = ? ORDER BY name", (self.name,)
        )
        return [row[0] for row in rows]

    async def index(self, name: str) -> "Index":
        row = await self.transaction._fetchone(
            "SELECT key_path, is_unique, multi_entry FROM kv_indexes WHERE store = ? AND name = ?",
            (self.name, name),
        )
        if row is None:
            raise NotFoundError(f"index '{name}' does not exist on collection '{self.name}'")
        return Index(self, name, json.loads(row[0]), bool(row[1]), bool(row[2]))

    async def create_index(
        self,
        name: str,
        key_path: values.KeyPath,
        unique: bool = False,
        multi_entry: bool = False,
    ) -> "Index":
        if self.transaction.mode != VERSIONCHANGE:
            raise InvalidStateError("indexes can only be created during an upgrade")
        normalized = values.normalize_key_path(key_path)
        if multi_entry and isinstance(normalized, list):
            raise DataError("multi-entry indexes require a string key path")
        if await self.transaction._fetchone(
            "SELECT 1 FROM kv_indexes WHERE store = ? AND name = ?", (self.name, name)
        ):
            raise ConstraintError(f"index '{name}' already exists on collection '{self.name}'")
        await self.transaction._execute(
            "INSERT INTO kv_indexes (store, name, key_path, is_unique, multi_entry) VALUES (?, ?, ?, ?, ?)",
            (self.name, name, json.dumps(normalized), int(bool(unique)), int(bool(multi_entry))),
        )
        index = Index(self, name, normalized, bool(unique), bool(multi_entry))
        rows = await self.transaction._fetchall(
            "SELECT k, v FROM kv_records WHERE store = ?", (self.name,)
        )
        for pk, raw in rows:
            for ik in index._keys_for(values.loads(raw)):
                await index._check_unique(ik, pk)
                await self.transaction._execute(
                    "INSERT OR IGNORE INTO kv_index_entries (store, idx, ik, pk) VALUES (?, ?, ?, ?)",
                    (self.name, name, ik, pk),
                )
        return index

    async def delete_index(self, name: str) -> None:
        if self.transaction.mode != VERSIONCHANGE:
            raise InvalidStateError("indexes can only be deleted during an upgrade")
        await self.index(name)
        await self.transaction._execute(
            "DELETE FROM kv_index_entries WHERE store = ? AND idx = ?", (self.name, name)
        )
        await self.transaction._execute(
            "DELETE FROM kv_indexes WHERE store = ? AND name = ?", (self.name, name)
        )

    async def add(self, value: Any, key: Any = None) -> Any:
        return await self._store(value, key, overwrite=False)

    async def put(self, value: Any, key: Any = None) -> Any:
        return await self._store(value, key, overwrite=True)

    async def get(self, query: Query) -> Any:
        if query is None:
            raise DataError("get() requires a key or key range")
        key_range = _as_range(query)
        clause, params = key_range.sql("k") if key_range else ("1", [])
        row = await self.transaction._fetchone(
            f"SELECT v FROM kv_records WHERE store = ? AND {clause} ORDER BY k LIMIT 1",
            [self.name, *params],
        )
        return values.loads(row[0]) if row else None

    async def delete(self, query: Query) -> None:
        self.transaction._ensure_writable()
        if query is None:
            raise DataError("delete() requires a key or key range")
        key_range = _as_range(query)
        clause, params = key_range.sql("k") if key_range else ("1", [])
        await self.transaction._execute(
            "DELETE FROM kv_index_entries WHERE store = ? AND pk IN "
            f"(SELECT k FROM kv_records WHERE store = ? AND {clause})",
            [self.name, self.name, *params],
        )
        await self.transaction._execute(
            f"DELETE FROM kv_records WHERE store = ? AND {clause}", [self.name, *params]
        )

    async def clear(self) -> None:
        self.transaction._ensure_writable()
        await self.transaction._execute("DELETE FROM kv_index_entries WHERE store = ?", (self.name,))
        await self.transaction._execute("DELETE FROM kv_records WHERE store = ?", (self.name,))

    async def count(self, query: Query = None) -> int:
        key_range = _as_range(query)
        clause, params = key_range.sql("k") if key_range else ("1", [])
        row = await self.transaction._fetchone(
            f"SELECT COUNT(*) FROM kv_records WHERE store = ? AND {clause}", [self.name, *params]
        )
        return int(row[0])

    async def open_cursor(self, query: Query = None, direction: str = "next") -> "Cursor":
        return await Cursor.open(self, None, _as_range(query), direction, key_only=False)

    async def open_key_cursor(self, query: Query = None, direction: str = "next") -> "Cursor":
        return await Cursor.open(self, None, _as_range(query), direction, key_only=True)

    async def _load(self, pk: bytes) -> Any:
        row = await self.transaction._fetchone(
            "SELECT v FROM kv_records WHERE store = ? AND k = ?", (self.name, pk)
        )
        return values.loads(row[0]) if row else None

    async def _indexes(self) -> List["Index"]:
        return [await self.index(name) for name in await self.index_names()]

    async def _generate_key(self) -> int:
        row = await self.transaction._fetchone(
            "SELECT current_key FROM kv_stores WHERE name = ?", (self.name,)
        )
        key = int(row[0]) + 1
        if key > _MAX_GENERATED_KEY:
            raise ConstraintError("key generator exhausted")
        await self.transaction._execute(
            "UPDATE kv_stores SET current_key = ? WHERE name = ?", (key, self.name)
        )
        return key

    async def _bump_generator(self, key: Any) -> None:
        if not self.auto_increment or isinstance(key, bool) or not isinstance(key, (int, float)):
            return
        target = int(min(key, _MAX_GENERATED_KEY))
        await self.transaction._execute(
            "UPDATE kv_stores SET current_key = ? WHERE name = ? AND current_key < ?",
            (target, self.name, target),
        )

    async def _resolve_key(self, value: Any, key: Any) -> Any:
        if self.key_path is not None:
            if key is not None:
                raise DataError(f"collection '{self.name}' uses inline keys; explicit keys are not allowed")
            found = values.evaluate_key_path(value, self.key_path)
            if found is values.MISSING:
                if not self.auto_increment:
                    raise DataError(f"record has no value at key path {self.key_path!r}")
                key = await self._generate_key()
                values.inject_key(value, self.key_path, key)
                return key
            if not is_valid_key(found):
                raise DataError(f"key path {self.key_path!r} yielded an invalid key")
            await self._bump_generator(found)
            return found
        if key is None:
            if not self.auto_increment:
                raise DataError(f"collection '{self.name}' has no key path or key generator; a key is required")
            return await self._generate_key()
        if not is_valid_key(key):
            raise DataError(f"{key!r} is not a valid key")
        await self._bump_generator(key)
        return key

    async def _store(self, value: Any, key: Any, overwrite: bool) -> Any:
        self.transaction._ensure_writable()
        value = values.clone(value)
        key = await self._resolve_key(value, key)
        pk = encode_key(key)
        exists = await self.transaction._fetchone(
            "SELECT 1 FROM kv_records WHERE store = ? AND k = ?", (self.name, pk)
        ) is not None
        if exists and not overwrite:
            raise ConstraintError(f"key {key!r} already exists in collection '{self.name}'")
        entries: List[Tuple[str, bytes]] = []
        for index in await self._indexes():
            for ik in index._keys_for(value):
                await index._check_unique(ik, pk)
                entries.append((index.name, ik))
        if exists:
            await self.transaction._execute(
                "DELETE FROM kv_index_entries WHERE store = ? AND pk = ?", (self.name, pk)
            )
        await self.transaction._execute(
            "INSERT OR REPLACE INTO kv_records (store, k, v) VALUES (?, ?, ?)",
            (self.name, pk, values.dumps(value)),
        )
        for index_name, ik in entries:
            await self.transaction._execute(
                "INSERT OR IGNORE INTO kv_index_entries (store, idx, ik, pk) VALUES (?, ?, ?, ?)",
                (self.name, index_name, ik, pk),
            )
        return key


class Index:
    def __init__(
        self,
        store: ObjectStore,
        name: str,
        key_path: values.KeyPath,
        unique: bool,
        multi_entry: bool,
    ):
        self.object_store = store
        self.name = name
        self.key_path = key_path
        self.unique = unique
        self.multi_entry = multi_entry

    async def get(self, query: Query) -> Any:
        row = await self._first(query)
        return await self.object_store._load(row[1]) if row else None

    async def get_key(self, query: Query) -> Any:
        row = await self._first(query)
        return decode_key(row[1]) if row else None

    async def count(self, query: Query = None) -> int:
        key_range = _as_range(query)
        clause, params = key_range.sql("ik") if key_range else ("1", [])
        row = await self.object_store.transaction._fetchone(
            f"SELECT COUNT(*) FROM kv_index_entries WHERE store = ? AND idx = ? AND {clause}",
            [self.object_store.name, self.name, *params],
        )
        return int(row[0])

    async def open_cursor(self, query: Query = None, direction: str = "next") -> "Cursor":
        return await Cursor.open(self.object_store, self, _as_range(query), direction, key_only=False)

    async def open_key_cursor(self, query: Query = None, direction: str = "next") -> "Cursor":
        return await Cursor.open(self.object_store, self, _as_range(query), direction, key_only=True)

    async def _first(self, query: Query) -> Optional[Tuple[bytes, bytes]]:
        key_range = _as_range(query)
        clause, params = key_range.sql("ik") if key_range else ("1", [])
        return await self.object_store.transaction._fetchone(
            "SELECT ik, pk FROM kv_index_entries WHERE store = ? AND idx = ? "
            f"AND {clause} ORDER BY ik, pk LIMIT 1",
            [self.object_store.name, self.name, *params],
        )

    def _keys_for(self, value: Any) -> List[bytes]:
        found = values.evaluate_key_path(value, self.key_path)
        if found is values.MISSING:
            return []
        if self.multi_entry and isinstance(found, (list, tuple)):
            seen = {encode_key(item) for item in found if is_valid_key(item)}
            return sorted(seen)
        if not is_valid_key(found):
            return []
        return [encode_key(found)]

    async def _check_unique(self, ik: bytes, pk: bytes) -> None:
        if not self.unique:
            return
        clash = await self.object_store.transaction._fetchone(
            "SELECT 1 FROM kv_index_entries WHERE store = ? AND idx = ? AND ik = ? AND pk <> ? LIMIT 1",
            (self.object_store.name, self.name, ik, pk),
        )
        if clash:
            raise ConstraintError(f"unique index '{self.name}' already holds key {decode_key(ik)!r}")


# --- Cursors ------------------------------------------------------------------------


class Cursor:
    """Stateful iterator over a collection or index in key order.

    Built with ``await Cursor.open(...)``, which positions it on the first
    entry of the range.
    """

    def __init__(
        self,
        store: ObjectStore,
        index: Optional[Index],
        key_range: Optional[KeyRange],
        direction: str,
        *,
        key_only: bool,
    ):
        if direction not in DIRECTIONS:
            raise ValueError(f"invalid cursor direction: {direction}")
        self._store = store
        self._index = index
        self._range = key_range
        self.direction = direction
        self._key_only = key_only
        self._position: Optional[Tuple[bytes, bytes]] = None
        self._done = False
        self.key: Any = None
        self.primary_key: Any = None
        self.value: Any = None

    @classmethod
    async def open(
        cls,
        store: ObjectStore,
        index: Optional[Index],
        key_range: Optional[KeyRange],
        direction: str,
        *,
        key_only: bool,
    ) -> "Cursor":
        cursor = cls(store, index, key_range, direction, key_only=key_only)
        await cursor._step(1)
        return cursor

    @property
    def done(self) -> bool:
        return self._done

    @property
    def source(self) -> Union[ObjectStore, Index]:
        return self._index if self._index is not None else self._store

    async def advance(self, count: int) -> None:
        """Move ``count`` entries forward in one lookup."""
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise ValueError("advance() requires a positive integer count")
        self._ensure_positioned()
        await self._step(count)

    async def continue_(self) -> None:
        self._ensure_positioned()
        await self._step(1)

    async def update(self, value: Any) -> Any:
        if self._key_only:
            raise InvalidStateError("key cursors cannot update records")
        self._ensure_positioned()
        store = self._store
        if store.key_path is not None:
            found = values.evaluate_key_path(value, store.key_path)
            if found is values.MISSING or not is_valid_key(found) or compare_keys(found, self.primary_key) != 0:
                raise DataError("updated record's key does not match the cursor position")
            return await store.put(value)
        return await store.put(value, self.primary_key)

    async def delete(self) -> None:
        if self._key_only:
            raise InvalidStateError("key cursors cannot delete records")
        self._ensure_positioned()
        await self._store.delete(self.primary_key)

    def _ensure_positioned(self) -> None:
        if self._done:
            raise InvalidStateError("cursor is exhausted")

    async def _step(self, count: int) -> None:
        row = await self._fetch(count - 1)
        if row is None:
            self._done = True
            self.key = self.primary_key = self.value = None
            return
        key_bytes, pk_bytes = row
        self._position = (key_bytes, pk_bytes)
        self.key = decode_key(key_bytes)
        self.primary_key = decode_key(pk_bytes)
        if not self._key_only:
            self.value = await self._store._load(pk_bytes)

    async def _fetch(self, offset: int) -> Optional[Tuple[bytes, bytes]]:
        forward = self.direction.startswith("next")
        unique = self.direction.endswith("unique")
        op = ">" if forward else "<"
        order = "ASC" if forward else "DESC"
        if self._index is None:
            key_col = pk_col = "k"
            where = ["store = ?"]
            params: List[Any] = [self._store.name]
        else:
            key_col, pk_col = "ik", "pk"
            where = ["store = ?", "idx = ?"]
            params = [self._store.name, self._index.name]
        if self._range is not None:
            clause, range_params = self._range.sql(key_col)
            where.append(clause)
            params.extend(range_params)
        if self._position is not None:
            key_pos, pk_pos = self._position
            if self._index is None or unique:
                where.append(f"{key_col} {op} ?")
                params.append(key_pos)
            else:
                where.append(f"({key_col} {op} ? OR ({key_col} = ? AND {pk_col} {op} ?))")
                params.extend([key_pos, key_pos, pk_pos])
        predicate = " AND ".join(where)
        if self._index is None:
            sql = f"SELECT k, k FROM kv_records WHERE {predicate} ORDER BY k {order} LIMIT 1 OFFSET ?"
        elif unique:
            sql = (
                f"SELECT ik, MIN(pk) FROM kv_index_entries WHERE {predicate} "
                f"GROUP BY ik ORDER BY ik {order} LIMIT 1 OFFSET ?"
            )
        else:
            sql = (
                f"SELECT ik, pk FROM kv_index_entries WHERE {predicate} "
                f"ORDER BY ik {order}, pk {order} LIMIT 1 OFFSET ?"
            )
        params.append(offset)
        return await self._store.transaction._fetchone(sql, params)
