"""Sessions over named, versioned stores."""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, MutableMapping, Optional, Sequence, Tuple, Union

import aiosqlite
import structlog

from ._store import engine
from ._store.errors import BlockedError, EngineError
from ._store.keys import compare_keys as _compare_keys
from .config import StoreConfig
from .errors import (
    BlockedUpgradeError,
    NameCollisionError,
    SessionClosedError,
    wrap_store_error,
)
from .executor import run_query
from .keyrange import resolve_key
from .query import IndexQuery, QuerySpec
from .registry import Connection, ConnectionRegistry, EventHandler
from .schema import StoreSchema, normalize_schema, reconcile_schema

logger = structlog.get_logger()

INTERNAL_ID_FIELD = "__id__"
EVENT_TYPES = engine.EVENT_TYPES

_STORE_FAILURES = (EngineError, aiosqlite.Error)


@dataclass(frozen=True)
class Bare:
    """A record whose key comes from the collection's key path or generator."""

    value: Any


@dataclass(frozen=True)
class Keyed:
    """A record stored under an explicit out-of-line key."""

    key: Any
    value: Any


Record = Union[Bare, Keyed]
SchemaInput = Union[StoreSchema, Callable[[], StoreSchema]]


def _as_records(entries: Sequence[Any]) -> List[Record]:
    records: List[Record] = []
    for entry in entries:
        items = entry if isinstance(entry, list) else [entry]
        for item in items:
            records.append(item if isinstance(item, (Bare, Keyed)) else Bare(item))
    return records


# --- Connection jobs (awaited through Connection.run) ------------------------------


async def _write_records(db: engine.Database, collection: str, records: List[Record], overwrite: bool) -> List[Any]:
    keys: List[Any] = []
    async with db.transaction(collection, engine.READWRITE) as tx:
        store = await tx.object_store(collection)
        write = store.put if overwrite else store.add
        id_field = store.key_path if isinstance(store.key_path, str) and store.key_path else INTERNAL_ID_FIELD
        for record in records:
            explicit = record.key if isinstance(record, Keyed) else None
            keys.append(await write(record.value, explicit))
    # keys are only handed back once the batch has committed
    if not overwrite:
        for record, key in zip(records, keys):
            if isinstance(record.value, MutableMapping):
                record.value[id_field] = key
    return [record.value for record in records]


async def _remove(db: engine.Database, collection: str, key_range: Any) -> None:
    async with db.transaction(collection, engine.READWRITE) as tx:
        store = await tx.object_store(collection)
        await store.delete(key_range)


async def _clear(db: engine.Database, collection: str) -> None:
    async with db.transaction(collection, engine.READWRITE) as tx:
        store = await tx.object_store(collection)
        await store.clear()


async def _get(db: engine.Database, collection: str, key_range: Any) -> Any:
    async with db.transaction(collection, engine.READONLY) as tx:
        store = await tx.object_store(collection)
        return await store.get(key_range)


async def _count(db: engine.Database, collection: str, key_range: Any) -> int:
    async with db.transaction(collection, engine.READONLY) as tx:
        store = await tx.object_store(collection)
        return await store.count(key_range)


class CollectionProxy:
    """Session operations bound to one collection (``session.<collection>``)."""

    def __init__(self, session: "Session", collection: str) -> None:
        self._session = session
        self.name = collection

    async def add(self, *records: Any) -> List[Any]:
        return await self._session.add(self.name, *records)

    async def update(self, *records: Any) -> List[Any]:
        return await self._session.update(self.name, *records)

    async def remove(self, key: Any) -> Any:
        return await self._session.remove(self.name, key)

    async def clear(self) -> None:
        await self._session.clear(self.name)

    async def get(self, key: Any) -> Any:
        return await self._session.get(self.name, key)

    async def count(self, key: Any = None) -> int:
        return await self._session.count(self.name, key)

    def query(self, index: Optional[str] = None) -> IndexQuery:
        return self._session.query(self.name, index)


class Session:
    """Record operations and query builders over one open connection.

    Sessions opened for the same ``(name, version)`` share their connection;
    closing any of them closes it for all.
    """

    def __init__(self, connection: Connection, registry: ConnectionRegistry):
        self._connection = connection
        self._registry = registry

    @property
    def name(self) -> str:
        return self._connection.name

    @property
    def version(self) -> int:
        return self._connection.version

    @property
    def collection_names(self) -> Tuple[str, ...]:
        return self._connection.collection_names

    @property
    def is_closed(self) -> bool:
        """Returns True once the underlying connection has been closed."""
        return self._connection.closed

    def _assert_open(self) -> None:
        if self._connection.closed:
            raise SessionClosedError()

    def _resolve(self, key: Any) -> Any:
        try:
            return resolve_key(key)
        except EngineError as err:
            raise wrap_store_error(err) from err

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a connection job, translating store failures."""
        self._assert_open()
        try:
            return await self._connection.run(fn, *args)
        except _STORE_FAILURES as err:
            logger.warning(
                "transaction_aborted",
                name=self.name,
                version=self.version,
                error=str(err),
                error_name=getattr(err, "name", type(err).__name__),
            )
            raise wrap_store_error(err) from err

    async def _execute_query(self, spec: QuerySpec) -> Any:
        self._assert_open()
        key_range = self._resolve(spec.key_range)
        result = await self._call(run_query, spec, key_range)
        logger.debug(
            "query_executed",
            collection=spec.collection,
            index=spec.index,
            state=spec.state.value,
            size=result if spec.count else len(result),
        )
        return result

    async def add(self, collection: str, *records: Any) -> List[Any]:
        """Insert records; a duplicate key aborts the whole batch.

        Each positional argument is a record or a list of records. Mapping
        records receive their primary key under the collection's key path, or
        under ``__id__`` when the collection has no string key path.
        """
        self._assert_open()
        return await self._call(_write_records, collection, _as_records(records), False)

    async def update(self, collection: str, *records: Any) -> List[Any]:
        """Insert or replace records by primary key."""
        self._assert_open()
        return await self._call(_write_records, collection, _as_records(records), True)

    async def remove(self, collection: str, key: Any) -> Any:
        self._assert_open()
        await self._call(_remove, collection, self._resolve(key))
        return key

    async def clear(self, collection: str) -> None:
        self._assert_open()
        await self._call(_clear, collection)

    async def get(self, collection: str, key: Any) -> Any:
        self._assert_open()
        return await self._call(_get, collection, self._resolve(key))

    async def count(self, collection: str, key: Any = None) -> int:
        self._assert_open()
        key_range = None if key is None else self._resolve(key)
        return await self._call(_count, collection, key_range)

    def query(self, collection: str, index: Optional[str] = None) -> IndexQuery:
        return IndexQuery(self, collection, index, poisoned=self.is_closed)

    async def close(self) -> None:
        self._assert_open()
        connection = self._connection
        await connection.close()
        self._registry.evict(connection.name, connection.version, connection)
        logger.info("session_closed", name=connection.name, version=connection.version)

    def add_event_listener(self, event_type: str, handler: EventHandler) -> "Session":
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unrecognized event type {event_type}")
        self._assert_open()
        self._connection.add_listener(event_type, handler)
        return self

    def remove_event_listener(self, event_type: str, handler: EventHandler) -> "Session":
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unrecognized event type {event_type}")
        self._connection.remove_listener(event_type, handler)
        return self

    def on_abort(self, handler: EventHandler) -> "Session":
        return self.add_event_listener("abort", handler)

    def on_error(self, handler: EventHandler) -> "Session":
        return self.add_event_listener("error", handler)

    def on_versionchange(self, handler: EventHandler) -> "Session":
        return self.add_event_listener("versionchange", handler)

    def _attach_proxies(self) -> Optional[str]:
        """Expose each collection as an attribute; returns the first colliding name."""
        for collection in self.collection_names:
            if hasattr(self, collection):
                return collection
            setattr(self, collection, CollectionProxy(self, collection))
        return None

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if not self.is_closed:
            await self.close()

    def __repr__(self) -> str:
        state = "closed" if self.is_closed else "open"
        return f"<Session {self.name!r} v{self.version} {state}>"


class SessionFactory:
    """Opens sessions against a registry of shared connections."""

    def __init__(self, registry: Optional[ConnectionRegistry] = None, config: Optional[StoreConfig] = None):
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.config = config if config is not None else StoreConfig.from_env()

    async def open(
        self,
        name: str,
        version: int = 1,
        schema: Optional[SchemaInput] = None,
        collection_proxies: bool = True,
    ) -> Session:
        """Open ``name`` at ``version``, reusing a live connection when one exists.

        On a miss the store is opened for real; when ``version`` is newer than
        the stored version the collections are reconciled against ``schema``
        (a mapping, or a zero-argument callable producing one).

        Raises:
            BlockedUpgradeError: Another connection holds the store open at an
                older version; ``err.resume`` resolves to the session once it
                closes
            NameCollisionError: A collection name shadows a session attribute
        """
        connection = self.registry.get(name, version)
        if connection is not None:
            logger.info("connection_reused", name=name, version=version)
        else:
            retry = functools.partial(self.open, name, version, schema, collection_proxies)
            connection = await self._connect(name, version, schema, retry)

        session = Session(connection, self.registry)
        if collection_proxies:
            collision = session._attach_proxies()
            if collision is not None:
                await session.close()
                raise NameCollisionError(
                    f"collection '{collision}' collides with a session attribute"
                )
        return session

    async def _connect(
        self,
        name: str,
        version: int,
        schema: Optional[SchemaInput],
        retry: Callable[[], Awaitable[Any]],
    ) -> Connection:
        upgrade = None
        if schema is not None:
            declared = normalize_schema(schema() if callable(schema) else schema)

            async def upgrade(tx: engine.UpgradeTransaction, old_version: int, new_version: int) -> None:
                summary = await reconcile_schema(tx, declared)
                logger.info(
                    "schema_reconciled",
                    name=name,
                    old_version=old_version,
                    new_version=new_version,
                    dropped=summary.dropped,
                    created=summary.created,
                )

        released, on_unblocked = self._release_signal(name)
        try:
            connection = await Connection.open(name, version, self.config, upgrade, on_unblocked)
        except BlockedError as err:
            logger.warning("open_blocked", name=name, version=version, old_version=err.old_version)
            raise BlockedUpgradeError(
                f"opening '{name}' at version {version} is blocked by an open connection",
                resume=self._resume(released, retry),
                old_version=err.old_version,
                new_version=err.new_version,
            ) from err
        except _STORE_FAILURES as err:
            raise wrap_store_error(err) from err

        owner = self.registry.insert(connection)
        if owner is not connection:
            await connection.close()
            logger.info("connection_reused", name=name, version=version)
            return owner
        logger.info(
            "session_opened",
            name=name,
            version=version,
            collections=list(connection.collection_names),
        )
        return connection

    async def delete(self, name: str) -> int:
        """Delete the store ``name``; returns the version it had (0 if absent)."""
        path = self.config.path_for(name)
        released, on_unblocked = self._release_signal(name)
        try:
            old_version = await engine.delete_database(path, on_unblocked=on_unblocked)
        except BlockedError as err:
            logger.warning("open_blocked", name=name, version=None, old_version=err.old_version)
            raise BlockedUpgradeError(
                f"deleting '{name}' is blocked by an open connection",
                resume=self._resume(released, functools.partial(self.delete, name)),
                old_version=err.old_version,
            ) from err
        except (*_STORE_FAILURES, OSError) as err:
            raise wrap_store_error(err) from err
        logger.info("store_deleted", name=name, old_version=old_version)
        return old_version

    @staticmethod
    def compare_keys(first: Any, second: Any) -> int:
        return compare_keys(first, second)

    @staticmethod
    def _release_signal(name: str) -> Tuple[asyncio.Event, Callable[[], None]]:
        loop = asyncio.get_running_loop()
        released = asyncio.Event()

        def on_unblocked() -> None:
            try:
                loop.call_soon_threadsafe(released.set)
            except RuntimeError:
                logger.debug("unblocked_after_loop_closed", name=name)

        return released, on_unblocked

    @staticmethod
    def _resume(released: asyncio.Event, retry: Callable[[], Awaitable[Any]]) -> "asyncio.Task[Any]":
        async def wait_and_retry() -> Any:
            await released.wait()
            return await retry()

        return asyncio.ensure_future(wait_and_retry())


def compare_keys(first: Any, second: Any) -> int:
    """Order two keys: -1, 0 or 1."""
    try:
        return _compare_keys(first, second)
    except EngineError as err:
        raise wrap_store_error(err) from err


_default_factory: Optional[SessionFactory] = None


def _factory(registry: Optional[ConnectionRegistry], config: Optional[StoreConfig]) -> SessionFactory:
    global _default_factory
    if registry is not None or config is not None:
        return SessionFactory(registry, config)
    if _default_factory is None:
        _default_factory = SessionFactory()
    return _default_factory


async def open_session(
    name: str,
    version: int = 1,
    schema: Optional[SchemaInput] = None,
    *,
    collection_proxies: bool = True,
    registry: Optional[ConnectionRegistry] = None,
    config: Optional[StoreConfig] = None,
) -> Session:
    return await _factory(registry, config).open(name, version, schema, collection_proxies)


async def delete_store(
    name: str,
    *,
    registry: Optional[ConnectionRegistry] = None,
    config: Optional[StoreConfig] = None,
) -> int:
    return await _factory(registry, config).delete(name)

