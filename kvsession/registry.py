"""Open connections and the registry that shares them by ``(name, version)``."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Set, Tuple

import structlog

from ._store import engine
from .config import StoreConfig
from .errors import SessionClosedError

logger = structlog.get_logger()

ConnectionKey = Tuple[str, int]
EventHandler = Callable[[engine.StoreEvent], Any]


class Connection:
    """One engine connection shared by every session at ``(name, version)``.

    The engine runs each statement on the connection's aiosqlite worker
    thread; ``run`` additionally holds a lock for the whole job so that one
    job's transaction never interleaves with another's.
    """

    def __init__(
        self,
        name: str,
        version: int,
        db: engine.Database,
        loop: asyncio.AbstractEventLoop,
    ):
        self.name = name
        self.version = version
        self._db = db
        self._loop = loop
        self._lock = asyncio.Lock()
        self._closed = False
        self._handlers: Dict[Tuple[str, EventHandler], Callable[[engine.StoreEvent], None]] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()

    @classmethod
    async def open(
        cls,
        name: str,
        version: int,
        config: StoreConfig,
        upgrade: Optional[Callable[[engine.UpgradeTransaction, int, int], Awaitable[None]]] = None,
        on_unblocked: Optional[Callable[[], None]] = None,
    ) -> "Connection":
        db = await engine.open_database(
            config.path_for(name),
            name,
            version,
            upgrade,
            on_unblocked=on_unblocked,
            **config.engine_options(),
        )
        return cls(name, version, db, asyncio.get_running_loop())

    @property
    def key(self) -> ConnectionKey:
        return (self.name, self.version)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def collection_names(self) -> Tuple[str, ...]:
        return self._db.object_store_names

    async def run(self, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Await ``fn(db, *args, **kwargs)`` with the connection to itself."""
        async with self._lock:
            if self._closed:
                raise SessionClosedError()
            return await fn(self._db, *args, **kwargs)

    async def close(self) -> None:
        if self._closed:
            raise SessionClosedError()
        self._closed = True
        async with self._lock:
            await self._db.close()

    def add_listener(self, event_type: str, handler: EventHandler) -> None:
        if (event_type, handler) in self._handlers:
            return

        def deliver(event: engine.StoreEvent) -> None:
            self._loop.call_soon(self._invoke, handler, event)

        self._db.add_listener(event_type, deliver)
        self._handlers[(event_type, handler)] = deliver

    def remove_listener(self, event_type: str, handler: EventHandler) -> None:
        deliver = self._handlers.pop((event_type, handler), None)
        if deliver is not None:
            self._db.remove_listener(event_type, deliver)

    def _invoke(self, handler: EventHandler, event: engine.StoreEvent) -> None:
        result = handler(event)
        if asyncio.iscoroutine(result):
            task = self._loop.create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)


class ConnectionRegistry:
    """Open connections keyed by ``(name, version)``, at most one per key."""

    def __init__(self) -> None:
        self._entries: Dict[ConnectionKey, Connection] = {}

    def get(self, name: str, version: int) -> Optional[Connection]:
        connection = self._entries.get((name, version))
        if connection is not None and connection.closed:
            del self._entries[(name, version)]
            return None
        return connection

    def insert(self, connection: Connection) -> Connection:
        """Store ``connection`` unless a live entry already holds its key.

        Returns the connection that owns the key afterwards; a caller that gets
        back a different connection must close its own.
        """
        existing = self.get(connection.name, connection.version)
        if existing is not None:
            return existing
        self._entries[connection.key] = connection
        return connection

    def evict(self, name: str, version: int, connection: Optional[Connection] = None) -> bool:
        current = self._entries.get((name, version))
        if current is None or (connection is not None and current is not connection):
            return False
        del self._entries[(name, version)]
        logger.debug("connection_evicted", name=name, version=version)
        return True

    def keys(self) -> Iterator[ConnectionKey]:
        return iter(list(self._entries))

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
