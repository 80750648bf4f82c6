import asyncio
import tempfile
from typing import Any, List

import pytest

from kvsession import (
    Bare,
    ConnectionRegistry,
    ConstraintError,
    DataError,
    ErrorCode,
    Keyed,
    NameCollisionError,
    NotFoundError,
    SessionClosedError,
    SessionFactory,
    StoreConfig,
)
from kvsession._store.engine import StoreEvent

SCHEMA = {
    "people": {
        "key": {"keyPath": "id", "autoIncrement": True},
        "indexes": {"age": {}, "email": {"unique": True}},
    },
    "users": {"key": {"keyPath": "email"}},
    "notes": {},
}


def temp_factory() -> SessionFactory:
    return SessionFactory(ConnectionRegistry(), StoreConfig(data_dir=tempfile.mkdtemp()))


def test_add_injects_generated_keys() -> None:
    factory = temp_factory()

    async def run() -> List[Any]:
        session = await factory.open("app", 1, SCHEMA)
        alice = {"name": "alice"}
        stored = await session.add("people", alice, [{"name": "bob"}, Bare({"name": "carol"})])
        assert alice["id"] == 1
        assert await session.get("people", 3) == {"id": 3, "name": "carol"}
        await session.close()
        return stored

    stored = asyncio.run(run())
    assert [record["id"] for record in stored] == [1, 2, 3]
    assert [record["name"] for record in stored] == ["alice", "bob", "carol"]


def test_out_of_line_keys_use_internal_id_field() -> None:
    factory = temp_factory()

    async def run() -> None:
        session = await factory.open("app", 1, SCHEMA)
        note = {"text": "hello"}
        await session.add("notes", Keyed("n1", note))
        assert note["__id__"] == "n1"
        assert await session.get("notes", "n1") == {"text": "hello"}

        with pytest.raises(DataError) as excinfo:
            await session.add("notes", {"text": "no key"})
        assert excinfo.value.code == ErrorCode.DATA
        assert excinfo.value.name == "DataError"
        await session.close()

    asyncio.run(run())


def test_duplicate_key_aborts_whole_batch() -> None:
    factory = temp_factory()

    async def run() -> None:
        session = await factory.open("app", 1, SCHEMA)
        first = {"email": "a@x", "n": 1}
        with pytest.raises(ConstraintError) as excinfo:
            await session.add("users", [first, {"email": "b@x"}, {"email": "a@x", "n": 2}])
        assert excinfo.value.__cause__ is not None
        assert await session.count("users") == 0

        await session.add("users", first)
        updated = await session.update("users", {"email": "a@x", "n": 5}, {"email": "c@x"})
        assert [record["email"] for record in updated] == ["a@x", "c@x"]
        assert (await session.get("users", "a@x"))["n"] == 5
        assert await session.count("users") == 2
        await session.close()

    asyncio.run(run())


def test_get_count_remove_accept_ranges() -> None:
    factory = temp_factory()

    async def run() -> None:
        session = await factory.open("app", 1, SCHEMA)
        await session.add("people", [{"name": f"p{i}"} for i in range(10)])

        assert await session.count("people") == 10
        assert await session.count("people", {"gte": 3, "lt": 6}) == 3
        assert await session.count("people", 4) == 1
        assert (await session.get("people", {"gt": 8}))["id"] == 9
        assert await session.get("people", 42) is None

        assert await session.remove("people", {"lte": 2}) == {"lte": 2}
        assert await session.count("people") == 8
        await session.remove("people", 10)
        assert await session.get("people", 10) is None

        await session.clear("people")
        assert await session.count("people") == 0
        await session.close()

    asyncio.run(run())


def test_unknown_collection_is_a_store_error() -> None:
    factory = temp_factory()

    async def run() -> None:
        session = await factory.open("app", 1, SCHEMA)
        with pytest.raises(NotFoundError):
            await session.get("missing", 1)
        await session.close()

    asyncio.run(run())


def test_close_is_one_way() -> None:
    factory = temp_factory()

    async def run() -> None:
        session = await factory.open("app", 1, SCHEMA)
        assert not session.is_closed
        await session.close()
        assert session.is_closed
        with pytest.raises(SessionClosedError):
            await session.close()
        for call in (
            session.add("people", {"name": "x"}),
            session.update("people", {"name": "x"}),
            session.remove("people", 1),
            session.clear("people"),
            session.get("people", 1),
            session.count("people"),
        ):
            with pytest.raises(SessionClosedError) as excinfo:
                await call
            assert excinfo.value.code == ErrorCode.SESSION_CLOSED

    asyncio.run(run())


def test_same_version_shares_one_connection() -> None:
    factory = temp_factory()

    async def run() -> None:
        first = await factory.open("app", 1, SCHEMA)
        second = await factory.open("app", 1, SCHEMA)
        assert first._connection is second._connection
        assert len(factory.registry) == 1

        await first.close()
        assert second.is_closed
        assert ("app", 1) not in factory.registry
        with pytest.raises(SessionClosedError):
            await second.get("people", 1)

        third = await factory.open("app", 1, SCHEMA)
        assert third._connection is not first._connection
        await third.close()

    asyncio.run(run())


def test_concurrent_jobs_on_one_connection_run_one_at_a_time() -> None:
    factory = temp_factory()

    async def run() -> List[Any]:
        first = await factory.open("app", 1, SCHEMA)
        second = await factory.open("app", 1, SCHEMA)
        writes = [first.add("people", {"name": f"w{i}"}) for i in range(10)]
        writes += [second.update("users", {"email": f"u{i}@x"}) for i in range(10)]
        await asyncio.gather(*writes, second.count("people"))
        counts = [await first.count("people"), await second.count("users")]
        keys = await first.query("people").all().keys().execute()
        await first.close()
        return [counts, keys]

    assert asyncio.run(run()) == [[10, 10], list(range(1, 11))]


def test_collection_proxies() -> None:
    factory = temp_factory()

    async def run() -> None:
        session = await factory.open("app", 1, SCHEMA)
        await session.people.add({"name": "dora", "age": 31})
        assert await session.people.count() == 1
        assert (await session.people.get(1))["name"] == "dora"
        rows = await session.people.query("age").equals(31).execute()
        assert [row["name"] for row in rows] == ["dora"]
        await session.people.remove(1)
        assert await session.people.count() == 0

        plain = await factory.open("app", 1, SCHEMA, collection_proxies=False)
        assert not hasattr(plain, "people")
        await session.close()

    asyncio.run(run())


def test_colliding_collection_name_closes_session() -> None:
    factory = temp_factory()

    async def run() -> None:
        with pytest.raises(NameCollisionError) as excinfo:
            await factory.open("clash", 1, {"close": {}})
        assert excinfo.value.code == ErrorCode.NAME_COLLISION
        assert len(factory.registry) == 0

        session = await factory.open("clash", 1, {"close": {}}, collection_proxies=False)
        assert session.collection_names == ("close",)
        await session.close()

    asyncio.run(run())


def test_abort_and_error_events_reach_listeners() -> None:
    factory = temp_factory()

    async def run() -> List[str]:
        session = await factory.open("app", 1, SCHEMA)
        seen: List[str] = []

        async def on_abort(event: StoreEvent) -> None:
            seen.append(event.type)

        session.on_error(lambda event: seen.append(event.type)).on_abort(on_abort)
        with pytest.raises(ConstraintError):
            await session.add("users", {"email": "a@x"}, {"email": "a@x"})
        for _ in range(3):
            await asyncio.sleep(0)

        session.remove_event_listener("abort", on_abort)
        with pytest.raises(ValueError):
            session.add_event_listener("commit", on_abort)
        await session.close()
        return seen

    assert asyncio.run(run()) == ["error", "abort"]


def test_async_context_manager_closes_session() -> None:
    factory = temp_factory()

    async def run() -> None:
        async with await factory.open("app", 1, SCHEMA) as session:
            await session.add("notes", Keyed(1, "one"))
        assert session.is_closed

    asyncio.run(run())
