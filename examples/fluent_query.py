"""Fluent query walkthrough: ranges, filters, windows, distinct keys and writes."""

from __future__ import annotations

import asyncio
import tempfile

from kvsession import SessionFactory, StoreConfig

SCHEMA = {
    "people": {
        "key": {"keyPath": "id", "autoIncrement": True},
        "indexes": {"age": {}, "city": {}},
    },
}

PEOPLE = [
    {"name": "Ada", "age": 36, "city": "London"},
    {"name": "Grace", "age": 45, "city": "New York"},
    {"name": "Alan", "age": 41, "city": "London"},
    {"name": "Edsger", "age": 72, "city": "Austin"},
    {"name": "Barbara", "age": 29, "city": "New York"},
]


async def main() -> None:
    factory = SessionFactory(config=StoreConfig(data_dir=tempfile.mkdtemp()))
    async with await factory.open("fluent-query", 1, SCHEMA) as session:
        await session.add("people", PEOPLE)

        adults = await (
            session.query("people", "age")
            .range({"gte": 30, "lt": 50})
            .filter(lambda person: person["city"] != "Austin")
            .map(lambda person: person["name"])
            .execute()
        )
        print("aged 30-49:", adults)

        oldest_two = await session.query("people", "age").all().desc().limit(2).execute()
        print("oldest two:", [person["name"] for person in oldest_two])

        cities = await session.query("people", "city").all().keys().distinct().execute()
        print("cities:", cities)

        londoners = await session.query("people", "city").equals("London").count().execute()
        print("people in London:", londoners)

        moved = await (
            session.query("people", "city")
            .equals("New York")
            .map(lambda person: f"{person['name']} -> {person['city']}")
            .modify({"city": "Boston", "moved": True})
            .execute()
        )
        print("moved:", moved)


if __name__ == "__main__":
    asyncio.run(main())
