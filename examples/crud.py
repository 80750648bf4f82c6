"""Simple CRUD walkthrough for kvsession."""

from __future__ import annotations

import asyncio
import tempfile

from kvsession import Keyed, SessionFactory, StoreConfig

SCHEMA = {
    "users": {"key": {"keyPath": "id", "autoIncrement": True}, "indexes": {"email": {"unique": True}}},
    "settings": {},
}


async def main() -> None:
    factory = SessionFactory(config=StoreConfig(data_dir=tempfile.mkdtemp()))
    session = await factory.open("crud-example", 1, SCHEMA)

    [user] = await session.add("users", {"name": "Example User", "email": "user@example.com"})
    print("Created user:", user["id"])

    await session.update("users", dict(user, bio="Updated from Python"))
    print("Fetched user:", await session.get("users", user["id"]))

    await session.settings.add(Keyed("theme", {"value": "dark"}))
    print("Settings count:", await session.settings.count())

    await session.remove("users", user["id"])
    print("Deleted user:", user["id"])

    await session.close()


if __name__ == "__main__":
    asyncio.run(main())
