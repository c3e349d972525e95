"""Example for Store using the Redis backend."""

import asyncio
import os

from kv_store import Store
from kv_store.backends.redis import RedisBackend


async def main() -> None:
    """Run a basic set/get/subscribe flow against Redis."""
    redis_url = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    async with Store(RedisBackend(redis_url), "settings") as store:
        _ = store.subscribe("sidebarPosition", lambda value: print("sidebarPosition changed:", value))
        await store.set("sidebarPosition", "right")
        print("sidebarPosition:", await store.get("sidebarPosition", "left"))

        await store.delete("sidebarPosition")
        print("after delete:", await store.get("sidebarPosition", "left"))


if __name__ == "__main__":
    asyncio.run(main())
