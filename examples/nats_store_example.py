"""Example for Store using the NATS JetStream KV backend."""

import asyncio
import os

from kv_store import Store
from kv_store.backends.nats import NatsBackend


async def main() -> None:
    """Keep a store open and print changes made by other processes for a minute."""
    nats_url = os.environ.get("NATS_URL", "nats://localhost:4222")
    backend = NatsBackend(nats_url, bucket="kv_store", create_bucket=True)
    # NATS KV keys may not contain ':'
    async with Store(backend, "settings", sep=".") as store:
        print("debugFlag:", await store.get("debugFlag", False))
        _ = store.subscribe("debugFlag", lambda value: print("debugFlag changed:", value))
        await asyncio.sleep(60)


if __name__ == "__main__":
    asyncio.run(main())
