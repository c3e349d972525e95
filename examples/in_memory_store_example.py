"""Two stores sharing an in-memory medium, standing in for two browser tabs."""

import asyncio

from kv_store import InMemoryAsyncBackend, InMemoryMedium, Store


async def main() -> None:
    """Change a setting in one store and watch it arrive in the other."""
    medium = InMemoryMedium()
    first_tab = Store(InMemoryAsyncBackend(medium), "settings")
    second_tab = Store(InMemoryAsyncBackend(medium), "settings")

    unsubscribe = second_tab.subscribe("zoom", lambda value: print("second tab sees zoom =", value))
    try:
        print("zoom before:", await second_tab.get("zoom", "md"))
        await first_tab.set("zoom", "lg")
        print("zoom after:", await second_tab.get("zoom", "md"))
        print("keys:", await first_tab.keys())
    finally:
        unsubscribe()
        await first_tab.close()
        await second_tab.close()


if __name__ == "__main__":
    asyncio.run(main())
