"""Backend contracts and implementations."""

from .in_memory import InMemoryAsyncBackend, InMemoryMedium
from .nats import NatsBackend
from .protocol import Backend, ChangeEvent
from .redis import RedisBackend
from .sqlite import SQLiteBackend


__all__ = [
    "Backend",
    "ChangeEvent",
    "InMemoryAsyncBackend",
    "InMemoryMedium",
    "NatsBackend",
    "RedisBackend",
    "SQLiteBackend",
]
