"""In-memory backend implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, override

from .protocol import Backend, ChangeEvent


if TYPE_CHECKING:
    from .protocol import CancelWatch, ChangeCallback


logger = logging.getLogger(__name__)


class InMemoryMedium:
    """Dict shared by one or more :class:`InMemoryAsyncBackend` handles.

    Each handle stands for a separate execution context; a write through one
    handle is reported to the watchers of every other handle.
    """

    def __init__(self) -> None:
        super().__init__()
        self.data: dict[str, str] = {}
        self.lock = asyncio.Lock()
        self._watchers: list[tuple[InMemoryAsyncBackend, str, ChangeCallback]] = []

    def add_watcher(self, handle: InMemoryAsyncBackend, prefix: str, callback: ChangeCallback) -> CancelWatch:
        watcher = (handle, prefix, callback)
        self._watchers.append(watcher)

        def cancel() -> None:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

        return cancel

    def publish(self, origin: InMemoryAsyncBackend, event: ChangeEvent) -> None:
        for handle, prefix, callback in list(self._watchers):
            if handle is origin and not handle.echoes_writes:
                continue
            if not event.key.startswith(prefix):
                continue
            callback(event)


class InMemoryAsyncBackend(Backend):
    """Simple in-memory backend for local development and tests.

    Parameters
    ----------
    medium
        Shared medium; a private one is created when omitted.
    echo
        When True, this handle's watchers also receive its own writes.
    """

    def __init__(self, medium: InMemoryMedium | None = None, *, echo: bool = False) -> None:
        super().__init__()
        self.medium = medium if medium is not None else InMemoryMedium()
        self.echoes_writes = echo

    @override
    async def get(self, key: str) -> str | None:
        """Return raw value for key, or None when key does not exist."""
        async with self.medium.lock:
            return self.medium.data.get(key)

    @override
    async def set(self, key: str, value: str) -> None:
        """Store raw value for key."""
        async with self.medium.lock:
            self.medium.data[key] = value
        self.medium.publish(self, ChangeEvent(key, value))

    @override
    async def delete(self, key: str) -> None:
        """Delete key if present."""
        async with self.medium.lock:
            existed = self.medium.data.pop(key, None) is not None
        if existed:
            self.medium.publish(self, ChangeEvent(key, deleted=True))

    @override
    async def list_keys(self, prefix: str) -> list[str]:
        """List all keys beginning with prefix in sorted order."""
        async with self.medium.lock:
            matching = [key for key in self.medium.data if key.startswith(prefix)]
        return sorted(matching)

    @override
    def watch(self, prefix: str, callback: ChangeCallback) -> CancelWatch:
        """Receive changes made through other handles on the same medium."""
        logger.debug("watching in-memory keys with prefix %r", prefix)
        return self.medium.add_watcher(self, prefix, callback)

    @override
    async def close(self) -> None:
        """Release backend resources."""
        return
