"""Redis-compatible backend implementation."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from inspect import isawaitable
from typing import TYPE_CHECKING, Any, override


try:
    import redis.asyncio as redis_async
except ImportError:  # pragma: no cover - exercised when dependency is absent
    redis_async = None

from kv_store.errors import BackendError, BackendUnavailableError, QuotaExceededError

from .protocol import Backend, ChangeEvent


if TYPE_CHECKING:
    from .protocol import CancelWatch, ChangeCallback


logger = logging.getLogger(__name__)

_UNAVAILABLE_ERROR_NAMES = {"ConnectionError", "TimeoutError", "BusyLoadingError"}


def _normalize_string(value: str | bytes | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode()
    return value


def _backend_error(error: Exception, operation: str, key: str | None) -> BackendError | None:
    name = error.__class__.__name__
    if name in _UNAVAILABLE_ERROR_NAMES:
        return BackendUnavailableError(operation, key, str(error))
    if name == "ResponseError" and str(error).startswith("OOM"):
        return QuotaExceededError(operation, key, str(error))
    return None


async def _maybe_close(resource: Any) -> None:
    close_method = getattr(resource, "aclose", None)
    if close_method is None:
        close_method = getattr(resource, "close", None)
    if close_method is None:
        return

    maybe_awaitable = close_method()
    if isawaitable(maybe_awaitable):
        await maybe_awaitable


class RedisBackend(Backend):
    """Redis-compatible async backend using ``redis.asyncio`` client APIs.

    Every write and delete is announced on a pub/sub channel together with an
    id unique to this handle, so watchers skip the handle's own changes.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        client: Any | None = None,
        channel: str = "kv_store:changes",
    ) -> None:
        """Create a backend from URL or an injected async client.

        Parameters
        ----------
        url
            Redis connection URL used when ``client`` is not provided.
        client
            Optional injected client with ``get/set/delete/scan_iter/publish/pubsub/aclose`` API.
        channel
            Pub/sub channel used to announce changes to other handles.
        """
        super().__init__()
        self._url = url
        self._channel = channel
        self._origin = uuid.uuid4().hex
        self._watch_tasks: set[asyncio.Task[None]] = set()
        if client is not None:
            self._client = client
            return

        if redis_async is None:
            msg = "redis dependency is required for RedisBackend; install with `pip install redis`"
            raise RuntimeError(msg)

        self._client = redis_async.from_url(url, decode_responses=True)

    async def _announce(self, key: str, value: str | None) -> None:
        message = json.dumps({"origin": self._origin, "key": key, "value": value})
        await self._client.publish(self._channel, message)

    @override
    async def get(self, key: str) -> str | None:
        """Return raw value for key, or None when key does not exist."""
        try:
            return _normalize_string(await self._client.get(key))
        except Exception as error:
            translated = _backend_error(error, "get", key)
            if translated is None:
                raise
            raise translated from error

    @override
    async def set(self, key: str, value: str) -> None:
        """Store raw value for key and announce the change."""
        try:
            await self._client.set(key, value)
            await self._announce(key, value)
        except Exception as error:
            translated = _backend_error(error, "set", key)
            if translated is None:
                raise
            raise translated from error

    @override
    async def delete(self, key: str) -> None:
        """Delete key if present and announce the change."""
        try:
            await self._client.delete(key)
            await self._announce(key, None)
        except Exception as error:
            translated = _backend_error(error, "delete", key)
            if translated is None:
                raise
            raise translated from error

    @override
    async def list_keys(self, prefix: str) -> list[str]:
        """List all keys beginning with prefix in sorted order."""
        keys: list[str] = []
        try:
            async for key in self._client.scan_iter(match=f"{prefix}*"):
                normalized = _normalize_string(key)
                if normalized is not None:
                    keys.append(normalized)
        except Exception as error:
            translated = _backend_error(error, "list_keys", None)
            if translated is None:
                raise
            raise translated from error
        return sorted(keys)

    def _parse_message(self, data: str | bytes) -> ChangeEvent | None:
        try:
            payload = json.loads(_normalize_string(data) or "")
            origin = payload["origin"]
            key = payload["key"]
            value = payload["value"]
        except (ValueError, KeyError, TypeError):
            logger.warning("ignoring malformed change message on %r: %r", self._channel, data)
            return None

        if origin == self._origin:
            return None
        if value is None:
            return ChangeEvent(key, deleted=True)
        return ChangeEvent(key, value)

    async def _listen(self, prefix: str, callback: ChangeCallback) -> None:
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(self._channel)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                event = self._parse_message(message["data"])
                if event is None or not event.key.startswith(prefix):
                    continue
                callback(event)
        except Exception:
            logger.exception("redis change feed on %r stopped", self._channel)
        finally:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(self._channel)
            await _maybe_close(pubsub)

    @override
    def watch(self, prefix: str, callback: ChangeCallback) -> CancelWatch:
        """Subscribe to the change channel; requires a running event loop."""
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._listen(prefix, callback), name=f"kv-store-redis-watch-{prefix}")
        self._watch_tasks.add(task)
        task.add_done_callback(self._watch_tasks.discard)
        logger.debug("watching redis channel %r for prefix %r", self._channel, prefix)

        def cancel() -> None:
            _ = task.cancel()

        return cancel

    @override
    async def close(self) -> None:
        """Stop change feeds and release backend resources."""
        tasks = list(self._watch_tasks)
        for task in tasks:
            _ = task.cancel()
        _ = await asyncio.gather(*tasks, return_exceptions=True)
        await _maybe_close(self._client)
