"""NATS JetStream KV backend implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, override


try:
    import nats as nats_module
except ImportError:  # pragma: no cover - exercised when dependency is absent
    nats_module = None

from kv_store.errors import BackendError, BackendUnavailableError, QuotaExceededError

from .protocol import Backend, ChangeEvent


if TYPE_CHECKING:
    from .protocol import CancelWatch, ChangeCallback


logger = logging.getLogger(__name__)

_NOT_FOUND_ERROR_NAMES = {"BucketNotFoundError", "KeyNotFoundError", "KeyDeletedError", "NoKeysError"}
_UNAVAILABLE_ERROR_NAMES = {"ConnectionClosedError", "NoServersError", "NoRespondersError", "TimeoutError"}
_QUOTA_MARKERS = ("maximum bytes", "insufficient resources")
_DELETE_OPERATIONS = {"DEL", "PURGE"}


def _is_not_found_error(error: Exception) -> bool:
    return error.__class__.__name__ in _NOT_FOUND_ERROR_NAMES


def _is_timeout_error(error: Exception) -> bool:
    return error.__class__.__name__ == "TimeoutError"


def _backend_error(error: Exception, operation: str, key: str | None) -> BackendError | None:
    if error.__class__.__name__ in _UNAVAILABLE_ERROR_NAMES:
        return BackendUnavailableError(operation, key, str(error))
    if any(marker in str(error).lower() for marker in _QUOTA_MARKERS):
        return QuotaExceededError(operation, key, str(error))
    return None


def _decode(value: bytes | str | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode()
    return value


class NatsBackend(Backend):
    """NATS JetStream KV backend.

    The backend uses an existing KV bucket by default.
    Set ``create_bucket=True`` to allow creating it when missing.
    Watches are served by a bucket watcher; entries at revisions written by
    this handle are skipped.
    """

    def __init__(
        self,
        url: str = "nats://nats:4222",
        bucket: str = "kv_store",
        *,
        client: Any | None = None,
        create_bucket: bool = False,
        watch_timeout: float = 5.0,
    ) -> None:
        """Create a backend using a NATS URL or injected client.

        Parameters
        ----------
        url
            NATS server URL used when ``client`` is not provided.
        bucket
            JetStream KV bucket name.
        client
            Optional injected connected NATS client with ``jetstream`` API.
        create_bucket
            When True, creates bucket if missing. Defaults to False.
        watch_timeout
            Seconds a watcher waits for an update before polling again.
        """
        super().__init__()
        self._url = url
        self._bucket_name = bucket
        self._client = client
        self._create_bucket = create_bucket
        self._watch_timeout = watch_timeout
        self._kv: Any | None = None
        self._kv_lock = asyncio.Lock()
        self._own_revisions: dict[int, str] = {}
        self._seen_revision = 0
        self._watch_tasks: dict[asyncio.Task[None], str] = {}

    async def _ensure_kv(self) -> Any:
        if self._kv is not None:
            return self._kv
        async with self._kv_lock:
            if self._kv is None:
                self._kv = await self._open_kv()
        return self._kv

    async def _open_kv(self) -> Any:
        if self._client is None:
            if nats_module is None:
                msg = "nats-py dependency is required for NatsBackend; install with `pip install nats-py`"
                raise RuntimeError(msg)
            connect = getattr(nats_module, "connect", None)
            if connect is None:
                msg = "nats.connect is unavailable in installed nats-py package"
                raise RuntimeError(msg)
            try:
                self._client = await connect(servers=[self._url])
            except Exception as error:
                raise BackendUnavailableError("connect", None, str(error)) from error

        jetstream = self._client.jetstream()

        try:
            return await jetstream.key_value(self._bucket_name)
        except Exception as error:
            if _is_not_found_error(error) and self._create_bucket:
                return await jetstream.create_key_value(bucket=self._bucket_name)
            msg = (
                f"jetstream KV bucket '{self._bucket_name}' is not available; "
                "create it first or initialize with create_bucket=True"
            )
            raise RuntimeError(msg) from error

    @override
    async def get(self, key: str) -> str | None:
        """Return raw value for key, or None when key does not exist."""
        kv = await self._ensure_kv()
        try:
            entry = await kv.get(key)
        except Exception as error:
            if _is_not_found_error(error):
                return None
            translated = _backend_error(error, "get", key)
            if translated is None:
                raise
            raise translated from error

        return _decode(entry.value)

    @override
    async def set(self, key: str, value: str) -> None:
        """Store raw value for key."""
        kv = await self._ensure_kv()
        try:
            revision = await kv.put(key, value.encode())
        except Exception as error:
            translated = _backend_error(error, "set", key)
            if translated is None:
                raise
            raise translated from error
        # a revision the watchers already passed would never be discarded
        if isinstance(revision, int) and revision > self._seen_revision and self._is_watched(key):
            self._own_revisions[revision] = key

    @override
    async def delete(self, key: str) -> None:
        """Delete key if present."""
        kv = await self._ensure_kv()
        try:
            await kv.delete(key)
        except Exception as error:
            translated = _backend_error(error, "delete", key)
            if translated is None:
                raise
            raise translated from error

    @override
    async def list_keys(self, prefix: str) -> list[str]:
        """List all keys beginning with prefix in sorted order."""
        kv = await self._ensure_kv()
        try:
            keys = await kv.keys()
        except Exception as error:
            if _is_not_found_error(error):
                return []
            raise

        if not keys:
            return []
        return sorted([key for key in keys if key.startswith(prefix)])

    def _is_watched(self, key: str) -> bool:
        return any(key.startswith(prefix) for prefix in self._watch_tasks.values())

    def _to_event(self, entry: Any, prefix: str) -> ChangeEvent | None:
        if entry.revision > self._seen_revision:
            self._seen_revision = entry.revision
        if not entry.key.startswith(prefix):
            return None
        own = self._own_revisions.pop(entry.revision, None) is not None
        # the watcher delivers in revision order, older own revisions under its prefix will not show up
        passed = [
            revision
            for revision, key in self._own_revisions.items()
            if revision < entry.revision and key.startswith(prefix)
        ]
        for revision in passed:
            del self._own_revisions[revision]
        if own:
            return None
        if entry.operation in _DELETE_OPERATIONS:
            return ChangeEvent(entry.key, deleted=True)
        return ChangeEvent(entry.key, _decode(entry.value))

    async def _listen(self, prefix: str, callback: ChangeCallback) -> None:
        watcher: Any | None = None
        initialized = False
        try:
            kv = await self._ensure_kv()
            watcher = await kv.watchall()
            while True:
                try:
                    entry = await watcher.updates(timeout=self._watch_timeout)
                except Exception as error:
                    if _is_timeout_error(error):
                        continue
                    raise
                # The watcher replays current values and then yields None once.
                if entry is None:
                    initialized = True
                    continue
                if not initialized:
                    continue
                event = self._to_event(entry, prefix)
                if event is not None:
                    callback(event)
        except Exception:
            logger.exception("nats watcher on bucket %r stopped", self._bucket_name)
        finally:
            if watcher is not None:
                await watcher.stop()

    @override
    def watch(self, prefix: str, callback: ChangeCallback) -> CancelWatch:
        """Watch the bucket for changes; requires a running event loop."""
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._listen(prefix, callback), name=f"kv-store-nats-watch-{prefix}")
        self._watch_tasks[task] = prefix
        task.add_done_callback(self._watch_stopped)
        logger.debug("watching nats bucket %r for prefix %r", self._bucket_name, prefix)

        def cancel() -> None:
            _ = task.cancel()

        return cancel

    def _watch_stopped(self, task: asyncio.Task[None]) -> None:
        _ = self._watch_tasks.pop(task, None)
        if not self._watch_tasks:
            self._own_revisions.clear()

    @override
    async def close(self) -> None:
        """Stop watchers and close NATS client resources."""
        tasks = list(self._watch_tasks)
        for task in tasks:
            _ = task.cancel()
        _ = await asyncio.gather(*tasks, return_exceptions=True)
        if self._client is None:
            return
        await self._client.close()
