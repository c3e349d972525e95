"""Cached, observable key-value store over an async backend.

Local changes are applied optimistically: ``set`` updates the cache and
notifies subscribers before the backend write runs in a background task.
Write failures never reach the caller of ``set``; they are handed to the
store's error sink instead, and the cached value is kept.

Changes reported by the backend's watch are folded into the same
notification path, so subscribers cannot tell local changes from changes
made by another process sharing the backend.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Self

from kv_store.codec import CORRUPT, JsonCodec
from kv_store.errors import (
    BackendError,
    BackendUnavailableError,
    CorruptValueError,
    StoreClosedError,
    StoreError,
    SubscriberError,
)
from kv_store.key_mapping import KeyMapper
from kv_store.subscriptions import Subscription, SubscriptionRegistry


if TYPE_CHECKING:
    from collections.abc import Coroutine
    from types import TracebackType

    from kv_store.backends import Backend, ChangeEvent
    from kv_store.codec import Codec


logger = logging.getLogger(__name__)

ErrorSink = Callable[[StoreError], None]

_MAX_PENDING_ECHOES = 32

_NO_BASELINE: Any = object()


def _log_error(error: StoreError) -> None:
    logger.error("%s", error, exc_info=error)


@dataclass(slots=True)
class _Entry:
    value: Any = None
    present: bool = False
    version: int = 0


class Store:
    """Key-value store with a per-key cache and change subscriptions.

    Parameters
    ----------
    backend
        Persistence medium. Its change feed, when it has one, is watched for
        the lifetime of the store.
    namespace
        Prefix scoping every key this store touches.
    sep
        Separator between namespace and key in backend keys.
    codec
        Value codec; JSON by default.
    on_error
        Receives errors that cannot be raised to a caller: failed writes,
        corrupt payloads, and failing subscribers. Defaults to logging them at
        ERROR level.
    """

    def __init__(
        self,
        backend: Backend,
        namespace: str,
        *,
        sep: str = ":",
        codec: Codec | None = None,
        on_error: ErrorSink | None = None,
    ) -> None:
        super().__init__()
        self._backend = backend
        self._mapper = KeyMapper(namespace=namespace, sep=sep)
        self._codec = codec if codec is not None else JsonCodec()
        self._on_error = on_error if on_error is not None else _log_error
        self._entries: dict[str, _Entry] = {}
        self._registry = SubscriptionRegistry(on_failure=self._subscriber_failed)
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._echoes: dict[str, deque[str | None]] = {}
        self._inflight: dict[str, int] = {}
        # keys whose last write failed, mapped to the payload first read back afterwards
        self._unsynced: dict[str, Any] = {}
        self._missed: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._backend_closed = False
        self._unwatch = backend.watch(self._mapper.prefix, self._on_backend_change)
        if self._unwatch is None:
            logger.debug("backend %r has no change feed; only local changes are observed", backend)

    @property
    def namespace(self) -> str:
        return self._mapper.namespace

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self, key: str, default: Any = None) -> Any:
        """Read key from the backend and return its value, or default.

        Never raises for backend or decoding failures: a failed read returns
        the last known value when there is one, a corrupt payload is reported
        to the error sink and reads as default.
        """
        backend_key = self._mapper.full_key(key)
        entry = self._entry(key)
        if self._inflight.get(key):
            # own writes are pending, the cache holds the newest value
            return entry.value if entry.present else default
        version = entry.version
        try:
            raw = await self._backend.get(backend_key)
        except Exception as error:
            logger.warning("reading %r failed, falling back to the last known value: %s", backend_key, error)
            return entry.value if entry.present else default

        if entry.version != version or self._inflight.get(key):
            # a newer change landed while the read was pending
            return entry.value if entry.present else default

        if key in self._unsynced:
            return self._read_back_unsynced(key, raw, default)

        if raw is None:
            _ = self._update(key, None, present=False, notify=entry.present)
            return default

        value = self._codec.decode(raw)
        if value is CORRUPT:
            self._report(CorruptValueError(backend_key, raw))
            return default

        _ = self._update(key, value, present=True, notify=entry.present)
        return value

    def peek(self, key: str, default: Any = None) -> Any:
        """Return the cached value for key without touching the backend."""
        entry = self._entries.get(key)
        if entry is None or not entry.present:
            return default
        return entry.value

    def set(self, key: str, value: Any) -> asyncio.Task[None]:
        """Update key, notify subscribers, and write to the backend in the background.

        Returns the background write task. Awaiting it waits for the write to
        finish; it does not raise, failures go to the error sink.
        """
        self._ensure_open()
        loop = asyncio.get_running_loop()
        backend_key = self._mapper.full_key(key)
        raw = self._codec.encode(value)
        decoded = self._codec.decode(raw)
        cached = value if decoded is CORRUPT else decoded

        # the write is queued before subscribers run so writes they trigger land after it
        task = self._queue_write(loop, key, backend_key, raw)
        _ = self._update(key, cached, present=True, force=True)
        return task

    def delete(self, key: str) -> asyncio.Task[None]:
        """Remove key, notify subscribers with None, and delete it from the backend in the background."""
        self._ensure_open()
        loop = asyncio.get_running_loop()
        backend_key = self._mapper.full_key(key)

        task = self._queue_write(loop, key, backend_key, None)
        _ = self._update(key, None, present=False)
        return task

    def subscribe(self, key: str, callback: Callable[[Any], None]) -> Subscription:
        """Call callback with the new value every time key changes."""
        self._ensure_open()
        _ = self._mapper.full_key(key)
        return self._registry.add(key, callback)

    async def keys(self) -> list[str]:
        """Return the keys stored under this namespace."""
        try:
            backend_keys = await self._backend.list_keys(self._mapper.prefix)
        except Exception as error:
            logger.warning("listing keys of namespace %r failed: %s", self.namespace, error)
            return []
        return [self._mapper.logical_key(key) for key in backend_keys if self._mapper.matches(key)]

    async def flush(self) -> None:
        """Wait for pending background writes and refreshes."""
        while self._tasks:
            _ = await asyncio.gather(*self._tasks, return_exceptions=True)

    def teardown(self) -> None:
        """Stop watching the backend and drop every subscription."""
        if self._closed:
            return
        self._closed = True
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
        self._registry.clear()
        self._echoes.clear()
        self._missed.clear()

    async def close(self) -> None:
        """Tear down, wait for pending writes, and close the backend."""
        self.teardown()
        await self.flush()
        if self._backend_closed:
            return
        self._backend_closed = True
        await self._backend.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"Store(namespace={self.namespace!r}, backend={self._backend!r})"

    def _ensure_open(self) -> None:
        if self._closed:
            msg = f"store for namespace '{self.namespace}' has been torn down"
            raise StoreClosedError(msg)

    def _entry(self, key: str) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        return entry

    def _update(self, key: str, value: Any, *, present: bool, notify: bool = True, force: bool = False) -> bool:
        entry = self._entry(key)
        unchanged = entry.present == present and (not present or entry.value == value)
        if unchanged and not force:
            return False

        entry.value = value if present else None
        entry.present = present
        entry.version += 1
        if notify:
            self._registry.notify(key, entry.value)
        return True

    def _spawn(self, loop: asyncio.AbstractEventLoop, coroutine: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = loop.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _queue_write(
        self, loop: asyncio.AbstractEventLoop, key: str, backend_key: str, raw: str | None
    ) -> asyncio.Task[None]:
        self._remember_echo(key, raw)
        self._inflight[key] = self._inflight.get(key, 0) + 1
        return self._spawn(loop, self._write(key, backend_key, raw))

    async def _write(self, key: str, backend_key: str, raw: str | None) -> None:
        lock = self._write_locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                await self._persist(key, backend_key, raw)
        finally:
            self._write_done(key)

    async def _persist(self, key: str, backend_key: str, raw: str | None) -> None:
        try:
            if raw is None:
                await self._backend.delete(backend_key)
            else:
                await self._backend.set(backend_key, raw)
        except BackendError as error:
            self._write_failed(key, raw, error)
        except Exception as error:
            wrapped = BackendUnavailableError("delete" if raw is None else "set", backend_key, str(error))
            wrapped.__cause__ = error
            self._write_failed(key, raw, wrapped)
        else:
            _ = self._unsynced.pop(key, None)

    def _write_failed(self, key: str, raw: str | None, error: BackendError) -> None:
        self._forget_echo(key, raw)
        # keep serving the optimistic value until a later write or a change by someone else
        _ = self._unsynced.setdefault(key, _NO_BASELINE)
        self._report(error)

    def _read_back_unsynced(self, key: str, raw: str | None, default: Any) -> Any:
        baseline = self._unsynced[key]
        if baseline is _NO_BASELINE:
            self._unsynced[key] = raw
        elif raw != baseline:
            # another process wrote the key after the failed write
            self._apply_external(key, raw)
        return self.peek(key, default)

    def _write_done(self, key: str) -> None:
        remaining = self._inflight.get(key, 0) - 1
        if remaining > 0:
            self._inflight[key] = remaining
        else:
            _ = self._inflight.pop(key, None)
            if key in self._missed and not self._closed:
                self._missed.discard(key)
                _ = self._spawn(asyncio.get_running_loop(), self._refresh(key))

    def _remember_echo(self, key: str, raw: str | None) -> None:
        if not self._backend.echoes_writes:
            return
        echoes = self._echoes.get(key)
        if echoes is None:
            echoes = self._echoes[key] = deque(maxlen=_MAX_PENDING_ECHOES)
        echoes.append(raw)

    def _forget_echo(self, key: str, raw: str | None) -> None:
        echoes = self._echoes.get(key)
        if echoes is not None and raw in echoes:
            echoes.remove(raw)

    def _is_echo(self, key: str, raw: str | None) -> bool:
        echoes = self._echoes.get(key)
        if not echoes:
            return False
        if raw not in echoes:
            # someone else wrote the key; pending echoes can no longer be told apart
            echoes.clear()
            return False
        while echoes.popleft() != raw:
            pass
        return True

    def _on_backend_change(self, event: ChangeEvent) -> None:
        if self._closed or not self._mapper.matches(event.key):
            return
        key = self._mapper.logical_key(event.key)

        if not event.has_payload:
            _ = self._spawn(asyncio.get_running_loop(), self._refresh(key))
            return

        raw = None if event.deleted else event.value
        if self._is_echo(key, raw):
            logger.debug("suppressed echo of own write to %r", event.key)
            return
        if self._inflight.get(key):
            # reconciled with the backend once the pending writes are done
            logger.debug("change to %r deferred until pending local writes finish", event.key)
            self._missed.add(key)
            return
        self._apply_external(key, raw)

    def _apply_external(self, key: str, raw: str | None) -> None:
        _ = self._unsynced.pop(key, None)
        if raw is None:
            _ = self._update(key, None, present=False)
            return

        value = self._codec.decode(raw)
        if value is CORRUPT:
            self._report(CorruptValueError(self._mapper.full_key(key), raw))
            return
        _ = self._update(key, value, present=True)

    async def _refresh(self, key: str) -> None:
        backend_key = self._mapper.full_key(key)
        entry = self._entry(key)
        version = entry.version
        try:
            raw = await self._backend.get(backend_key)
        except Exception as error:
            logger.warning("re-reading %r after a change failed: %s", backend_key, error)
            return
        if self._closed:
            return
        if self._inflight.get(key):
            self._missed.add(key)
            return
        if entry.version != version:
            return
        self._apply_external(key, raw)

    def _subscriber_failed(self, key: str, callback: Callable[[Any], None], error: Exception) -> None:
        store_error = SubscriberError(key, callback)
        store_error.__cause__ = error
        self._report(store_error)

    def _report(self, error: StoreError) -> None:
        try:
            self._on_error(error)
        except Exception:
            logger.exception("error sink failed while handling %r", error)
