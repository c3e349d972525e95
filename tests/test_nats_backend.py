import asyncio

import pytest

from kv_store.backends import nats as nats_module
from kv_store.backends.nats import NatsBackend
from kv_store.backends.protocol import ChangeEvent
from kv_store.errors import BackendUnavailableError, QuotaExceededError


class BucketNotFoundError(Exception):
    pass


class KeyNotFoundError(Exception):
    pass


class NoKeysError(Exception):
    pass


class NoServersError(Exception):
    pass


class APIError(Exception):
    pass


class _FakeEntry:
    def __init__(self, key: str, value: bytes | None, revision: int, operation: str | None = None) -> None:
        self.key = key
        self.value = value
        self.revision = revision
        self.operation = operation
        super().__init__()


class _FakeWatcher:
    def __init__(self, bucket: "_FakeKVBucket") -> None:
        self._bucket = bucket
        self._queue: asyncio.Queue[_FakeEntry | None] = asyncio.Queue()
        self.stopped = False
        super().__init__()

    async def updates(self, timeout: float = 5.0) -> _FakeEntry | None:
        return await self._queue.get()

    def push(self, entry: _FakeEntry | None) -> None:
        self._queue.put_nowait(entry)

    async def stop(self) -> None:
        self.stopped = True
        self._bucket.watchers.remove(self)


class _FakeKVBucket:
    def __init__(self) -> None:
        self.store: dict[str, bytes] = {}
        self.revision = 0
        self.watchers: list[_FakeWatcher] = []
        self.put_error: Exception | None = None
        super().__init__()

    def _publish(self, entry: _FakeEntry) -> None:
        for watcher in list(self.watchers):
            watcher.push(entry)

    async def get(self, key: str) -> _FakeEntry:
        if key not in self.store:
            raise KeyNotFoundError
        return _FakeEntry(key, self.store[key], self.revision)

    async def put(self, key: str, value: bytes) -> int:
        if self.put_error is not None:
            raise self.put_error
        self.revision += 1
        self.store[key] = value
        self._publish(_FakeEntry(key, value, self.revision))
        return self.revision

    async def delete(self, key: str) -> None:
        _ = self.store.pop(key, None)
        self.revision += 1
        self._publish(_FakeEntry(key, None, self.revision, "DEL"))

    async def keys(self) -> list[str]:
        if not self.store:
            raise NoKeysError
        return list(self.store)

    async def watchall(self) -> _FakeWatcher:
        watcher = _FakeWatcher(self)
        for key, value in self.store.items():
            watcher.push(_FakeEntry(key, value, self.revision))
        watcher.push(None)
        self.watchers.append(watcher)
        return watcher


class _FakeJetStream:
    def __init__(self, buckets: dict[str, _FakeKVBucket]) -> None:
        self.buckets = buckets
        super().__init__()

    async def key_value(self, bucket: str) -> _FakeKVBucket:
        if bucket not in self.buckets:
            raise BucketNotFoundError
        return self.buckets[bucket]

    async def create_key_value(self, bucket: str) -> _FakeKVBucket:
        created = _FakeKVBucket()
        self.buckets[bucket] = created
        return created


class _FakeNatsClient:
    def __init__(self, buckets: dict[str, _FakeKVBucket] | None = None) -> None:
        super().__init__()
        self._js = _FakeJetStream({} if buckets is None else buckets)
        self.closed = False

    def jetstream(self) -> _FakeJetStream:
        return self._js

    async def close(self) -> None:
        self.closed = True


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_nats_backend_get_set_delete_roundtrip_existing_bucket() -> None:
    bucket = _FakeKVBucket()
    backend = NatsBackend(client=_FakeNatsClient({"kv_store": bucket}), bucket="kv_store")

    await backend.set("settings.zoom", '"md"')
    assert await backend.get("settings.zoom") == '"md"'

    await backend.delete("settings.zoom")
    assert await backend.get("settings.zoom") is None


@pytest.mark.asyncio
async def test_nats_backend_list_keys_filters_and_sorts() -> None:
    bucket = _FakeKVBucket()
    backend = NatsBackend(client=_FakeNatsClient({"kv_store": bucket}), bucket="kv_store")

    assert await backend.list_keys("ep1.") == []

    await backend.set("ep1.z", "1")
    await backend.set("ep1.a", "2")
    await backend.set("ep2.x", "3")

    assert await backend.list_keys("ep1.") == ["ep1.a", "ep1.z"]


@pytest.mark.asyncio
async def test_nats_backend_missing_bucket_raises_runtime_error_when_create_disabled() -> None:
    backend = NatsBackend(client=_FakeNatsClient({}), bucket="kv_store", create_bucket=False)

    with pytest.raises(RuntimeError, match="jetstream KV bucket 'kv_store' is not available"):
        _ = await backend.get("settings.zoom")


@pytest.mark.asyncio
async def test_nats_backend_missing_bucket_can_be_created_when_enabled() -> None:
    backend = NatsBackend(client=_FakeNatsClient({}), bucket="kv_store", create_bucket=True)

    await backend.set("settings.zoom", "value")
    assert await backend.get("settings.zoom") == "value"


@pytest.mark.asyncio
async def test_nats_backend_watch_skips_replay_and_own_revisions() -> None:
    bucket = _FakeKVBucket()
    bucket.store["settings.zoom"] = b'"md"'
    client = _FakeNatsClient({"kv_store": bucket})
    writer = NatsBackend(client=client, bucket="kv_store")
    watcher = NatsBackend(client=client, bucket="kv_store")
    seen_by_watcher: list[ChangeEvent] = []
    seen_by_writer: list[ChangeEvent] = []
    _ = watcher.watch("settings.", seen_by_watcher.append)
    _ = writer.watch("settings.", seen_by_writer.append)
    await _settle()

    await writer.set("settings.zoom", '"lg"')
    await writer.set("other.zoom", '"sm"')
    await writer.delete("settings.zoom")
    await _settle()

    assert seen_by_watcher == [ChangeEvent("settings.zoom", '"lg"'), ChangeEvent("settings.zoom", deleted=True)]
    # deletes carry no revision back to the writer, so only the put is skipped
    assert seen_by_writer == [ChangeEvent("settings.zoom", deleted=True)]

    await writer.close()
    await watcher.close()
    assert bucket.watchers == []


class _SlowAckKVBucket(_FakeKVBucket):
    """Bucket whose watchers see a put before the put returns to the writer."""

    async def put(self, key: str, value: bytes) -> int:
        revision = await super().put(key, value)
        await _settle()
        return revision


@pytest.mark.asyncio
async def test_nats_backend_does_not_track_revisions_outside_watched_prefixes() -> None:
    bucket = _FakeKVBucket()
    backend = NatsBackend(client=_FakeNatsClient({"kv_store": bucket}), bucket="kv_store")
    _ = backend.watch("settings.", lambda _event: None)
    await _settle()

    for index in range(100):
        await backend.set(f"other.k{index}", '"v"')
    await _settle()

    assert backend._own_revisions == {}
    await backend.close()


@pytest.mark.asyncio
async def test_nats_backend_does_not_track_revisions_the_watcher_already_passed() -> None:
    bucket = _SlowAckKVBucket()
    backend = NatsBackend(client=_FakeNatsClient({"kv_store": bucket}), bucket="kv_store")
    seen: list[ChangeEvent] = []
    _ = backend.watch("settings.", seen.append)
    await _settle()

    await backend.set("settings.zoom", '"lg"')
    await _settle()

    # delivered before the revision was known, nothing is left to match it
    assert seen == [ChangeEvent("settings.zoom", '"lg"')]
    assert backend._own_revisions == {}
    await backend.close()


@pytest.mark.asyncio
async def test_nats_backend_prunes_own_revisions_the_watcher_skipped_past() -> None:
    bucket = _FakeKVBucket()
    backend = NatsBackend(client=_FakeNatsClient({"kv_store": bucket}), bucket="kv_store")
    seen: list[ChangeEvent] = []
    _ = backend.watch("settings.", seen.append)
    await _settle()
    await bucket.put("other.zoom", b'"md"')
    await _settle()

    backend._own_revisions[1] = "settings.lost"
    await bucket.put("settings.zoom", b'"sm"')
    await _settle()

    assert seen == [ChangeEvent("settings.zoom", '"sm"')]
    assert backend._own_revisions == {}
    await backend.close()


@pytest.mark.asyncio
async def test_nats_backend_cancel_watch_stops_watcher() -> None:
    bucket = _FakeKVBucket()
    backend = NatsBackend(client=_FakeNatsClient({"kv_store": bucket}), bucket="kv_store")
    cancel = backend.watch("settings.", lambda _event: None)
    await _settle()
    assert len(bucket.watchers) == 1

    cancel()
    cancel()
    await _settle()

    assert bucket.watchers == []


@pytest.mark.asyncio
async def test_nats_backend_translates_put_errors() -> None:
    bucket = _FakeKVBucket()
    backend = NatsBackend(client=_FakeNatsClient({"kv_store": bucket}), bucket="kv_store")

    bucket.put_error = NoServersError("nats: no servers available for connection")
    with pytest.raises(BackendUnavailableError):
        await backend.set("settings.zoom", '"lg"')

    bucket.put_error = APIError("nats: insufficient resources")
    with pytest.raises(QuotaExceededError):
        await backend.set("settings.zoom", '"lg"')


@pytest.mark.asyncio
async def test_nats_backend_close_closes_client() -> None:
    client = _FakeNatsClient({"kv_store": _FakeKVBucket()})
    backend = NatsBackend(client=client, bucket="kv_store")

    await backend.close()
    assert client.closed is True


@pytest.mark.asyncio
async def test_nats_backend_close_without_client_is_noop() -> None:
    backend = NatsBackend(client=None)
    await backend.close()


@pytest.mark.asyncio
async def test_nats_backend_requires_dependency_without_injected_client(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(nats_module, "nats_module", None)
    backend = NatsBackend(client=None)

    with pytest.raises(RuntimeError, match="nats-py dependency is required"):
        _ = await backend.get("settings.zoom")
