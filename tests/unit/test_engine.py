"""Unit tests for gravproxy.engine.

The engine is exercised against a real CacheStore and an in-memory fetcher
that records calls, so freshness and locking can be observed without HTTP.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from gravproxy.engine import CacheEngine
from gravproxy.errors import ErrorCode, GravProxyError

if TYPE_CHECKING:
    from gravproxy.models.cache import CacheMetadata
    from gravproxy.protocols import CacheStoreProtocol
    from gravproxy.store import CacheStore
    from tests.conftest import FakeClock

KEY = "00112233445566778899aabbccddeeff"
OTHER_KEY = "ffeeddccbbaa99887766554433221100"


class RecordingFetcher:
    """FetcherProtocol implementation that writes a fixed payload."""

    def __init__(self, data: bytes = b"png", *, error: Exception | None = None) -> None:
        self.data = data
        self.error = error
        self.calls: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}

    async def fetch(self, key: str, store: CacheStoreProtocol) -> CacheMetadata:
        self.calls.append(key)
        gate = self.gates.get(key)
        if gate is not None:
            await gate.wait()
        if self.error is not None:
            raise self.error
        return store.write(key, self.data)


def _upstream_error() -> GravProxyError:
    return GravProxyError(
        code=ErrorCode.UPSTREAM_ERROR,
        message="boom",
        suggestion="",
        recoverable=True,
    )


class TestResolve:
    async def test_fresh_entry_is_served_without_fetch(
        self, store: CacheStore, clock: FakeClock
    ) -> None:
        cached = store.write(KEY, b"cached")
        clock.advance(10)
        fetcher = RecordingFetcher()
        engine = CacheEngine(store, fetcher, max_age_seconds=3600)

        metadata = await engine.resolve(KEY)

        assert metadata == cached
        assert fetcher.calls == []

    async def test_missing_entry_is_fetched(self, store: CacheStore) -> None:
        fetcher = RecordingFetcher(b"fetched")
        engine = CacheEngine(store, fetcher, max_age_seconds=3600)

        metadata = await engine.resolve(KEY)

        assert fetcher.calls == [KEY]
        assert metadata.size_bytes == 7
        assert store.read(KEY)[0] == b"fetched"  # type: ignore[index]

    async def test_stale_entry_is_refetched(self, store: CacheStore, clock: FakeClock) -> None:
        store.write(KEY, b"old")
        clock.advance(3601)
        fetcher = RecordingFetcher(b"new")
        engine = CacheEngine(store, fetcher, max_age_seconds=3600)

        await engine.resolve(KEY)

        assert fetcher.calls == [KEY]
        assert store.read(KEY)[0] == b"new"  # type: ignore[index]

    async def test_two_resolves_one_fetch(self, store: CacheStore) -> None:
        fetcher = RecordingFetcher()
        engine = CacheEngine(store, fetcher, max_age_seconds=3600)

        first = await engine.resolve(KEY)
        second = await engine.resolve(KEY)

        assert fetcher.calls == [KEY]
        assert first == second

    @pytest.mark.parametrize("key", ["", "ABCDEF0123456789ABCDEF0123456789", "../etc/passwd"])
    async def test_invalid_key_rejected_before_io(self, store: CacheStore, key: str) -> None:
        fetcher = RecordingFetcher()
        engine = CacheEngine(store, fetcher, max_age_seconds=3600)

        with pytest.raises(GravProxyError) as exc_info:
            await engine.resolve(key)

        assert exc_info.value.code == ErrorCode.INVALID_KEY
        assert fetcher.calls == []

    async def test_fetch_error_propagates(self, store: CacheStore) -> None:
        engine = CacheEngine(store, RecordingFetcher(error=_upstream_error()), max_age_seconds=60)

        with pytest.raises(GravProxyError) as exc_info:
            await engine.resolve(KEY)

        assert exc_info.value.code == ErrorCode.UPSTREAM_ERROR
        assert engine.active_keys == 0


class TestConcurrency:
    async def test_concurrent_same_key_fetches_once(self, store: CacheStore) -> None:
        fetcher = RecordingFetcher()
        fetcher.gates[KEY] = asyncio.Event()
        engine = CacheEngine(store, fetcher, max_age_seconds=3600)

        tasks = [asyncio.create_task(engine.resolve(KEY)) for _ in range(5)]
        await asyncio.sleep(0)
        fetcher.gates[KEY].set()
        results = await asyncio.gather(*tasks)

        assert fetcher.calls == [KEY]
        assert all(r == results[0] for r in results)

    async def test_unrelated_keys_do_not_block(self, store: CacheStore) -> None:
        fetcher = RecordingFetcher()
        fetcher.gates[KEY] = asyncio.Event()
        engine = CacheEngine(store, fetcher, max_age_seconds=3600)

        blocked = asyncio.create_task(engine.resolve(KEY))
        await asyncio.sleep(0)

        other = await asyncio.wait_for(engine.resolve(OTHER_KEY), timeout=1.0)
        assert other.key == OTHER_KEY
        assert not blocked.done()

        fetcher.gates[KEY].set()
        await blocked

    async def test_locks_are_released(self, store: CacheStore) -> None:
        fetcher = RecordingFetcher()
        fetcher.gates[KEY] = asyncio.Event()
        engine = CacheEngine(store, fetcher, max_age_seconds=3600)

        task = asyncio.create_task(engine.resolve(KEY))
        await asyncio.sleep(0)
        assert engine.active_keys == 1

        fetcher.gates[KEY].set()
        await task
        await engine.resolve(OTHER_KEY)

        assert engine.active_keys == 0


class TestRead:
    async def test_read_after_resolve(self, store: CacheStore) -> None:
        engine = CacheEngine(store, RecordingFetcher(b"image"), max_age_seconds=60)
        resolved = await engine.resolve(KEY)

        data, metadata = engine.read(KEY)

        assert data == b"image"
        assert metadata == resolved

    async def test_read_after_eviction_raises(self, store: CacheStore) -> None:
        engine = CacheEngine(store, RecordingFetcher(), max_age_seconds=60)
        await engine.resolve(KEY)
        store.delete(KEY)

        with pytest.raises(GravProxyError) as exc_info:
            engine.read(KEY)

        assert exc_info.value.code == ErrorCode.UPSTREAM_ERROR
        assert exc_info.value.recoverable is True
