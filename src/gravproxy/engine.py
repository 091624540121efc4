"""Cache engine: serve fresh entries, refresh stale ones.

The freshness check and the upstream refresh for one key run under that key's
lock, so two requests for the same stale avatar result in a single upstream
call; the second finds the entry fresh. Requests for different keys never
wait on each other. Locks are created on demand and discarded as soon as no
request holds or waits for them.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog

from gravproxy.errors import ErrorCode, GravProxyError
from gravproxy.hasher import is_valid_key

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gravproxy.models.cache import CacheMetadata
    from gravproxy.protocols import CacheStoreProtocol, FetcherProtocol

log = structlog.get_logger()


class CacheEngine:
    def __init__(
        self,
        store: CacheStoreProtocol,
        fetcher: FetcherProtocol,
        max_age_seconds: float,
    ) -> None:
        self.store = store
        self._fetcher = fetcher
        self._max_age_seconds = max_age_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    @property
    def active_keys(self) -> int:
        """Number of keys with a resolution in progress."""
        return len(self._locks)

    async def resolve(self, key: str) -> CacheMetadata:
        """Return metadata for a fresh copy of ``key``, fetching it if needed."""
        if not is_valid_key(key):
            raise GravProxyError(
                code=ErrorCode.INVALID_KEY,
                message=f"Not an avatar hash: {key!r}",
                suggestion="Request /<md5 of the lowercased email address>.",
                recoverable=False,
            )

        async with self._key_lock(key):
            if self.store.is_fresh(key, self._max_age_seconds):
                metadata = self.store.metadata(key)
                if metadata is not None:
                    log.debug("cache_hit", key=key)
                    return metadata

            log.debug("cache_miss", key=key)
            return await self._fetcher.fetch(key, self.store)

    def read(self, key: str) -> tuple[bytes, CacheMetadata]:
        """Return the cached bytes for an entry that was just resolved."""
        entry = self.store.read(key)
        if entry is None:
            # Evicted between resolve and read; the next request repopulates it.
            log.warning("cache_entry_vanished", key=key)
            raise GravProxyError(
                code=ErrorCode.UPSTREAM_ERROR,
                message=f"Avatar {key} disappeared from the cache",
                suggestion="Retry the request.",
                recoverable=True,
            )
        return entry
