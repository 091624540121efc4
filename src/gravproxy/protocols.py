"""Protocol interfaces for swappable components.

The engine and AppState reference these protocols, not the concrete
implementations, so tests can substitute lightweight fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from gravproxy.models.cache import CacheMetadata


class CacheStoreProtocol(Protocol):
    """Interface for the avatar cache backend."""

    def has(self, key: str) -> bool: ...

    def metadata(self, key: str) -> CacheMetadata | None: ...

    def is_fresh(self, key: str, max_age_seconds: float) -> bool: ...

    def read(self, key: str) -> tuple[bytes, CacheMetadata] | None: ...

    def list(self) -> list[CacheMetadata]: ...

    def write(self, key: str, data: bytes) -> CacheMetadata: ...

    def touch(self, key: str) -> CacheMetadata | None: ...

    def delete(self, key: str) -> bool: ...

    def purge_temp_files(self) -> int: ...


class FetcherProtocol(Protocol):
    """Interface for the upstream avatar fetcher."""

    async def fetch(self, key: str, store: CacheStoreProtocol) -> CacheMetadata: ...
