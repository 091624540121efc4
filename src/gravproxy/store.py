"""Filesystem avatar cache.

Each entry is one file in the cache directory, named by its key. The file's
modification time is the entry's last-modified timestamp and its length is the
entry's size, so there is no separate metadata to drift out of sync with the
bytes on disk.

Writes go to a hidden temp file first and are moved into place with
``os.replace``; readers never observe a half-written image. Hidden files are
never reported as entries.

Deletion and temp-file purging are the only operations that swallow
``OSError``: eviction treats a failed delete as "try again next pass".
``touch`` and ``read`` report a vanished entry as ``None``. Everything else
propagates.
"""

from __future__ import annotations

import os
import tempfile
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from gravproxy.models.cache import CacheMetadata

if TYPE_CHECKING:
    from collections.abc import Callable

log = structlog.get_logger()

_NS_PER_SECOND = 1_000_000_000

# A temp file older than this belongs to a write that never finished
STALE_TEMP_SECONDS = 3600


class CacheStore:
    """Directory-backed key → image store implementing CacheStoreProtocol."""

    def __init__(self, path: str | Path, *, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path).expanduser()
        self.path.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def _file(self, key: str) -> Path:
        return self.path / key

    def _now_ns(self) -> int:
        return int(self._clock() * _NS_PER_SECOND)

    @staticmethod
    def _is_entry(path: Path) -> bool:
        return not path.name.startswith(".") and path.is_file()

    @staticmethod
    def _metadata_from_stat(key: str, st: os.stat_result) -> CacheMetadata:
        return CacheMetadata(
            key=key,
            size_bytes=st.st_size,
            last_modified_at=datetime.fromtimestamp(st.st_mtime_ns / _NS_PER_SECOND, UTC),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has(self, key: str) -> bool:
        return self._is_entry(self._file(key))

    def metadata(self, key: str) -> CacheMetadata | None:
        path = self._file(key)
        if not self._is_entry(path):
            return None
        try:
            return self._metadata_from_stat(key, path.stat())
        except FileNotFoundError:
            return None

    def is_fresh(self, key: str, max_age_seconds: float) -> bool:
        """True if the entry exists and is no older than ``max_age_seconds``."""
        path = self._file(key)
        if not self._is_entry(path):
            return False
        try:
            mtime_ns = path.stat().st_mtime_ns
        except FileNotFoundError:
            return False
        return self._now_ns() - mtime_ns <= max_age_seconds * _NS_PER_SECOND

    def read(self, key: str) -> tuple[bytes, CacheMetadata] | None:
        """Return the entry's bytes and metadata, or ``None`` if it does not exist."""
        path = self._file(key)
        if not self._is_entry(path):
            return None
        try:
            with path.open("rb") as f:
                st = os.fstat(f.fileno())
                data = f.read()
        except FileNotFoundError:
            # Evicted between the check and the open
            return None
        return data, self._metadata_from_stat(key, st)

    def list(self) -> list[CacheMetadata]:
        """Metadata for every entry, in no particular order."""
        entries: list[CacheMetadata] = []
        with os.scandir(self.path) as it:
            for dir_entry in it:
                if dir_entry.name.startswith(".") or not dir_entry.is_file():
                    continue
                try:
                    entries.append(self._metadata_from_stat(dir_entry.name, dir_entry.stat()))
                except FileNotFoundError:
                    continue
        return entries

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def write(self, key: str, data: bytes) -> CacheMetadata:
        """Atomically replace the entry's bytes and stamp it with the current time."""
        fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self.path)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            now_ns = self._now_ns()
            os.utime(tmp_name, ns=(now_ns, now_ns))
            os.replace(tmp_name, self._file(key))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return self._metadata_from_stat(key, self._file(key).stat())

    def touch(self, key: str) -> CacheMetadata | None:
        """Bump the entry's timestamp to now without rewriting its bytes.

        Returns ``None`` if the entry no longer exists (evicted concurrently).
        """
        path = self._file(key)
        now_ns = self._now_ns()
        try:
            os.utime(path, ns=(now_ns, now_ns))
            return self._metadata_from_stat(key, path.stat())
        except FileNotFoundError:
            return None

    def delete(self, key: str) -> bool:
        """Remove an entry. Returns False (and logs) if the file could not be deleted."""
        try:
            self._file(key).unlink(missing_ok=True)
        except OSError:
            log.warning("cache_delete_failed", key=key, path=str(self._file(key)), exc_info=True)
            return False
        return True

    def purge_temp_files(self, max_age_seconds: float = STALE_TEMP_SECONDS) -> int:
        """Remove write temp files left behind by a crash. Returns the number removed."""
        removed = 0
        now_ns = self._now_ns()
        for tmp in self.path.glob(".*.tmp"):
            try:
                if now_ns - tmp.stat().st_mtime_ns <= max_age_seconds * _NS_PER_SECOND:
                    continue
                tmp.unlink()
            except FileNotFoundError:
                continue
            except OSError:
                log.warning("cache_temp_purge_failed", path=str(tmp), exc_info=True)
                continue
            removed += 1
        return removed
