"""Cache size bound: keep the most recently modified entries, delete the rest."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from gravproxy.protocols import CacheStoreProtocol

log = structlog.get_logger()


class Evictor:
    def __init__(self, store: CacheStoreProtocol, max_entries: int) -> None:
        self._store = store
        self.max_entries = max_entries

    def run_cleanup(self) -> int:
        """Trim the cache to ``max_entries``. Returns the number of entries deleted.

        Failed deletions are logged and retried on the next pass. Temp files
        left by interrupted writes are purged as well.
        """
        purged = self._store.purge_temp_files()
        entries = sorted(self._store.list(), key=lambda m: m.last_modified_at, reverse=True)
        surplus = entries[self.max_entries :]

        deleted = 0
        for metadata in surplus:
            if self._store.delete(metadata.key):
                deleted += 1
            else:
                log.warning("cache_evict_failed", key=metadata.key)

        log.info(
            "cache_cleanup_complete",
            entries=len(entries),
            max_entries=self.max_entries,
            deleted=deleted,
            temp_files_purged=purged,
        )
        return deleted
