"""Background scheduler coroutine for cache cleanup."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from gravproxy.state import AppState

log = structlog.get_logger()


async def _cleanup_once(state: AppState) -> None:
    if state.evictor is None:
        return
    try:
        # Directory scans run off the event loop so requests keep flowing.
        await asyncio.to_thread(state.evictor.run_cleanup)
    except Exception:
        log.warning("cache_cleanup_scheduler_error", exc_info=True)


async def run_cache_cleanup_scheduler(state: AppState) -> None:
    """Run cache cleanup at startup and then on the configured interval.

    Runs until cancelled by the lifespan.
    """
    interval_seconds = state.settings.cache.cleanup_interval_seconds

    await _cleanup_once(state)

    while True:
        await asyncio.sleep(interval_seconds)
        await _cleanup_once(state)
