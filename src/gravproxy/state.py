"""Application state container.

AppState is created once at server startup (inside the Starlette lifespan)
and read by every request handler from ``request.app.state.gravproxy``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

    from gravproxy.config import Settings
    from gravproxy.engine import CacheEngine
    from gravproxy.evictor import Evictor
    from gravproxy.protocols import CacheStoreProtocol, FetcherProtocol
    from gravproxy.ratelimit import RateLimiter


@dataclass
class AppState:
    """Holds all shared runtime state."""

    settings: Settings

    http_client: httpx.AsyncClient | None = None
    store: CacheStoreProtocol | None = None
    limiter: RateLimiter | None = None
    fetcher: FetcherProtocol | None = None
    engine: CacheEngine | None = None
    evictor: Evictor | None = None
