"""Integration test fixtures.

Provides a fully wired AppState on a temporary cache directory and an httpx
client talking to the Starlette app in-process. Upstream traffic is mocked
with respx in each test.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest

from gravproxy.engine import CacheEngine
from gravproxy.evictor import Evictor
from gravproxy.fetcher import Fetcher
from gravproxy.ratelimit import RateLimiter
from gravproxy.server import create_app
from gravproxy.state import AppState
from gravproxy.store import CacheStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gravproxy.config import Settings
    from tests.conftest import FakeClock


@pytest.fixture()
async def app_state(settings: Settings, clock: FakeClock) -> AsyncIterator[AppState]:
    """Full AppState wired like build_state(), but with a controllable clock."""
    async with httpx.AsyncClient() as http_client:
        store = CacheStore(settings.cache.path, clock=clock)
        limiter = RateLimiter(
            max_requests=settings.rate_limit.max_requests,
            recovery_seconds=settings.rate_limit.recovery_seconds,
            clock=clock,
        )
        fetcher = Fetcher(http_client, limiter, settings.upstream)
        yield AppState(
            settings=settings,
            http_client=http_client,
            store=store,
            limiter=limiter,
            fetcher=fetcher,
            engine=CacheEngine(store, fetcher, settings.cache.alive_seconds),
            evictor=Evictor(store, settings.cache.max_entries),
        )


@pytest.fixture()
async def client(app_state: AppState) -> AsyncIterator[httpx.AsyncClient]:
    """In-process client; the lifespan is skipped and app_state injected directly."""
    app = create_app(app_state.settings)
    app.state.gravproxy = app_state
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://proxy.local",
    ) as http:
        yield http
