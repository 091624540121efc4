"""Shared test fixtures for the gravproxy test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from gravproxy.config import Settings
from gravproxy.ratelimit import RateLimiter
from gravproxy.store import CacheStore

if TYPE_CHECKING:
    from pathlib import Path

UPSTREAM_TEMPLATE = "https://avatars.example.com/avatar/{}?d=404"
KEY = "00112233445566778899aabbccddeeff"
OTHER_KEY = "ffeeddccbbaa99887766554433221100"
START_TIME = 1_700_000_000.0  # Tue, 14 Nov 2023 22:13:20 GMT


def upstream_url(key: str) -> str:
    return UPSTREAM_TEMPLATE.replace("{}", key)


class FakeClock:
    """Manually advanced clock, usable wherever a ``time.time``-like callable is expected."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock) -> CacheStore:
    return CacheStore(tmp_path / "cache", clock=clock)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        cache={"path": str(tmp_path / "cache"), "alive_seconds": 3600},
        upstream={"url_template": UPSTREAM_TEMPLATE},
    )


@pytest.fixture()
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(max_requests=1000, recovery_seconds=60, clock=clock)
