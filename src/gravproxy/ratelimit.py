"""Upstream request limiter.

One limiter is shared by every upstream call, whatever the key. Once the
ceiling is reached within the recovery window, further calls are refused until
the upstream has been left alone for a full recovery interval. Every attempt,
refused or not, counts as activity, so a client hammering the proxy keeps the
upstream protected for as long as it keeps hammering.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Callable

log = structlog.get_logger()


@dataclass
class RateWindow:
    count: int = 0
    last_call_at: float = 0.0


class RateLimiter:
    """Rolling counter over upstream calls."""

    def __init__(
        self,
        max_requests: int,
        recovery_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._window = RateWindow(last_call_at=clock())
        self._lock = threading.Lock()

    @property
    def window(self) -> RateWindow:
        with self._lock:
            return RateWindow(self._window.count, self._window.last_call_at)

    def try_acquire(self) -> bool:
        """Count one upstream call. Returns False when the budget is exhausted."""
        with self._lock:
            now = self._clock()
            if now - self._window.last_call_at > self.recovery_seconds:
                self._window.count = 0

            self._window.count += 1
            self._window.last_call_at = now
            count = self._window.count

        if count > self.max_requests:
            log.warning(
                "rate_limit_exceeded",
                count=count,
                max_requests=self.max_requests,
                recovery_seconds=self.recovery_seconds,
            )
            return False
        return True
