"""Conditional upstream avatar fetcher.

All network I/O towards the upstream avatar service goes through a single
Fetcher instance shared by every request. The Fetcher receives an
httpx.AsyncClient and the shared RateLimiter via constructor injection; the
lifespan owns both lifecycles.
"""

from __future__ import annotations

from email.utils import format_datetime, parsedate_to_datetime
from typing import TYPE_CHECKING

import httpx
import structlog

from gravproxy.config import URL_PLACEHOLDER
from gravproxy.errors import ErrorCode, GravProxyError

if TYPE_CHECKING:
    from datetime import datetime

    from gravproxy.config import UpstreamSettings
    from gravproxy.models.cache import CacheMetadata
    from gravproxy.protocols import CacheStoreProtocol
    from gravproxy.ratelimit import RateLimiter

log = structlog.get_logger()


def build_http_client(settings: UpstreamSettings) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={
            "User-Agent": settings.user_agent,
            "Accept": "image/*",
        },
        limits=httpx.Limits(
            max_connections=20,
            max_keepalive_connections=10,
        ),
    )


def build_upstream_url(template: str, key: str) -> str:
    return template.replace(URL_PLACEHOLDER, key)


def _parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _is_unchanged(response: httpx.Response, existing: CacheMetadata | None) -> bool:
    """Whether the upstream reports the cached copy as still current.

    A 304 is the normal answer to our precondition. Some upstreams ignore
    If-Modified-Since and send the full image anyway; on a success response, a
    Last-Modified that is not newer than our copy means the same thing. Error
    responses never count as unchanged.
    """
    if existing is None:
        return False
    if response.status_code == 304:
        return True
    if not response.is_success:
        return False
    upstream_modified = _parse_http_date(response.headers.get("last-modified"))
    if upstream_modified is None or upstream_modified.tzinfo is None:
        return False
    return upstream_modified <= existing.last_modified_at


class Fetcher:
    """Rate-limited, conditional, size-capped upstream fetcher."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        limiter: RateLimiter,
        settings: UpstreamSettings,
    ) -> None:
        self._client = client
        self._limiter = limiter
        self._url_template = settings.url_template
        self._max_image_bytes = settings.max_image_bytes

    async def fetch(self, key: str, store: CacheStoreProtocol) -> CacheMetadata:
        """Refresh one entry from upstream and return its metadata.

        Raises GravProxyError when the rate limit is exhausted, on network
        errors and on non-2xx responses. The existing entry, if any, is left
        untouched on failure.
        """
        if not self._limiter.try_acquire():
            raise GravProxyError(
                code=ErrorCode.RATE_LIMITED,
                message="Upstream request limit reached",
                suggestion="Too many avatars were requested recently. Try again in a minute.",
                recoverable=True,
            )

        url = build_upstream_url(self._url_template, key)
        existing = store.metadata(key)

        headers: dict[str, str] = {}
        if existing is not None:
            headers["If-Modified-Since"] = format_datetime(existing.last_modified_at, usegmt=True)

        try:
            async with self._client.stream("GET", url, headers=headers) as response:
                if _is_unchanged(response, existing):
                    log.debug("upstream_not_modified", key=key, status_code=response.status_code)
                    touched = store.touch(key)
                    if touched is None:
                        # Evicted while the request was in flight
                        log.warning("cache_entry_vanished", key=key)
                        raise GravProxyError(
                            code=ErrorCode.UPSTREAM_ERROR,
                            message=f"Avatar {key} disappeared from the cache",
                            suggestion="Retry the request.",
                            recoverable=True,
                        )
                    return touched

                if not response.is_success:
                    raise GravProxyError(
                        code=ErrorCode.UPSTREAM_ERROR,
                        message=f"HTTP {response.status_code} fetching avatar {key}",
                        suggestion="The avatar service may be temporarily unavailable.",
                        recoverable=True,
                    )

                data = await self._read_capped(response, key)

        except GravProxyError:
            raise
        except httpx.HTTPError as exc:
            raise GravProxyError(
                code=ErrorCode.UPSTREAM_ERROR,
                message=f"Network error fetching avatar {key}: {exc}",
                suggestion="The avatar service may be temporarily unavailable.",
                recoverable=True,
            ) from exc

        metadata = store.write(key, data)
        log.info(
            "upstream_fetch_complete",
            key=key,
            status_code=response.status_code,
            size_bytes=metadata.size_bytes,
        )
        return metadata

    async def _read_capped(self, response: httpx.Response, key: str) -> bytes:
        """Read the body, keeping at most ``max_image_bytes``; the rest is discarded."""
        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) > self._max_image_bytes:
                log.warning(
                    "upstream_image_truncated",
                    key=key,
                    max_image_bytes=self._max_image_bytes,
                )
                del buffer[self._max_image_bytes :]
                break
        return bytes(buffer)
