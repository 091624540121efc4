"""HTTP front door.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState via the Starlette lifespan
- Map ``GET /<hash>`` onto the cache engine and translate the result into
  HTTP (status codes, caching headers, conditional GET)
- Start uvicorn
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from datetime import UTC
from email.utils import format_datetime, parsedate_to_datetime
from typing import TYPE_CHECKING

import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from gravproxy import __version__
from gravproxy.config import Settings
from gravproxy.engine import CacheEngine
from gravproxy.errors import ErrorCode, GravProxyError
from gravproxy.evictor import Evictor
from gravproxy.fetcher import Fetcher, build_http_client
from gravproxy.hasher import ensure_digest_available, is_valid_key
from gravproxy.ratelimit import RateLimiter
from gravproxy.schedulers import run_cache_cleanup_scheduler
from gravproxy.state import AppState
from gravproxy.store import CacheStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.requests import Request

    from gravproxy.models.cache import CacheMetadata

log = structlog.get_logger()

IMAGE_MEDIA_TYPE = "image/png"

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_KEY: 404,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.UPSTREAM_ERROR: 503,
}


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_state(settings: Settings) -> AppState:
    """Wire every component. Raises ConfigurationError if keys cannot be computed."""
    ensure_digest_available()

    http_client = build_http_client(settings.upstream)
    store = CacheStore(settings.cache.path)
    limiter = RateLimiter(
        max_requests=settings.rate_limit.max_requests,
        recovery_seconds=settings.rate_limit.recovery_seconds,
    )
    fetcher = Fetcher(http_client, limiter, settings.upstream)

    return AppState(
        settings=settings,
        http_client=http_client,
        store=store,
        limiter=limiter,
        fetcher=fetcher,
        engine=CacheEngine(store, fetcher, settings.cache.alive_seconds),
        evictor=Evictor(store, settings.cache.max_entries),
    )


@asynccontextmanager
async def lifespan(app: Starlette) -> AsyncGenerator[None, None]:
    """Create and tear down all shared resources for the server's lifetime."""
    settings: Settings = app.state.settings or Settings()
    _setup_logging(settings)

    log.info("server_starting", version=__version__, cache_path=settings.cache.path)

    state = build_state(settings)
    app.state.gravproxy = state
    cache_cleanup_task = asyncio.create_task(run_cache_cleanup_scheduler(state))

    log.info(
        "server_started",
        version=__version__,
        upstream=settings.upstream.url_template,
        alive_seconds=settings.cache.alive_seconds,
        max_entries=settings.cache.max_entries,
    )

    try:
        yield
    finally:
        cache_cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cache_cleanup_task
        if state.http_client is not None:
            await state.http_client.aclose()
        log.info("server_stopping")


# ---------------------------------------------------------------------------
# Request handling
# ---------------------------------------------------------------------------


def _is_not_modified(request: Request, metadata: CacheMetadata) -> bool:
    """Compare If-Modified-Since with the entry's mtime, both truncated to seconds."""
    header = request.headers.get("if-modified-since")
    if not header:
        return False
    try:
        since = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        # RFC 9110: an invalid date is ignored
        log.debug("if_modified_since_ignored", value=header)
        return False
    if since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    return int(since.timestamp()) == int(metadata.last_modified_at.timestamp())


def _caching_headers(metadata: CacheMetadata, settings: Settings) -> dict[str, str]:
    return {
        "Last-Modified": format_datetime(metadata.last_modified_at, usegmt=True),
        "Cache-Control": f"public, max-age={settings.cache.alive_seconds}",
    }


def _error_response(error: GravProxyError, settings: Settings) -> Response:
    headers: dict[str, str] = {}
    if error.code == ErrorCode.RATE_LIMITED:
        headers["Retry-After"] = str(int(settings.rate_limit.recovery_seconds))
    return JSONResponse(
        error.to_dict(),
        status_code=_STATUS_BY_CODE[error.code],
        headers=headers,
    )


async def serve_avatar(request: Request) -> Response:
    """Serve one cached avatar by its hash."""
    key: str = request.path_params["key"]
    if not is_valid_key(key):
        return Response(status_code=404)

    state: AppState = request.app.state.gravproxy
    engine = state.engine
    if engine is None:
        raise RuntimeError("Cache engine is not initialised; was the lifespan run?")

    try:
        metadata = await engine.resolve(key)
        if _is_not_modified(request, metadata):
            return Response(status_code=304, headers=_caching_headers(metadata, state.settings))
        data, metadata = engine.read(key)
    except GravProxyError as exc:
        log.warning(
            "request_error",
            key=key,
            code=exc.code,
            message=exc.message,
            recoverable=exc.recoverable,
        )
        return _error_response(exc, state.settings)
    except Exception:
        log.error("request_unexpected_error", key=key, exc_info=True)
        raise

    return Response(
        content=data,
        media_type=IMAGE_MEDIA_TYPE,
        headers=_caching_headers(metadata, state.settings),
    )


def create_app(settings: Settings | None = None) -> Starlette:
    app = Starlette(
        routes=[Route("/{key}", serve_avatar, methods=["GET"])],
        lifespan=lifespan,
    )
    app.state.settings = settings
    return app


app = create_app()


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    settings = Settings()
    _setup_logging(settings)

    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,  # Disable uvicorn's default logging; structlog handles it
    )


if __name__ == "__main__":
    main()
