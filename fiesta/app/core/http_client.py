"""Shared HTTP client management for connection pooling.

One ``httpx.AsyncClient`` is created in the application lifespan and shared
by every provider adapter.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx

from fiesta.app.core.config import settings


_shared_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Get the shared HTTP client instance.

    Raises:
        RuntimeError: If the HTTP client has not been initialized.
    """
    if _shared_http_client is None:
        raise RuntimeError(
            "HTTP client not initialized. Ensure lifespan context is active."
        )
    return _shared_http_client


def _build_timeout() -> httpx.Timeout:
    # Streamed answers can pause between tokens, so the read timeout is the
    # generous one.
    return httpx.Timeout(
        connect=settings.httpx_connect_timeout,
        read=settings.httpx_read_timeout,
        write=settings.httpx_write_timeout,
        pool=settings.httpx_pool_timeout,
    )


def _build_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.httpx_max_connections,
        max_keepalive_connections=settings.httpx_max_keepalive_connections,
        keepalive_expiry=settings.httpx_keepalive_expiry,
    )


@asynccontextmanager
async def init_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """Initialize and yield the shared HTTP client.

    Used from the FastAPI lifespan:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with init_http_client():
                yield
    """
    global _shared_http_client

    _shared_http_client = httpx.AsyncClient(timeout=_build_timeout(), limits=_build_limits())
    try:
        yield _shared_http_client
    finally:
        if _shared_http_client is not None:
            await _shared_http_client.aclose()
            _shared_http_client = None


def create_http_client(**kwargs) -> httpx.AsyncClient:
    """Create a standalone HTTP client with the configured pool settings.

    The caller owns the returned client and must close it. A ``timeout``
    keyword overrides the granular timeouts with a single value.
    """
    timeout_override = kwargs.get("timeout")
    timeout = httpx.Timeout(timeout_override) if timeout_override is not None else _build_timeout()
    return httpx.AsyncClient(timeout=timeout, limits=_build_limits())
