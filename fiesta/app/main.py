import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError as FastAPIValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fiesta import __version__
from fiesta.app.api.chat import router as chat_router
from fiesta.app.core.config import settings
from fiesta.app.core.http_client import init_http_client
from fiesta.app.core.logging import get_logger, setup_logging
from fiesta.app.exceptions import FiestaException
from fiesta.app.middleware.rate_limit import RateLimiter, RateLimitMiddleware, RateLimitStore
from fiesta.app.middleware.request_id import RequestIdMiddleware
from fiesta.app.providers.factory import build_registry, get_provider_registry, set_provider_registry
from fiesta.app.services.pipeline import reset_chat_pipeline


def error_response(message: str, status_code: int = 400, headers: Optional[dict] = None) -> JSONResponse:
    """Render an error as ``{"error", "timestamp"}`` JSON."""
    return JSONResponse(
        status_code=status_code,
        content={
            "error": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        headers=headers,
    )


def create_app(rate_limit_store: Optional[RateLimitStore] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        rate_limit_store: Store for rate limit counters; one is created when
            not given. The store lives as long as the application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    store = rate_limit_store or RateLimitStore()
    limiter = RateLimiter(
        store,
        max_requests=settings.rate_limit_max_requests,
        window_ms=settings.rate_limit_window_ms,
    )
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[dict, None]:
        """Application lifespan context manager.

        Creates the shared HTTP connection pool and the provider registry
        that uses it, and runs the rate limit sweeper.
        """
        async with init_http_client() as http_client:
            set_provider_registry(build_registry(http_client=http_client))
            reset_chat_pipeline()
            await store.start_sweeper(settings.rate_limit_sweep_interval_seconds)

            logger.info(
                "Application startup complete",
                extra={
                    "providers": get_provider_registry().names(),
                    "debug_mode": settings.debug,
                },
            )

            yield {"http_client": http_client}

            await store.stop_sweeper()
            set_provider_registry(None)
            reset_chat_pipeline()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="AI Fiesta",
        description="Send one prompt to several AI chat backends and get normalized answers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.rate_limit_store = store

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=600,
    )
    app.add_middleware(RateLimitMiddleware, limiter=limiter, path_prefix=settings.rate_limit_path_prefix)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness and configuration checks."""
        registry = get_provider_registry()
        checks = {
            "providers": len(registry) > 0,
            "openrouter_key": bool(settings.openrouter_api_key),
            "gemini_key": bool(settings.gemini_api_key),
        }
        content: dict[str, Any] = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - started_at, 3),
            "pid": os.getpid(),
            "version": __version__,
            "providers": registry.names(),
            "checks": checks,
            "healthy": checks["providers"],
        }
        return JSONResponse(
            content=content,
            headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
        )

    @app.exception_handler(FiestaException)
    async def fiesta_exception_handler(request: Request, exc: FiestaException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"Request failed: {exc.message}", extra={"path": request.url.path})
        return error_response(exc.message, exc.status_code)

    @app.exception_handler(FastAPIValidationError)
    async def validation_exception_handler(request: Request, exc: FastAPIValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0]["msg"] if errors else "Invalid request"
        return error_response(message, 400)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details go to the log.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )
        message = str(exc) if settings.debug else "Internal server error"
        return error_response(message, 500)

    return app


# Create the application instance
app = create_app()
