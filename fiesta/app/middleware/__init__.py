"""Middleware package for AI Fiesta."""

from fiesta.app.middleware.rate_limit import (
    RateLimitMiddleware,
    RateLimiter,
    RateLimitStore,
    get_client_key,
)
from fiesta.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimitMiddleware",
    "RateLimiter",
    "RateLimitStore",
    "get_client_key",
    "RequestIdMiddleware",
    "get_request_id",
]
