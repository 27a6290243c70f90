"""Fixed-window rate limiting.

Each client key gets a counter that lives for one window. The first request
of a window creates the entry; later requests increment it and are denied
once the count passes the limit. When the window has elapsed the entry is
replaced on the next request.

The store is an explicit object created once per process and handed to the
limiter; a background sweep evicts expired entries to reclaim memory.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from fiesta.app.core.logging import get_logger

logger = get_logger(__name__)

ANONYMOUS_CLIENT_KEY = "anonymous"

# Proxy identity headers, most trusted first. Only the first hop of
# X-Forwarded-For names the original client.
CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")

Clock = Callable[[], float]


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class RateLimitEntry:
    """Counter for one client key within one window."""
    key: str
    count: int
    window_reset_at: float  # epoch milliseconds


@dataclass
class RateLimitDecision:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch milliseconds
    retry_after: Optional[int] = None  # seconds, set only when denied

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitStore:
    """Process-wide map of client key to window counter.

    Admission for one key is a check-and-increment under a single lock, so
    concurrent requests for the same key cannot both slip under the limit.

    Usage:
        store = RateLimitStore()
        await store.start_sweeper(interval=300)
        ...
        await store.stop_sweeper()
    """

    def __init__(self, clock: Clock = _now_ms):
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sweep_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    async def hit(self, key: str, window_ms: int) -> RateLimitEntry:
        """Count one request for ``key`` and return the updated entry."""
        async with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None or now >= entry.window_reset_at:
                entry = RateLimitEntry(key=key, count=1, window_reset_at=now + window_ms)
                self._entries[key] = entry
            else:
                entry.count += 1
            return RateLimitEntry(entry.key, entry.count, entry.window_reset_at)

    async def sweep(self) -> int:
        """Evict entries whose window has elapsed; returns how many."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if now >= e.window_reset_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} expired rate limit entries")
        return len(expired)

    async def start_sweeper(self, interval: float) -> None:
        """Start the background eviction task."""
        if self._sweep_task is not None:
            return
        self._stop_event = asyncio.Event()
        self._sweep_task = asyncio.create_task(self._run_sweeps(interval))
        logger.info(f"Started rate limit sweeper (interval: {interval}s)")

    async def stop_sweeper(self) -> None:
        if self._sweep_task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._sweep_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._sweep_task.cancel()
        finally:
            self._sweep_task = None
            logger.info("Stopped rate limit sweeper")

    async def _run_sweeps(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.sweep()


class RateLimiter:
    """Fixed-window limiter over a shared :class:`RateLimitStore`."""

    def __init__(self, store: RateLimitStore, max_requests: int = 50, window_ms: int = 15 * 60 * 1000):
        self.store = store
        self.max_requests = max_requests
        self.window_ms = window_ms

    async def admit(self, client_key: str) -> RateLimitDecision:
        """Count a request and decide whether it may proceed.

        Never raises; being over the limit is an ordinary outcome.
        """
        entry = await self.store.hit(client_key, self.window_ms)
        reset_at = int(entry.window_reset_at)
        remaining = max(0, self.max_requests - entry.count)

        if entry.count > self.max_requests:
            wait_ms = max(0.0, entry.window_reset_at - self.store.now())
            return RateLimitDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after=math.ceil(wait_ms / 1000),
            )
        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=remaining,
            reset_at=reset_at,
        )


def get_client_key(headers: Mapping[str, str]) -> str:
    """Derive the rate limit identity from proxy headers.

    X-Forwarded-For (first hop), then X-Real-IP, then CF-Connecting-IP;
    callers with none of them share the ``anonymous`` bucket.
    """
    for header in CLIENT_IP_HEADERS:
        value = headers.get(header)
        if not value:
            continue
        candidate = value.split(",")[0].strip() if header == "x-forwarded-for" else value.strip()
        if candidate:
            return candidate
    return ANONYMOUS_CLIENT_KEY


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on API requests.

    Requests outside ``path_prefix`` (health checks, docs) are not counted.
    """

    def __init__(self, app, limiter: RateLimiter, path_prefix: str = "/api/"):
        super().__init__(app)
        self.limiter = limiter
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        client_key = get_client_key(request.headers)
        decision = await self.limiter.admit(client_key)

        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"client_key": client_key, "path": request.url.path},
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Rate limit exceeded. Please try again later.",
                    "retryAfter": decision.retry_after,
                },
                headers=decision.headers(),
            )

        response = await call_next(request)
        response.headers.update(decision.headers())
        return response
