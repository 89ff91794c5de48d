"""Fixed-window rate limiter for per-client request limiting.

Uses in-memory counters keyed by client address.
Default: 20 requests per 60 s window. A window starts at the first request
from a key and ends exactly ``window_seconds`` later regardless of traffic,
so up to 2x the limit can pass in a burst straddling a boundary.
Windows are never evicted; memory grows with the number of distinct keys.
Returns 429 Too Many Requests with Retry-After header.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..errors import RateLimited
from ..observability.metrics import record_rejection

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass
class RateWindow:
    """Request counter for one client within a fixed-origin window."""
    client_key: str
    window_start: float
    count: int = 1

    def expired(self, now: float, window_seconds: float) -> bool:
        return now - self.window_start >= window_seconds


class RateLimiter:
    """In-memory per-client rate limiter using fixed-origin windows."""

    def __init__(self, limit: int = 20, window_seconds: float = 60.0):
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()
        self.limit = limit
        self.window_seconds = window_seconds

    def try_acquire(self, client_key: str, now: Optional[float] = None) -> tuple[bool, float]:
        """Count one request for *client_key*.

        Returns:
            Tuple of (allowed: bool, retry_after_seconds: float)
        """
        if now is None:
            now = time.monotonic()

        with self._lock:
            window = self._windows.get(client_key)
            if window is None or window.expired(now, self.window_seconds):
                self._windows[client_key] = RateWindow(client_key=client_key, window_start=now)
                return True, 0.0

            window.count += 1
            if window.count <= self.limit:
                return True, 0.0
            retry_after = max(0.0, window.window_start + self.window_seconds - now)
            return False, retry_after

    def allow(self, client_key: str, now: Optional[float] = None) -> bool:
        """Return True if the request from *client_key* may proceed."""
        allowed, _ = self.try_acquire(client_key, now=now)
        return allowed

    def get_window(self, client_key: str) -> Optional[RateWindow]:
        return self._windows.get(client_key)

    def __len__(self) -> int:
        return len(self._windows)


def client_key_from_headers(headers) -> str:
    """Derive the rate-limit key from forwarded-address headers.

    Uses the first address of ``x-forwarded-for``, then ``x-real-ip``, then
    a shared ``"unknown"`` bucket.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return UNKNOWN_CLIENT


class RateLimitMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware for per-client rate limiting.

    Only POST requests to the configured paths are counted; other methods
    fall through to the router, which answers 405.
    """

    def __init__(self, app, rate_limiter: RateLimiter, paths: Iterable[str] = ("/api/chat",)):
        super().__init__(app)
        self.rate_limiter = rate_limiter
        self.paths = frozenset(p.rstrip("/") for p in paths)

    async def dispatch(self, request: Request, call_next):
        if request.method != "POST" or request.url.path.rstrip("/") not in self.paths:
            return await call_next(request)

        client_key = client_key_from_headers(request.headers)
        request.state.client_key = client_key

        allowed, retry_after = self.rate_limiter.try_acquire(client_key)
        if not allowed:
            logger.warning("Rate limited client %s (retry_after=%.1fs)", client_key, retry_after)
            record_rejection("rate_limited")
            return JSONResponse(
                status_code=RateLimited.status_code,
                content={"error": RateLimited.message},
                headers={"Retry-After": str(int(retry_after) + 1)},
            )

        return await call_next(request)
