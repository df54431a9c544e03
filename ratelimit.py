"""
Per-client fixed-window rate limiting for the /api/ routes.
"""
import logging
import time
from collections import defaultdict
from threading import Lock
from typing import Dict, Optional, Sequence

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from errors import error_response

logger = logging.getLogger(__name__)


class FixedWindow:
    """Counts requests per key inside windows of ``window_seconds``."""

    def __init__(self, max_requests: int, window_seconds: float):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._counts: Dict[str, int] = defaultdict(int)
        self._window_start: Dict[str, float] = {}
        self._last_sweep = time.monotonic()
        self._lock = Lock()

    def hit(self, key: str) -> bool:
        """Record one request; False once the ceiling is reached for this window."""
        with self._lock:
            now = time.monotonic()
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            start = self._window_start.get(key)
            if start is None or now - start >= self.window_seconds:
                self._window_start[key] = now
                self._counts[key] = 0
            if self._counts[key] >= self.max_requests:
                return False
            self._counts[key] += 1
            return True

    def _sweep(self, now: float) -> None:
        """Forget clients whose window has run out."""
        for key in [k for k, start in self._window_start.items() if now - start >= self.window_seconds]:
            del self._window_start[key]
            self._counts.pop(key, None)
        self._last_sweep = now

    def tracked(self) -> int:
        with self._lock:
            return len(self._window_start)

    def retry_after(self, key: str) -> int:
        with self._lock:
            start = self._window_start.get(key)
            if start is None:
                return 0
            return max(0, int(self.window_seconds - (time.monotonic() - start))) + 1


def client_key(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, max_requests: int, window_ms: int,
                 prefixes: Sequence[str] = ("/api/",), exclude_paths: Optional[Sequence[str]] = None):
        super().__init__(app)
        self.window = FixedWindow(max_requests, window_ms / 1000.0)
        self.prefixes = tuple(prefixes)
        self.exclude_paths = set(exclude_paths or ("/api/health",))
        logger.info("Rate limiting %d requests per %d ms on %s", max_requests, window_ms, ", ".join(self.prefixes))

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if not path.startswith(self.prefixes) or path in self.exclude_paths:
            return await call_next(request)

        key = client_key(request)
        if not self.window.hit(key):
            logger.warning("Rate limit exceeded for %s on %s %s", key, request.method, path)
            response = error_response(429, "Trop de requêtes depuis cette IP, veuillez réessayer plus tard.")
            response.headers["Retry-After"] = str(self.window.retry_after(key))
            return response
        return await call_next(request)
