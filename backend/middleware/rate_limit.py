"""
Sliding-window throttling for sign-in and checkout.

Hits are counted per (client IP, route path) in process memory, so each
uvicorn worker keeps its own window.
"""
import logging
import time
from collections import defaultdict, deque

from fastapi import HTTPException, Request, Response

from config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-key deque of hit timestamps, oldest first."""

    def __init__(self):
        self._requests: dict[str, deque] = defaultdict(deque)

    def _cleanup(self, key: str, window_seconds: int):
        cutoff = time.time() - window_seconds
        hits = self._requests[key]
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def check(self, key: str, max_requests: int, window_seconds: int) -> bool:
        """Record a hit for key; False if the window is already full."""
        self._cleanup(key, window_seconds)
        hits = self._requests[key]
        if len(hits) >= max_requests:
            return False
        hits.append(time.time())
        return True

    def remaining(self, key: str, max_requests: int, window_seconds: int) -> int:
        self._cleanup(key, window_seconds)
        return max(0, max_requests - len(self._requests[key]))

    def reset(self) -> None:
        self._requests.clear()


_limiter = RateLimiter()


def client_key(request: Request) -> str:
    client_ip = request.client.host if request.client else "unknown"
    return f"{client_ip}:{request.url.path}"


def rate_limit(max_requests: int = 10, window_seconds: int = 60):
    """
    Dependency factory, e.g. ``_rate=Depends(rate_limit(10, 60))``.

    Allowed requests get X-RateLimit-* headers; refused ones raise 429
    with Retry-After.
    """
    async def _check_rate_limit(request: Request, response: Response = None):
        if not settings.rate_limit_enabled:
            return

        key = client_key(request)
        if not _limiter.check(key, max_requests, window_seconds):
            logger.warning(f"Rate limit hit: {key} ({max_requests}/{window_seconds}s)")
            raise HTTPException(
                status_code=429,
                detail=f"Too many requests: limit is {max_requests} per {window_seconds}s",
                headers={
                    "Retry-After": str(window_seconds),
                    "X-RateLimit-Limit": str(max_requests),
                    "X-RateLimit-Remaining": "0",
                },
            )

        if response is not None:
            response.headers["X-RateLimit-Limit"] = str(max_requests)
            response.headers["X-RateLimit-Remaining"] = str(
                _limiter.remaining(key, max_requests, window_seconds)
            )

    return _check_rate_limit
