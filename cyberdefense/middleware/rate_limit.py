"""
Fixed-window rate limiting per client IP.

Counters live in a TTLCache keyed by "bucket:ip" as (window_start, count).
The cache evicts idle clients; the window itself is tracked by window_start.
"""
import logging
import time
from typing import List, Tuple

from cachetools import TTLCache
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from cyberdefense.core.config import Settings
from cyberdefense.core.errors import RateLimitError, error_body

logger = logging.getLogger(__name__)

GENERAL_MESSAGE = "Too many requests from this IP, please try again later."
AUTH_MESSAGE = "Too many authentication attempts, please try again later."


class RateLimiter:
    def __init__(self, name: str, limit: int, window_seconds: int, maxsize: int = 10000):
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self.hits: TTLCache = TTLCache(maxsize=maxsize, ttl=window_seconds)

    def hit(self, client: str, now: float = None) -> Tuple[bool, dict]:
        now = time.time() if now is None else now
        key = f"{self.name}:{client}"
        window_start, count = self.hits.get(key, (now, 0))
        if now - window_start >= self.window_seconds:
            window_start, count = now, 0
        count += 1
        self.hits[key] = (window_start, count)

        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(max(0, self.limit - count)),
            "RateLimit-Reset": str(max(0, int(window_start + self.window_seconds - now))),
        }
        return count <= self.limit, headers


class RateLimitMiddleware(BaseHTTPMiddleware):
    """General bucket for /api/, plus a stricter one for /api/auth/."""

    def __init__(self, app, settings: Settings):
        super().__init__(app)
        window = settings.RATE_LIMIT_WINDOW_SECONDS
        self.rules: List[Tuple[str, RateLimiter, str]] = [
            ("/api/auth/", RateLimiter("auth", settings.RATE_LIMIT_AUTH_MAX_REQUESTS, window), AUTH_MESSAGE),
            ("/api/", RateLimiter("general", settings.RATE_LIMIT_MAX_REQUESTS, window), GENERAL_MESSAGE),
        ]

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        client = request.client.host if request.client else "unknown"

        headers = {}
        for prefix, limiter, message in self.rules:
            if not path.startswith(prefix):
                continue
            allowed, limiter_headers = limiter.hit(client)
            if not allowed:
                logger.warning(f"Rate limit exceeded for {client} on {path}",
                               extra={"client": client, "bucket": limiter.name})
                return JSONResponse(
                    status_code=RateLimitError.status_code,
                    content=error_body(request, message, RateLimitError.code),
                    headers=limiter_headers,
                )
            headers = headers or limiter_headers

        response = await call_next(request)
        response.headers.update(headers)
        return response
