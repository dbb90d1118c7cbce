import time
from collections import deque

from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from skillmint.core.errors import RateLimited
from skillmint.libs.response import error_response

EXEMPT_PATHS = {"/", "/health", "/docs", "/redoc", "/openapi.json"}


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding one-minute window per client IP.
    ``X-Forwarded-For`` is honored only when the peer is a trusted proxy.
    """

    def __init__(
        self,
        app,
        requests_per_minute: int = 120,
        window_seconds: float = 60,
        trusted_proxies: list[str] | None = None,
    ):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.window_seconds = window_seconds
        self.trusted_proxies = set(trusted_proxies or ())
        self.hits: dict[str, deque[float]] = {}
        self._last_sweep = 0.0

    def _client_ip(self, request: Request) -> str:
        peer = request.client.host if request.client else "unknown"
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded and peer in self.trusted_proxies:
            return forwarded.split(",")[0].strip()
        return peer

    def _prune(self, window: deque[float], now: float) -> None:
        while window and window[0] <= now - self.window_seconds:
            window.popleft()

    def _sweep(self, now: float) -> None:
        """Drop every client whose window has emptied."""
        for ip in list(self.hits):
            window = self.hits[ip]
            self._prune(window, now)
            if not window:
                del self.hits[ip]
        self._last_sweep = now

    def admit(self, ip: str, now: float) -> int | None:
        """Remaining requests after this one, or None when the limit is hit."""
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)

        window = self.hits.setdefault(ip, deque())
        self._prune(window, now)
        if len(window) >= self.requests_per_minute:
            return None
        window.append(now)
        return self.requests_per_minute - len(window)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in EXEMPT_PATHS or self.requests_per_minute <= 0:
            return await call_next(request)

        ip = self._client_ip(request)
        remaining = self.admit(ip, time.monotonic())
        if remaining is None:
            logger.warning(f"⚠ Rate limit hit for {ip} on {request.url.path}")
            response = error_response(
                429,
                RateLimited.message_default,
                {"limit": self.requests_per_minute, "retry_after": self.window_seconds},
            )
            response.headers["Retry-After"] = str(self.window_seconds)
            return response

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response
