"""Per-client sliding window rate limiting for the HTTP API."""

import asyncio
import time
from typing import Dict, List, Optional

from fastapi import Request
from structlog import get_logger

logger = get_logger()


class RateLimitExceeded(Exception):
    """Raised when a client exceeds its request budget."""

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimiter:
    """Allows ``rate_limit`` requests per ``time_window`` seconds for each key."""

    def __init__(self, rate_limit: int = 100, time_window: int = 900):
        self.rate_limit = rate_limit
        self.time_window = time_window
        self.requests: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info("rate_limiter_initialized", rate_limit=rate_limit, time_window=time_window)

    async def start(self) -> None:
        """Start the periodic cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _periodic_cleanup(self) -> None:
        while True:
            await asyncio.sleep(self.time_window)
            async with self._lock:
                cutoff = time.monotonic() - self.time_window
                for key in list(self.requests):
                    self.requests[key] = [ts for ts in self.requests[key] if ts > cutoff]
                    if not self.requests[key]:
                        del self.requests[key]

    async def check_rate_limit(self, key: str) -> None:
        """Record a request for ``key`` or raise RateLimitExceeded."""
        now = time.monotonic()
        async with self._lock:
            cutoff = now - self.time_window
            window = [ts for ts in self.requests.get(key, []) if ts > cutoff]
            if len(window) >= self.rate_limit:
                self.requests[key] = window
                retry_after = max(0.0, window[0] + self.time_window - now)
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    current_requests=len(window),
                    rate_limit=self.rate_limit,
                )
                raise RateLimitExceeded(
                    "Too many requests from this client, please try again later.",
                    retry_after=retry_after,
                )
            window.append(now)
            self.requests[key] = window

    async def get_remaining_requests(self, key: str) -> int:
        async with self._lock:
            cutoff = time.monotonic() - self.time_window
            used = sum(1 for ts in self.requests.get(key, []) if ts > cutoff)
            return max(0, self.rate_limit - used)


async def rate_limit_middleware(
    request: Request, rate_limiter: Optional[RateLimiter] = None
) -> Optional[int]:
    """Apply the limiter to ``/api`` requests, keyed by client address.

    Returns the requests left in the window, or None when the path is not limited.
    """
    if rate_limiter is None or not request.url.path.startswith("/api"):
        return None
    client_ip = request.client.host if request.client else "unknown"
    await rate_limiter.check_rate_limit(client_ip)
    return await rate_limiter.get_remaining_requests(client_ip)
