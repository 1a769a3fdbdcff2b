"""
Rate limiting utilities for API endpoints.

Provides in-memory rate limiting for the AI endpoints (count, OCR, analyze),
which each cost a provider call.
"""
import time
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from fastapi import HTTPException, Request

from ..config import settings

logger = logging.getLogger(__name__)

MSG_RATE_LIMITED = "请求过于频繁，请稍后重试"


class InMemoryRateLimiter:
    """
    Simple in-memory rate limiter using sliding window.

    Process-local; with multiple workers each worker keeps its own window.
    """

    def __init__(self, max_requests: int = 20, window_seconds: int = 60):
        """
        Initialize rate limiter.

        Args:
            max_requests: Maximum number of requests allowed in window
            window_seconds: Time window in seconds
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: Dict[str, List[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """
        Check if a request is allowed for the given key.

        Args:
            key: Unique identifier (user id or client IP)

        Returns:
            True if request allowed, False if rate limited
        """
        now = time.time()
        cutoff = now - self.window_seconds

        # Clean old entries
        self._requests[key] = [t for t in self._requests[key] if t > cutoff]

        if len(self._requests[key]) >= self.max_requests:
            return False

        self._requests[key].append(now)
        return True

    def reset(self, key: Optional[str] = None) -> None:
        """Reset one key, or every key when none is given."""
        if key is None:
            self._requests.clear()
        else:
            self._requests.pop(key, None)

    def get_remaining(self, key: str) -> int:
        """Get remaining requests for a key."""
        now = time.time()
        cutoff = now - self.window_seconds
        current = len([t for t in self._requests[key] if t > cutoff])
        return max(0, self.max_requests - current)


def build_ai_rate_limiter() -> InMemoryRateLimiter:
    return InMemoryRateLimiter(
        max_requests=settings.ai_rate_limit_requests,
        window_seconds=settings.ai_rate_limit_window_seconds,
    )


def _client_key(request: Request) -> str:
    user_id = request.headers.get("x-user-id")
    if user_id:
        return f"user:{user_id}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


async def check_ai_rate_limit(request: Request) -> None:
    """
    FastAPI dependency that checks the AI endpoint rate limit.

    Keyed by X-User-Id when present, else client IP. Raises 429 if limited.
    """
    limiter: Optional[InMemoryRateLimiter] = getattr(request.app.state, "ai_rate_limiter", None)
    if limiter is None:
        return

    key = _client_key(request)
    if not limiter.check(key):
        logger.warning(f"Rate limit exceeded for {key}")
        raise HTTPException(
            status_code=429,
            detail=MSG_RATE_LIMITED,
            headers={"Retry-After": str(limiter.window_seconds)},
        )
