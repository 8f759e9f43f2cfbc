"""Rate-limit middleware: admits or rejects a request before any handler runs."""

import asyncio
import logging
from typing import Dict, Optional

from tortoise.exceptions import DBConnectionError, OperationalError

from relaykit.core.config import RATE_LIMIT_FAIL_MODE
from relaykit.core.exceptions import RateLimitExceeded, RateLimiterUnavailable
from relaykit.services.rate_limiter import RateLimiter, RateLimitResult

log = logging.getLogger("relaykit.rate_limit")

FAIL_OPEN = "open"
FAIL_CLOSED = "closed"

STORAGE_ERRORS = (OperationalError, DBConnectionError, ConnectionError, asyncio.TimeoutError)

_default_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = RateLimiter()
    return _default_limiter


def rate_limit_bucket(org_id: str, method: str, route: str) -> str:
    """Bucket key for one tenant calling one route."""
    return f"org:{org_id}:{method.upper()}:{route}"


async def enforce_rate_limit(
    bucket: str,
    limit: int,
    window_seconds: int,
    limiter: Optional[RateLimiter] = None,
    fail_mode: str = RATE_LIMIT_FAIL_MODE,
) -> Optional[RateLimitResult]:
    """
    Consumes one slot from the bucket or raises RateLimitExceeded.

    When storage is unreachable, fail_mode decides: 'closed' raises
    RateLimiterUnavailable, 'open' admits the request and returns None.
    """
    if fail_mode not in (FAIL_OPEN, FAIL_CLOSED):
        raise ValueError(f"Unknown rate limit fail mode: {fail_mode}")

    limiter = limiter or get_rate_limiter()
    try:
        result = await limiter.check_and_increment(bucket, limit, window_seconds)
    except STORAGE_ERRORS as e:
        if fail_mode == FAIL_OPEN:
            log.warning(f"Rate limiter storage error for {bucket}, failing open: {e}")
            return None
        log.error(f"Rate limiter storage error for {bucket}, failing closed: {e}")
        raise RateLimiterUnavailable("Rate limiter is temporarily unavailable") from e

    if not result.allowed:
        raise RateLimitExceeded(bucket, limit, result.retry_after_seconds)
    return result


def rate_limit_headers(result: Optional[RateLimitResult]) -> Dict[str, str]:
    if result is None:
        return {}
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": result.reset_at.isoformat(),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after_seconds)
    return headers
