import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from tortoise.exceptions import IntegrityError
from tortoise.expressions import F

from relaykit.core.clock import utcnow
from relaykit.models.rate_limit import RateLimitBucket

log = logging.getLogger("relaykit.rate_limit")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


def window_bounds(now: datetime, window_seconds: int):
    """Truncates now to a window boundary and returns (window_start, window_end)."""
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    start_ts = math.floor(now.timestamp() / window_seconds) * window_seconds
    start = datetime.fromtimestamp(start_ts, tz=timezone.utc)
    return start, start + timedelta(seconds=window_seconds)


class RateLimiter:
    """
    Fixed-window counter stored in rate_limit_buckets.

    Admission is a single conditional UPDATE (count < limit), so two
    concurrent requests can never both take the last slot. The first request
    of a window inserts the row; a concurrent insert loses on the
    (bucket, window_start) unique constraint and falls back to the update.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    async def _try_increment(self, bucket: str, window_start: datetime, limit: int) -> bool:
        updated = await RateLimitBucket.filter(
            bucket=bucket, window_start=window_start, count__lt=limit
        ).update(count=F("count") + 1)
        return updated > 0

    async def _current_count(self, bucket: str, window_start: datetime) -> int:
        row = await RateLimitBucket.get_or_none(bucket=bucket, window_start=window_start)
        return row.count if row else 0

    async def check_and_increment(self, bucket: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = self._clock()
        window_start, window_end = window_bounds(now, window_seconds)
        retry_after = max(1, math.ceil((window_end - now).total_seconds()))

        def result(allowed: bool, count: int) -> RateLimitResult:
            return RateLimitResult(
                allowed=allowed,
                count=count,
                limit=limit,
                retry_after_seconds=0 if allowed else retry_after,
                reset_at=window_end,
            )

        if limit <= 0:
            return result(False, await self._current_count(bucket, window_start))

        if await self._try_increment(bucket, window_start, limit):
            return result(True, min(limit, await self._current_count(bucket, window_start)))

        # No row for this window yet, or the window is full
        row = await RateLimitBucket.get_or_none(bucket=bucket, window_start=window_start)
        if row is None:
            try:
                await RateLimitBucket.create(bucket=bucket, window_start=window_start, count=1)
                return result(True, 1)
            except IntegrityError:
                # Another request opened the window first
                if await self._try_increment(bucket, window_start, limit):
                    return result(True, min(limit, await self._current_count(bucket, window_start)))
            count = await self._current_count(bucket, window_start)
        else:
            count = row.count
            if count < limit:
                # Row was opened after our first update
                if await self._try_increment(bucket, window_start, limit):
                    return result(True, min(limit, await self._current_count(bucket, window_start)))
                count = await self._current_count(bucket, window_start)

        log.info(f"Bucket {bucket} denied: {count}/{limit}, retry after {retry_after}s")
        return result(False, count)

    async def peek(self, bucket: str, window_seconds: int) -> int:
        """Returns the admitted count in the current window without consuming a slot."""
        window_start, _ = window_bounds(self._clock(), window_seconds)
        return await self._current_count(bucket, window_start)
