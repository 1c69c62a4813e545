from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from tessra.logging import get_logger
from tessra.storage.errors import CacheUnavailableError
from tessra.storage.models import utcnow
from tessra.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    remaining: int
    reset_at: datetime
    count: int = 0


class RateLimiter:
    """Fixed-window attempt counter keyed by ``(namespace, identifier)``.

    Fails open: when Redis is absent or unreachable every check reports
    ``limited=False`` with the full attempt budget, so login stays available.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self._clock = clock

    def _open(self, max_attempts: int, window_seconds: int) -> RateLimitResult:
        return RateLimitResult(
            limited=False,
            remaining=max_attempts,
            reset_at=self._clock() + timedelta(seconds=window_seconds),
        )

    def _result(self, count: int, ttl: int, max_attempts: int, window_seconds: int) -> RateLimitResult:
        if ttl < 0:
            ttl = window_seconds
        return RateLimitResult(
            limited=count > max_attempts,
            remaining=max(0, max_attempts - count),
            reset_at=self._clock() + timedelta(seconds=ttl),
            count=count,
        )

    async def check(
        self,
        identifier: str,
        namespace: str,
        max_attempts: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """Record one attempt and report whether the budget is exceeded."""
        if max_attempts < 0 or window_seconds <= 0:
            raise ValueError("max_attempts must be >= 0 and window_seconds > 0")
        if self.cache is None:
            return self._open(max_attempts, window_seconds)
        key = RedisCache.rate_key(namespace, identifier)
        try:
            count, ttl = await self.cache.incr_window(key, window_seconds)
        except CacheUnavailableError as exc:
            logger.warning(
                "rate_limit_cache_unavailable",
                namespace=namespace,
                error=str(exc),
            )
            return self._open(max_attempts, window_seconds)
        result = self._result(count, ttl, max_attempts, window_seconds)
        if result.limited:
            logger.warning(
                "rate_limit_exceeded",
                namespace=namespace,
                identifier=identifier,
                count=count,
                reset_at=result.reset_at.isoformat(),
            )
        return result

    async def status(
        self,
        identifier: str,
        namespace: str,
        max_attempts: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """Report the current window without recording an attempt."""
        if self.cache is None:
            return self._open(max_attempts, window_seconds)
        try:
            count, ttl = await self.cache.peek_window(RedisCache.rate_key(namespace, identifier))
        except CacheUnavailableError as exc:
            logger.warning("rate_limit_status_unavailable", namespace=namespace, error=str(exc))
            return self._open(max_attempts, window_seconds)
        return self._result(count, ttl, max_attempts, window_seconds)

    async def reset(self, identifier: str, namespace: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.delete(RedisCache.rate_key(namespace, identifier))
        except CacheUnavailableError as exc:
            logger.warning("rate_limit_reset_failed", namespace=namespace, error=str(exc))
