from __future__ import annotations

from typing import Optional

from fastapi import Request

from tessra.logging import get_logger
from tessra.service.errors import CsrfError
from tessra.storage.errors import CacheUnavailableError
from tessra.storage.models import new_token
from tessra.storage.redis_cache import RedisCache

logger = get_logger(__name__)

CSRF_HEADER = "X-CSRF-Token"
CSRF_TTL_SECONDS = 60 * 60


class CsrfTokenStore:
    """Single-use anti-forgery tokens kept in Redis.

    Fails closed: with no reachable cache, :class:`CacheUnavailableError`
    propagates from both ``issue`` and ``redeem``.
    """

    def __init__(self, cache: Optional[RedisCache], *, ttl_seconds: int = CSRF_TTL_SECONDS) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def _require_cache(self) -> RedisCache:
        if self.cache is None:
            raise CacheUnavailableError("csrf store requires redis", operation="csrf")
        return self.cache

    async def issue(self) -> str:
        cache = self._require_cache()
        token = new_token()
        await cache.store_csrf_token(token, self.ttl_seconds)
        return token

    async def redeem(self, token: Optional[str]) -> bool:
        if not token:
            return False
        cache = self._require_cache()
        return await cache.pop_csrf_token(token)

    async def require(self, request: Request) -> None:
        """Redeem the request's ``X-CSRF-Token`` header or raise 403."""
        token = request.headers.get(CSRF_HEADER)
        if not await self.redeem(token):
            logger.warning(
                "csrf_rejected",
                reason="missing" if not token else "invalid_or_used",
                path=request.url.path,
            )
            raise CsrfError()
