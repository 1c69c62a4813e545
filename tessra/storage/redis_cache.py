from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tessra.logging import get_logger
from tessra.storage.errors import CacheUnavailableError

logger = get_logger(__name__)

ClientFactory = Callable[[str], aioredis.Redis]


class RedisCache:
    """Thin Redis wrapper for CSRF tokens, rate-limit windows and settings.

    The underlying client is created lazily on first use. Concurrent first
    callers await one shared connection attempt; a failed attempt is forgotten
    so the next caller retries. Every Redis failure surfaces as
    :class:`CacheUnavailableError` so callers can apply their own policy.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    CSRF_PREFIX = "csrf:"
    RATE_PREFIX = "ratelimit:"
    SETTINGS_PREFIX = "settings:"

    # INCR + EXPIRE-on-create + TTL in one round trip. The TTL repair branch
    # covers a counter whose EXPIRE was lost, which would otherwise never reset.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local window = tonumber(ARGV[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], window)
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], window)
  ttl = window
end
return {count, ttl}
"""

    def __init__(
        self,
        redis_url: Optional[str],
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self._client_factory = client_factory or self._default_factory
        self._client: Optional[aioredis.Redis] = None
        self._connecting: Optional[asyncio.Future] = None
        self._window_script: Any = None
        self.connect_attempts = 0

    def _default_factory(self, url: str) -> aioredis.Redis:
        return aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def _connect(self) -> aioredis.Redis:
        self.connect_attempts += 1
        client = self._client_factory(self.redis_url)
        try:
            await client.ping()
        except BaseException:
            await client.aclose()
            raise
        self._window_script = client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._client = client
        logger.info("redis_connected", attempts=self.connect_attempts)
        return client

    async def get_client(self) -> aioredis.Redis:
        """Return the shared client, connecting at most once per process."""
        if self._client is not None:
            return self._client
        if not self.redis_url:
            raise CacheUnavailableError("redis is not configured", operation="connect")
        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._connect())
        pending = self._connecting
        try:
            # shield so one cancelled caller does not abort the shared attempt
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._connecting is pending:
                self._connecting = None
            logger.warning("redis_connect_failed", error=str(exc))
            raise CacheUnavailableError("redis unavailable", operation="connect") from exc

    async def _call(self, operation: str, fn: Callable[[aioredis.Redis], Awaitable[Any]]) -> Any:
        client = await self.get_client()
        try:
            return await fn(client)
        except RedisError as exc:
            raise CacheUnavailableError(
                f"redis {operation} failed", operation=operation
            ) from exc

    # csrf
    async def store_csrf_token(self, token: str, ttl_seconds: int) -> None:
        await self._call(
            "csrf_store",
            lambda c: c.set(f"{self.CSRF_PREFIX}{token}", "1", ex=ttl_seconds),
        )

    async def pop_csrf_token(self, token: str) -> bool:
        """Atomically fetch and delete a CSRF token; True if it was present."""
        value = await self._call(
            "csrf_pop", lambda c: c.getdel(f"{self.CSRF_PREFIX}{token}")
        )
        return value is not None

    # rate limiting
    @classmethod
    def rate_key(cls, namespace: str, identifier: str) -> str:
        return f"{cls.RATE_PREFIX}{namespace}:{identifier}"

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Increment a fixed-window counter; returns ``(count, ttl_seconds)``."""

        async def _incr(client: aioredis.Redis) -> Any:
            return await self._window_script(keys=[key], args=[int(window_seconds)], client=client)

        count, ttl = await self._call("rate_incr", _incr)
        return int(count), int(ttl)

    async def peek_window(self, key: str) -> Tuple[int, int]:
        """Read a counter without incrementing; ``(0, -2)`` when absent."""

        async def _peek(client: aioredis.Redis) -> Any:
            pipe = client.pipeline(transaction=False)
            pipe.get(key)
            pipe.ttl(key)
            return await pipe.execute()

        raw_count, ttl = await self._call("rate_peek", _peek)
        return int(raw_count or 0), int(ttl)

    async def delete(self, key: str) -> int:
        return int(await self._call("delete", lambda c: c.delete(key)))

    # settings
    async def get_setting(self, key: str) -> Optional[str]:
        return await self._call(
            "settings_get", lambda c: c.get(f"{self.SETTINGS_PREFIX}{key}")
        )

    async def set_setting(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call(
            "settings_set",
            lambda c: c.set(f"{self.SETTINGS_PREFIX}{key}", value, ex=ttl_seconds),
        )

    async def delete_setting(self, key: str) -> None:
        await self._call(
            "settings_delete", lambda c: c.delete(f"{self.SETTINGS_PREFIX}{key}")
        )

    async def clear_settings(self, *, batch_size: int = 100) -> int:
        """Delete every ``settings:*`` key using SCAN, never KEYS."""

        async def _clear(client: aioredis.Redis) -> int:
            removed = 0
            batch: list[str] = []
            async for key in client.scan_iter(match=f"{self.SETTINGS_PREFIX}*", count=batch_size):
                batch.append(key)
                if len(batch) >= batch_size:
                    removed += await client.delete(*batch)
                    batch = []
            if batch:
                removed += await client.delete(*batch)
            return removed

        return int(await self._call("settings_clear", _clear))

    async def ping(self) -> bool:
        return bool(await self._call("ping", lambda c: c.ping()))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        client, self._client = self._client, None
        self._connecting = None
        if client is not None:
            await client.aclose()
