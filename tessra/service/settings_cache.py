from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from tessra.logging import get_logger
from tessra.storage.errors import CacheUnavailableError, StoreUnavailableError
from tessra.storage.models import Setting
from tessra.storage.redis_cache import RedisCache

if TYPE_CHECKING:
    from tessra.storage.memory import MemoryStore
    from tessra.storage.postgres import PostgresStore

logger = get_logger(__name__)

SETTINGS_CACHE_TTL_SECONDS = 300


class SettingsCache:
    """Read-through Redis cache over the durable ``settings`` table.

    Reads never raise: a Redis or database failure returns the caller's
    fallback. Writes go to the database first and then delete the cached
    copy, so the next reader repopulates it.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        cache: Optional[RedisCache],
        *,
        ttl_seconds: int = SETTINGS_CACHE_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def get(self, key: str, fallback: str) -> str:
        if self.cache is not None:
            try:
                cached = await self.cache.get_setting(key)
            except CacheUnavailableError as exc:
                logger.warning("settings_cache_read_failed", key=key, error=str(exc))
                return fallback
            if cached is not None:
                return cached

        try:
            value = await asyncio.to_thread(self.store.get_setting, key)
        except Exception as exc:
            logger.error(
                "settings_store_read_failed",
                key=key,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return fallback
        if value is None:
            # not cached, so a later durable write wins on the very next read
            return fallback

        if self.cache is not None:
            try:
                await self.cache.set_setting(key, value, self.ttl_seconds)
            except CacheUnavailableError as exc:
                logger.warning("settings_cache_populate_failed", key=key, error=str(exc))
        return value

    async def set(self, key: str, value: str) -> Setting:
        """Persist ``value`` durably then invalidate the cached copy.

        Durable errors propagate. A failed invalidation is logged; the stale
        copy then lives at most ``ttl_seconds``.
        """
        setting = await asyncio.to_thread(self.store.upsert_setting, key, value)
        if self.cache is not None:
            try:
                await self.cache.delete_setting(key)
            except CacheUnavailableError as exc:
                logger.error(
                    "settings_cache_invalidate_failed",
                    key=key,
                    error=str(exc),
                    stale_for_seconds=self.ttl_seconds,
                )
        logger.info("setting_updated", key=key)
        return setting

    async def clear(self) -> int:
        """Drop every cached setting; returns the number of keys removed."""
        if self.cache is None:
            return 0
        try:
            removed = await self.cache.clear_settings()
        except StoreUnavailableError as exc:
            logger.error("settings_cache_clear_failed", error=str(exc))
            return 0
        logger.info("settings_cache_cleared", count=removed)
        return removed
