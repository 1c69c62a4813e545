from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from tessra.service.settings_cache import SettingsCache
from tessra.storage.errors import DurableStoreUnavailableError
from tessra.storage.redis_cache import RedisCache


class BrokenStore:
    def get_setting(self, key):
        raise DurableStoreUnavailableError("database unavailable", operation="get_setting")


def _unreachable_cache() -> RedisCache:
    server = FakeServer()
    server.connected = False
    return RedisCache(
        "redis://fake:6379/0",
        client_factory=lambda url: FakeRedis(server=server, decode_responses=True),
    )


async def test_missing_setting_returns_fallback_without_caching(store, cache):
    settings = SettingsCache(store, cache)

    assert await settings.get("storage_driver", "local") == "local"
    client = await cache.get_client()
    assert await client.get("settings:storage_driver") is None
    await cache.close()


async def test_durable_value_populates_cache_with_ttl(store, cache):
    store.upsert_setting("storage_driver", "s3")
    settings = SettingsCache(store, cache, ttl_seconds=300)

    assert await settings.get("storage_driver", "local") == "s3"
    client = await cache.get_client()
    assert await client.get("settings:storage_driver") == "s3"
    assert 0 < await client.ttl("settings:storage_driver") <= 300
    await cache.close()


async def test_cache_hit_skips_durable_store(cache):
    client = await cache.get_client()
    await client.set("settings:default_visibility", "public")
    settings = SettingsCache(BrokenStore(), cache)

    assert await settings.get("default_visibility", "private") == "public"
    await cache.close()


async def test_set_writes_through_and_invalidates(store, cache):
    settings = SettingsCache(store, cache)
    store.upsert_setting("ocr_enabled", "false")
    assert await settings.get("ocr_enabled", "true") == "false"

    saved = await settings.set("ocr_enabled", "true")

    assert saved.value == "true"
    assert store.get_setting("ocr_enabled") == "true"
    client = await cache.get_client()
    assert await client.get("settings:ocr_enabled") is None
    assert await settings.get("ocr_enabled", "false") == "true"
    await cache.close()


async def test_redis_outage_returns_fallback(store):
    store.upsert_setting("storage_driver", "s3")
    settings = SettingsCache(store, _unreachable_cache())

    assert await settings.get("storage_driver", "local") == "local"


async def test_set_survives_redis_outage(store):
    settings = SettingsCache(store, _unreachable_cache())

    await settings.set("storage_driver", "s3")

    assert store.get_setting("storage_driver") == "s3"


async def test_durable_outage_returns_fallback(cache):
    settings = SettingsCache(BrokenStore(), cache)
    assert await settings.get("storage_driver", "local") == "local"
    await cache.close()


async def test_works_without_redis(store):
    settings = SettingsCache(store, None)
    assert await settings.get("storage_driver", "local") == "local"
    await settings.set("storage_driver", "s3")
    assert await settings.get("storage_driver", "local") == "s3"
    assert await settings.clear() == 0


async def test_clear_flushes_cached_settings(store, cache):
    for key, value in {"storage_driver": "s3", "default_visibility": "public"}.items():
        store.upsert_setting(key, value)
    settings = SettingsCache(store, cache)
    await settings.get("storage_driver", "local")
    await settings.get("default_visibility", "private")

    assert await settings.clear() == 2
    client = await cache.get_client()
    assert await client.get("settings:storage_driver") is None
    await cache.close()
