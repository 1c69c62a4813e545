"""End-to-end tests for the HTTP surface.

The runtime is built on the in-memory store and a fake Redis server, and
the client is used as a context manager so every request shares one event
loop with the lazily connected Redis client.
"""

import asyncio

import pytest
from fakeredis.aioredis import FakeRedis
from fastapi.testclient import TestClient

from tessra import app as app_module
from tessra.api import routes
from tessra.config import Settings
from tessra.service.auth import SESSION_COOKIE, AuthGate
from tessra.service.blob_storage import S3Status
from tessra.service.runtime import Runtime, set_runtime
from tessra.storage.memory import MemoryStore
from tessra.storage.models import JOB_COMPLETED
from tessra.storage.redis_cache import RedisCache

ADMIN = "api-test-admin-token"
BEARER = {"Authorization": f"Bearer {ADMIN}"}
PNG = b"\x89PNG\r\n\x1a\nnot-really-a-png"


class FakeOcr:
    async def extract_text(self, buffer, mime):
        return "recognized text"


class RecordingStorage:
    driver = "s3"

    def __init__(self):
        self.objects = {}

    async def put(self, key, buffer, mime):
        self.objects[key] = buffer
        return key

    async def get(self, key):
        return self.objects.get(key)

    async def delete(self, key):
        self.objects.pop(key, None)


@pytest.fixture
def runtime(fake_redis_server, tmp_path):
    settings = Settings(
        use_memory_store=True,
        test_mode=True,
        admin_token=ADMIN,
        job_worker_enabled=False,
        storage_local_root=str(tmp_path),
        ocr_enabled=True,
        redis_url="redis://fake:6379/0",
    )
    cache = RedisCache(
        settings.redis_url,
        client_factory=lambda url: FakeRedis(server=fake_redis_server, decode_responses=True),
    )
    instance = Runtime(settings, store=MemoryStore(), cache=cache, ocr=FakeOcr())
    set_runtime(instance)
    return instance


@pytest.fixture
def client(runtime):
    with TestClient(app_module.app) as test_client:
        yield test_client


def _csrf(client) -> dict:
    response = client.get("/v1/auth/csrf")
    assert response.status_code == 200
    return {"X-CSRF-Token": response.json()["data"]["token"]}


def _login(client, key=ADMIN):
    return client.post("/v1/auth/login", json={"admin_key": key})


class TestLogin:
    def test_login_sets_http_only_cookie(self, client):
        response = _login(client)

        assert response.status_code == 200
        assert response.json()["data"]["authenticated"] is True
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{SESSION_COOKIE}=")
        assert "HttpOnly" in cookie
        assert "Max-Age=604800" in cookie
        assert "samesite=lax" in cookie.lower()

        assert client.get("/v1/auth/session").json()["data"]["authenticated"] is True
        ping = client.get("/v1/admin/ping")
        assert ping.status_code == 200
        assert ping.json()["data"]["auth_method"] == "session"

    def test_login_accepts_camel_case_key(self, client):
        response = client.post("/v1/auth/login", json={"adminKey": ADMIN})
        assert response.status_code == 200

    def test_wrong_key_is_unauthorized(self, client):
        response = _login(client, "nope")
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert SESSION_COOKIE not in client.cookies

    def test_missing_key_is_a_validation_error(self, client):
        response = client.post("/v1/auth/login", json={})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unconfigured_admin_token_is_a_server_error(self, client, runtime):
        runtime.auth = AuthGate.default(runtime.sessions, None)
        response = _login(client, "anything")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"

    def test_login_is_rate_limited_per_ip(self, client):
        for _ in range(5):
            assert _login(client, "wrong").status_code == 401

        blocked = _login(client)
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "rate_limited"
        assert int(blocked.headers["Retry-After"]) > 0
        assert "reset_at" in blocked.json()["error"]["details"]

        status = client.get("/v1/auth/login/status").json()["data"]
        assert status["limited"] is True
        assert status["remaining"] == 0

    def test_successful_login_resets_the_limit(self, client):
        for _ in range(4):
            _login(client, "wrong")
        assert _login(client).status_code == 200
        for _ in range(5):
            assert _login(client, "wrong").status_code == 401

    def test_new_login_revokes_previous_session(self, client):
        _login(client)
        first = client.cookies.get(SESSION_COOKIE)
        _login(client)
        second = client.cookies.get(SESSION_COOKIE)
        assert first != second

        client.cookies.clear()
        stale = client.get("/v1/admin/ping", headers={"Cookie": f"{SESSION_COOKIE}={first}"})
        assert stale.status_code == 401
        fresh = client.get("/v1/admin/ping", headers={"Cookie": f"{SESSION_COOKIE}={second}"})
        assert fresh.status_code == 200

    def test_logout_deletes_session(self, client, runtime):
        _login(client)
        assert len(runtime.store.sessions) == 1

        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert runtime.store.sessions == {}
        assert client.get("/v1/admin/ping").status_code == 401

    def test_session_endpoint_reports_unknown_cookie(self, client):
        response = client.get("/v1/auth/session", headers={"Cookie": f"{SESSION_COOKIE}=forged"})
        assert response.json()["data"]["authenticated"] is False


class TestAdminAuth:
    def test_ping_requires_auth(self, client):
        response = client.get("/v1/admin/ping")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_ping_accepts_bearer_token(self, client):
        response = client.get("/v1/admin/ping", headers=BEARER)
        assert response.status_code == 200
        assert response.json()["data"]["ok"] is True

    def test_wrong_bearer_token(self, client):
        response = client.get("/v1/admin/ping", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401


class TestSettings:
    def test_defaults_come_from_environment(self, client):
        data = client.get("/v1/admin/settings", headers=BEARER).json()["data"]
        assert data == {"storage_driver": "local", "default_visibility": "private", "ocr_enabled": True}

    def test_patch_requires_csrf(self, client):
        response = client.patch(
            "/v1/admin/settings", json={"key": "ocr_enabled", "value": "false"}, headers=BEARER
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_patch_requires_admin_before_csrf(self, client):
        response = client.patch(
            "/v1/admin/settings",
            json={"key": "ocr_enabled", "value": "false"},
            headers=_csrf(client),
        )
        assert response.status_code == 401

    def test_patch_updates_setting_and_token_is_single_use(self, client):
        headers = {**BEARER, **_csrf(client)}
        response = client.patch(
            "/v1/admin/settings", json={"key": "default_visibility", "value": "public"}, headers=headers
        )
        assert response.status_code == 200
        data = client.get("/v1/admin/settings", headers=BEARER).json()["data"]
        assert data["default_visibility"] == "public"

        replay = client.patch(
            "/v1/admin/settings", json={"key": "ocr_enabled", "value": "false"}, headers=headers
        )
        assert replay.status_code == 403

    def test_patch_rejects_unknown_keys_and_values(self, client):
        for body in ({"key": "admin_token", "value": "x"}, {"key": "storage_driver", "value": "ftp"}):
            headers = {**BEARER, **_csrf(client)}
            response = client.patch("/v1/admin/settings", json=body, headers=headers)
            assert response.status_code == 400
            assert response.json()["error"]["code"] == "validation_error"

    def test_switching_to_s3_requires_configuration(self, client):
        headers = {**BEARER, **_csrf(client)}
        response = client.patch(
            "/v1/admin/settings", json={"key": "storage_driver", "value": "s3"}, headers=headers
        )
        assert response.status_code == 400
        assert "S3" in response.json()["error"]["message"]

        status = client.get("/v1/admin/settings/s3-status", headers=BEARER).json()["data"]
        assert status["configured"] is False

    def test_switching_to_s3_routes_new_uploads(self, client, runtime, monkeypatch):
        async def reachable(settings, **kwargs):
            return S3Status(configured=True, connected=True, message="ok")

        monkeypatch.setattr(routes, "check_s3_status", reachable)
        s3 = RecordingStorage()
        runtime._storages["s3"] = s3

        headers = {**BEARER, **_csrf(client)}
        response = client.patch(
            "/v1/admin/settings", json={"key": "storage_driver", "value": "s3"}, headers=headers
        )
        assert response.status_code == 200

        upload = client.post(
            "/v1/upload",
            files={"file": ("doc.txt", b"hello", "text/plain")},
            headers={**BEARER, **_csrf(client)},
        )
        assert upload.status_code == 201
        assert list(s3.objects.values()) == [b"hello"]

    def test_cache_clear(self, client, runtime):
        client.get("/v1/admin/settings", headers=BEARER)
        response = client.post(
            "/v1/admin/settings/cache/clear", headers={**BEARER, **_csrf(client)}
        )
        assert response.status_code == 200
        assert response.json()["data"]["cleared"] == 0


class TestUploads:
    def _upload(self, client, content=PNG, mime="image/png"):
        return client.post(
            "/v1/upload",
            files={"file": ("scan.png", content, mime)},
            headers={**BEARER, **_csrf(client)},
        )

    def test_upload_image_queues_ocr(self, client, runtime):
        response = self._upload(client)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["public_url"].endswith(f"/uploads/{data['id']}")
        assert data["ocr_job_id"] is not None

        job = client.get(f"/v1/admin/jobs/{data['ocr_job_id']}", headers=BEARER).json()["data"]
        assert job["status"] == "waiting"
        assert job["name"] == "ocr:process"

        asyncio.run(runtime.job_pool.run_once())

        job = client.get(f"/v1/admin/jobs/{data['ocr_job_id']}", headers=BEARER).json()["data"]
        assert job["status"] == JOB_COMPLETED
        upload = client.get(f"/v1/admin/uploads/{data['id']}", headers=BEARER).json()["data"]
        assert upload["ocr_text"] == "recognized text"
        assert upload["visibility"] == "private"
        assert upload["size_bytes"] == len(PNG)

    def test_non_image_skips_ocr(self, client):
        response = self._upload(client, b"plain text", "text/plain")
        assert response.status_code == 201
        assert response.json()["data"]["ocr_job_id"] is None

    def test_upload_requires_admin_and_csrf(self, client):
        files = {"file": ("scan.png", PNG, "image/png")}
        assert client.post("/v1/upload", files=files, headers=_csrf(client)).status_code == 401
        assert client.post("/v1/upload", files=files, headers=BEARER).status_code == 403

    def test_upload_requires_a_file(self, client):
        response = client.post("/v1/upload", headers={**BEARER, **_csrf(client)})
        assert response.status_code == 400

    def test_private_upload_is_not_public(self, client):
        upload_id = self._upload(client).json()["data"]["id"]
        assert client.get(f"/uploads/{upload_id}").status_code == 404
        assert client.get("/uploads/does-not-exist").status_code == 404

    def test_public_upload_is_served_with_cache_headers(self, client):
        client.patch(
            "/v1/admin/settings",
            json={"key": "default_visibility", "value": "public"},
            headers={**BEARER, **_csrf(client)},
        )
        upload_id = self._upload(client).json()["data"]["id"]

        response = client.get(f"/uploads/{upload_id}")

        assert response.status_code == 200
        assert response.content == PNG
        assert response.headers["content-type"] == "image/png"
        assert response.headers["content-length"] == str(len(PNG))
        assert response.headers["cache-control"] == "public, max-age=31536000"

    def test_unknown_resources(self, client):
        assert client.get("/v1/admin/uploads/missing", headers=BEARER).status_code == 404
        assert client.get("/v1/admin/jobs/999", headers=BEARER).status_code == 404
        assert client.get("/v1/admin/jobs/abc", headers=BEARER).status_code == 400


class TestRedisOutage:
    def test_csrf_fails_closed_and_login_fails_open(self, client, fake_redis_server):
        fake_redis_server.connected = False

        response = client.get("/v1/auth/csrf")
        assert response.status_code == 503
        body = response.json()
        assert body["error"]["code"] == "service_unavailable"
        assert body["error"]["details"] == {"backend": "cache"}

        for _ in range(7):
            assert _login(client, "wrong").status_code == 401
        assert _login(client).status_code == 200

    def test_settings_fall_back_to_environment(self, client, runtime, fake_redis_server):
        runtime.store.upsert_setting("default_visibility", "public")
        fake_redis_server.connected = False

        response = client.get("/v1/admin/settings", headers=BEARER)
        assert response.status_code == 200
        assert response.json()["data"]["default_visibility"] == "private"


class TestOperational:
    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "healthy"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert client.get("/healthz").headers["X-Request-ID"]

    def test_api_responses_are_not_cached(self, client):
        response = client.get("/v1/auth/session")
        assert "no-store" in response.headers["cache-control"]
