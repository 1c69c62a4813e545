import asyncio
import inspect
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

# Configure the environment before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tessra_test_")
os.environ.setdefault("LOCAL_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JOBS_WORKER_ENABLED", "false")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("OCR_ENABLED", "false")

from fakeredis import FakeServer  # noqa: E402
from fakeredis.aioredis import FakeRedis  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tessra.service.runtime import reset_runtime_for_tests  # noqa: E402
from tessra.storage.memory import MemoryStore  # noqa: E402
from tessra.storage.models import utcnow  # noqa: E402
from tessra.storage.redis_cache import RedisCache  # noqa: E402

ADMIN_TOKEN = os.environ["ADMIN_TOKEN"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def fake_redis_server():
    return FakeServer()


@pytest.fixture
def cache(fake_redis_server):
    """RedisCache backed by an in-process fake server; connects lazily."""
    return RedisCache(
        "redis://fake:6379/0",
        client_factory=lambda url: FakeRedis(server=fake_redis_server, decode_responses=True),
    )


class MutableClock:
    """Deterministic clock tests can move forward."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return MutableClock(utcnow())


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
