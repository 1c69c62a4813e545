from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse, urlunparse

from tessra.config import Settings, StorageDriver, get_settings, reset_settings_cache
from tessra.logging import get_logger
from tessra.service.auth import AuthGate
from tessra.service.blob_storage import BlobStorage, LocalBlobStorage, S3BlobStorage
from tessra.service.csrf import CsrfTokenStore
from tessra.service.errors import ServiceUnavailableError
from tessra.service.jobs import JobQueue, JobShutdownError, JobWorkerPool, ProcessorRegistry
from tessra.service.ocr import OcrProvider, TesseractOcr
from tessra.service.rate_limit import RateLimiter
from tessra.service.sessions import SessionManager, SessionSweeper
from tessra.service.settings_cache import SettingsCache
from tessra.service.uploads import OCR_JOB_NAME, UploadService, build_ocr_processor
from tessra.storage.memory import MemoryStore
from tessra.storage.postgres import PostgresStore
from tessra.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_DEFAULT = object()


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Builds the stores once and injects them into every service."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Any = None,
        cache: Any = _DEFAULT,
        ocr: Optional[OcrProvider] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is None:
            try:
                store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if self.settings.use_memory_store else "postgres",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.store: PostgresStore | MemoryStore = store

        if cache is _DEFAULT:
            # connects lazily on first use
            cache = RedisCache(self.settings.redis_url) if self.settings.redis_url else None
        self.cache: Optional[RedisCache] = cache
        if self.cache is None:
            logger.warning(
                "redis_disabled",
                message="CSRF-protected routes will return 503; rate limiting is disabled.",
            )

        self.sessions = SessionManager(self.store)
        self.session_sweeper = SessionSweeper(
            self.sessions, interval=self.settings.session_cleanup_interval_seconds
        )
        self.csrf = CsrfTokenStore(self.cache)
        self.rate_limiter = RateLimiter(self.cache)
        self.settings_cache = SettingsCache(self.store, self.cache)
        self.auth = AuthGate.default(self.sessions, self.settings.admin_token)

        self._storages: Dict[str, BlobStorage] = {
            StorageDriver.LOCAL.value: LocalBlobStorage(self.settings.storage_local_root)
        }
        self._storage_lock = threading.Lock()

        self.ocr: OcrProvider = ocr or TesseractOcr(
            self.settings.ocr_lang,
            binary=self.settings.ocr_binary,
            timeout=self.settings.ocr_timeout_seconds,
        )
        self.job_queue = JobQueue(self.store)
        self.processors = ProcessorRegistry()
        self.processors.register(
            OCR_JOB_NAME, build_ocr_processor(self.store, self.blob_storage, self.ocr)
        )
        self.job_pool = JobWorkerPool(
            self.store,
            self.processors,
            concurrency=self.settings.job_concurrency,
            poll_interval=self.settings.job_poll_interval_seconds,
            lease_seconds=self.settings.job_lease_seconds,
            shutdown_grace=self.settings.job_shutdown_grace_seconds,
            max_stalled_count=self.settings.job_max_stalled_count,
        )
        self.uploads = UploadService(
            self.store,
            self.settings_cache,
            self.job_queue,
            self.blob_storage,
            self.settings,
        )

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_url=_mask_url_password(self.settings.redis_url) if self.cache else None,
            storage_driver=self.settings.storage_driver.value,
            ocr_enabled=self.settings.ocr_enabled,
            job_concurrency=self.settings.job_concurrency,
        )

    def blob_storage(self, driver: str) -> BlobStorage:
        """Return the storage driver for ``driver``, creating S3 on first use."""
        storage = self._storages.get(driver)
        if storage is not None:
            return storage
        if driver != StorageDriver.S3.value:
            raise ValueError(f"unknown storage driver: {driver}")
        if not self.settings.s3_configured:
            raise ServiceUnavailableError("S3 storage is not configured")
        with self._storage_lock:
            storage = self._storages.get(driver)
            if storage is None:
                storage = S3BlobStorage(
                    bucket=self.settings.s3_bucket,
                    region=self.settings.s3_region,
                    access_key=self.settings.s3_access_key,
                    secret_key=self.settings.s3_secret_key,
                    endpoint=self.settings.s3_endpoint,
                )
                self._storages[driver] = storage
        return storage

    async def start_background(self) -> None:
        await self.session_sweeper.start()
        if self.settings.job_worker_enabled:
            await self.job_pool.start()

    async def close(self) -> None:
        """Stop workers, then release cache and database connections.

        Every step runs even if an earlier one fails; the failures are raised
        together as :class:`JobShutdownError`.
        """
        errors: List[BaseException] = []
        try:
            await self.job_pool.stop()
        except JobShutdownError as exc:
            errors.extend(exc.errors)
        except Exception as exc:
            errors.append(exc)
        try:
            await self.session_sweeper.stop()
        except Exception as exc:
            errors.append(exc)
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                errors.append(exc)
        try:
            await asyncio.to_thread(self.store.close)
        except Exception as exc:
            errors.append(exc)
        if errors:
            logger.error(
                "runtime_shutdown_errors",
                errors=[f"{type(e).__name__}: {e}" for e in errors],
            )
            raise JobShutdownError(errors, "runtime shutdown failed")
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the runtime
    exists, and the locked second check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Optional[Runtime]) -> None:
    """Install a prebuilt runtime (tests inject fakes this way)."""
    global runtime
    with _runtime_lock:
        runtime = instance


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton so the next access rebuilds it from the env."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = None
