from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tessra.logging import get_logger

logger = get_logger(__name__)


class StorageDriver(str, Enum):
    """Blob storage backends an upload can be written to."""

    LOCAL = "local"
    S3 = "s3"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment (and an optional .env file)."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tessra", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    admin_token: str | None = env_field(
        None,
        "ADMIN_TOKEN",
        description="Shared admin credential for login and bearer authentication",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow test-only hooks such as resetting the runtime singleton",
    )
    # Blob storage (env values are fallbacks - the admin UI can switch drivers)
    storage_driver: StorageDriver = env_field(StorageDriver.LOCAL, "STORAGE_DRIVER")
    storage_local_root: str = env_field(".data/uploads", "LOCAL_ROOT")
    s3_endpoint: str | None = env_field(None, "S3_ENDPOINT")
    s3_region: str = env_field("us-east-1", "S3_REGION")
    s3_bucket: str = env_field("", "S3_BUCKET")
    s3_access_key: str = env_field("", "S3_ACCESS_KEY")
    s3_secret_key: str = env_field("", "S3_SECRET_KEY")
    default_visibility: Visibility = env_field(
        Visibility.PRIVATE,
        "DEFAULT_VISIBILITY",
        description="Visibility of new uploads (overridable via admin UI)",
    )
    # OCR
    ocr_enabled: bool = env_field(
        False,
        "OCR_ENABLED",
        description="Extract text from image uploads (overridable via admin UI)",
    )
    ocr_lang: str = env_field("eng", "OCR_LANG")
    ocr_binary: str = env_field("tesseract", "OCR_TESSERACT_BINARY")
    ocr_timeout_seconds: float = env_field(120.0, "OCR_TIMEOUT_SECONDS")
    # Job worker pool
    job_worker_enabled: bool = env_field(True, "JOBS_WORKER_ENABLED")
    job_concurrency: int = env_field(5, "JOBS_CONCURRENCY")
    job_poll_interval_seconds: float = env_field(1.0, "JOBS_POLL_INTERVAL")
    job_lease_seconds: int = env_field(
        60,
        "JOBS_LEASE_SECONDS",
        description="How long a claimed job stays invisible to other workers without a heartbeat",
    )
    job_shutdown_grace_seconds: float = env_field(30.0, "JOBS_SHUTDOWN_GRACE_SECONDS")
    job_max_stalled_count: int = env_field(
        1,
        "JOBS_MAX_STALLED_COUNT",
        description="Expired leases a job may survive before it is failed as stalled",
    )
    # Sessions and login throttling
    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL"
    )
    login_rate_limit_attempts: int = env_field(5, "LOGIN_RATE_LIMIT_ATTEMPTS")
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("storage_driver")
    @classmethod
    def _validate_storage_driver(cls, value: StorageDriver) -> StorageDriver:
        return StorageDriver(value)

    @field_validator("default_visibility")
    @classmethod
    def _validate_visibility(cls, value: Visibility) -> Visibility:
        return Visibility(value)

    @field_validator("admin_token")
    @classmethod
    def _normalize_admin_token(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            logger.warning("admin_token_empty", message="ADMIN_TOKEN is set but blank")
            return None
        return value

    @field_validator("job_concurrency")
    @classmethod
    def _validate_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("JOBS_CONCURRENCY must be at least 1")
        return value

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @property
    def s3_configured(self) -> bool:
        return bool(
            self.s3_bucket and self.s3_region and self.s3_access_key and self.s3_secret_key
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
