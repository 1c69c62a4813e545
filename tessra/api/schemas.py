from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
        "service_unavailable",
    }
)

# Admin-editable settings and the values each accepts
ALLOWED_SETTING_VALUES: Dict[str, List[str]] = {
    "storage_driver": ["local", "s3"],
    "default_visibility": ["public", "private"],
    "ocr_enabled": ["true", "false"],
}


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    admin_key: str = Field(..., alias="adminKey", min_length=1, max_length=1024)


class CsrfTokenResponse(BaseModel):
    token: str


class SessionStatusResponse(BaseModel):
    authenticated: bool


class LoginResponse(BaseModel):
    authenticated: bool = True
    expires_at: datetime


class PingResponse(BaseModel):
    ok: bool = True
    time: datetime
    auth_method: str


class AdminSettingsResponse(BaseModel):
    """Settings configurable from the admin UI, resolved with env fallbacks."""

    storage_driver: str
    default_visibility: str
    ocr_enabled: bool


class AdminSettingUpdateRequest(BaseModel):
    key: str = Field(..., max_length=64)
    value: str = Field(..., max_length=64)

    @model_validator(mode="after")
    def _validate_allowed(self) -> "AdminSettingUpdateRequest":
        allowed = ALLOWED_SETTING_VALUES.get(self.key)
        if allowed is None:
            raise ValueError("Invalid setting key")
        if self.value not in allowed:
            raise ValueError(
                f"Invalid value for {self.key}. Must be one of: {', '.join(allowed)}"
            )
        return self


class S3StatusResponse(BaseModel):
    configured: bool
    connected: bool
    message: str


class UploadCreatedResponse(BaseModel):
    id: str
    public_url: str
    ocr_job_id: Optional[int] = None


class UploadResponse(BaseModel):
    id: str
    object_key: str
    mime: str
    size_bytes: int
    sha256: str
    visibility: str
    storage_driver: str
    ocr_text: Optional[str] = None
    created_at: datetime


class JobResponse(BaseModel):
    id: int
    name: str
    status: str
    attempts_made: int
    max_attempts: int
    priority: int
    available_at: datetime
    last_error: Optional[str] = None
    result: Optional[Any] = None
    finished_at: Optional[datetime] = None
