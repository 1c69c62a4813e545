from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Path, Request, Response, UploadFile

from tessra.api.schemas import (
    AdminSettingsResponse,
    AdminSettingUpdateRequest,
    CsrfTokenResponse,
    Envelope,
    JobResponse,
    LoginRequest,
    LoginResponse,
    PingResponse,
    S3StatusResponse,
    SessionStatusResponse,
    UploadCreatedResponse,
    UploadResponse,
)
from tessra.logging import get_logger, sanitize_error_message
from tessra.service.auth import SESSION_COOKIE, AdminPrincipal
from tessra.service.blob_storage import check_s3_status
from tessra.service.errors import (
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from tessra.service.runtime import get_runtime
from tessra.storage.models import Job, Upload, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
public_router = APIRouter()

LOGIN_NAMESPACE = "login"


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _set_session_cookie(response: Response, token: str, *, max_age: int, secure: bool) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def _clear_session_cookie(response: Response, *, secure: bool) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/", secure=secure, httponly=True, samesite="lax")


async def require_admin(request: Request) -> AdminPrincipal:
    """Dependency for every administrative endpoint."""
    return await get_runtime().auth.require_admin(request)


async def require_csrf(
    request: Request, principal: AdminPrincipal = Depends(require_admin)
) -> AdminPrincipal:
    """Admin check first, then redeem the single-use CSRF token."""
    await get_runtime().csrf.require(request)
    return principal


def _upload_to_response(upload: Upload) -> UploadResponse:
    return UploadResponse(
        id=upload.id,
        object_key=upload.object_key,
        mime=upload.mime,
        size_bytes=upload.size_bytes,
        sha256=upload.sha256,
        visibility=upload.visibility,
        storage_driver=upload.storage_driver,
        ocr_text=upload.ocr_text,
        created_at=upload.created_at,
    )


def _job_to_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        name=job.name,
        status=job.status,
        attempts_made=job.attempts_made,
        max_attempts=job.max_attempts,
        priority=job.priority,
        available_at=job.available_at,
        last_error=sanitize_error_message(job.last_error) if job.last_error else None,
        result=job.result,
        finished_at=job.finished_at,
    )


@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
async def issue_csrf_token():
    """Issue a single-use CSRF token valid for one hour.

    Raises:
        503: If Redis is unavailable (CSRF protection fails closed)
    """
    token = await get_runtime().csrf.issue()
    return Envelope(status="ok", data=CsrfTokenResponse(token=token))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange the admin key for a session cookie.

    Creating a session logs out every other browser. Attempts are rate
    limited per client IP; a successful login forgives earlier failures.

    Raises:
        401: If the admin key is wrong
        429: If too many attempts were made from this IP
        500: If ADMIN_TOKEN is not configured
    """
    runtime = get_runtime()
    settings = runtime.settings
    client_ip = _client_ip(request)
    limit = await runtime.rate_limiter.check(
        client_ip,
        LOGIN_NAMESPACE,
        settings.login_rate_limit_attempts,
        settings.login_rate_limit_window_seconds,
    )
    if limit.limited:
        raise RateLimitedError(
            "Too many login attempts. Try again later.",
            reset_at=limit.reset_at,
        )
    if not runtime.auth.check_admin_key(body.admin_key):
        logger.warning("admin_login_failed", client_ip=client_ip, remaining=limit.remaining)
        raise AuthenticationError("Invalid admin key", detail={"remaining": limit.remaining})

    await runtime.rate_limiter.reset(client_ip, LOGIN_NAMESPACE)
    token = await runtime.sessions.create()
    max_age = int(runtime.sessions.absolute_ttl.total_seconds())
    _set_session_cookie(response, token, max_age=max_age, secure=settings.cookie_secure)
    logger.info("admin_login_succeeded", client_ip=client_ip)
    return Envelope(
        status="ok",
        data=LoginResponse(expires_at=utcnow() + runtime.sessions.absolute_ttl),
    )


@router.get("/auth/login/status", response_model=Envelope, tags=["auth"])
async def login_rate_limit_status(request: Request):
    """Remaining login attempts for the calling IP, without consuming one."""
    runtime = get_runtime()
    status = await runtime.rate_limiter.status(
        _client_ip(request),
        LOGIN_NAMESPACE,
        runtime.settings.login_rate_limit_attempts,
        runtime.settings.login_rate_limit_window_seconds,
    )
    return Envelope(
        status="ok",
        data={
            "limited": status.limited,
            "remaining": status.remaining,
            "reset_at": status.reset_at,
        },
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    token = request.cookies.get(SESSION_COOKIE)
    await runtime.sessions.delete(token)
    _clear_session_cookie(response, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data={"success": True})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session_status(request: Request, response: Response):
    """Report whether the session cookie is live; clears it when it is not."""
    runtime = get_runtime()
    token: Optional[str] = request.cookies.get(SESSION_COOKIE)
    authenticated = await runtime.sessions.validate(token)
    if token and not authenticated:
        _clear_session_cookie(response, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data=SessionStatusResponse(authenticated=authenticated))


@router.get("/admin/ping", response_model=Envelope, tags=["admin"])
async def admin_ping(principal: AdminPrincipal = Depends(require_admin)):
    return Envelope(
        status="ok", data=PingResponse(time=utcnow(), auth_method=principal.method)
    )


@router.get("/admin/settings", response_model=Envelope, tags=["admin"])
async def get_admin_settings(principal: AdminPrincipal = Depends(require_admin)):
    """Resolve admin-editable settings: database value, else the env default."""
    uploads = get_runtime().uploads
    return Envelope(
        status="ok",
        data=AdminSettingsResponse(
            storage_driver=await uploads.storage_driver(),
            default_visibility=await uploads.default_visibility(),
            ocr_enabled=await uploads.ocr_enabled(),
        ),
    )


@router.patch("/admin/settings", response_model=Envelope, tags=["admin"])
async def update_admin_setting(
    body: AdminSettingUpdateRequest,
    principal: AdminPrincipal = Depends(require_csrf),
):
    """Update one admin setting.

    Switching to S3 requires configured credentials and a reachable bucket.

    Raises:
        400: If the key or value is not allowed, or S3 is not usable
        403: If the CSRF token is missing, used or expired
    """
    runtime = get_runtime()
    if body.key == "storage_driver" and body.value == "s3":
        status = await check_s3_status(runtime.settings)
        if not (status.configured and status.connected):
            raise ValidationError(status.message)
    await runtime.settings_cache.set(body.key, body.value)
    logger.info("admin_setting_changed", key=body.key, value=body.value, auth_method=principal.method)
    return Envelope(status="ok", data={"success": True, "key": body.key, "value": body.value})


@router.post("/admin/settings/cache/clear", response_model=Envelope, tags=["admin"])
async def clear_settings_cache(principal: AdminPrincipal = Depends(require_csrf)):
    removed = await get_runtime().settings_cache.clear()
    return Envelope(status="ok", data={"cleared": removed})


@router.get("/admin/settings/s3-status", response_model=Envelope, tags=["admin"])
async def s3_status(principal: AdminPrincipal = Depends(require_admin)):
    status = await check_s3_status(get_runtime().settings)
    return Envelope(
        status="ok",
        data=S3StatusResponse(
            configured=status.configured,
            connected=status.connected,
            message=status.message,
        ),
    )


@router.post("/upload", response_model=Envelope, status_code=201, tags=["uploads"])
async def upload_file(
    request: Request,
    file: UploadFile = File(...),
    principal: AdminPrincipal = Depends(require_csrf),
):
    """Store a file and queue OCR when it is an image and OCR is enabled.

    Objects are content addressed by SHA-256, so re-uploading identical bytes
    overwrites the same object.
    """
    buffer = await file.read()
    result = await get_runtime().uploads.ingest(buffer, file.content_type)
    public_url = str(request.url_for("read_public_upload", upload_id=result.upload.id))
    return Envelope(
        status="ok",
        data=UploadCreatedResponse(
            id=result.upload.id,
            public_url=public_url,
            ocr_job_id=result.ocr_job.id if result.ocr_job else None,
        ),
    )


@router.get("/admin/uploads/{upload_id}", response_model=Envelope, tags=["admin"])
async def get_upload(
    upload_id: str = Path(..., max_length=64),
    principal: AdminPrincipal = Depends(require_admin),
):
    upload = await get_runtime().uploads.get(upload_id)
    return Envelope(status="ok", data=_upload_to_response(upload))


@router.get("/admin/jobs/{job_id}", response_model=Envelope, tags=["admin"])
async def get_job(
    job_id: int = Path(..., ge=1),
    principal: AdminPrincipal = Depends(require_admin),
):
    job = await get_runtime().job_queue.get(job_id)
    if job is None:
        raise NotFoundError("Job not found")
    return Envelope(status="ok", data=_job_to_response(job))


@public_router.get("/uploads/{upload_id}", name="read_public_upload", tags=["uploads"])
async def read_public_upload(upload_id: str = Path(..., max_length=64)):
    """Serve a public upload's bytes; private and unknown uploads are 404."""
    upload, buffer = await get_runtime().uploads.read_public(upload_id)
    return Response(
        content=buffer,
        media_type=upload.mime,
        headers={"Cache-Control": "public, max-age=31536000"},
    )
