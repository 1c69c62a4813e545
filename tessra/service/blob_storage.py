from __future__ import annotations

import asyncio
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from tessra.logging import get_logger

if TYPE_CHECKING:
    from tessra.config import Settings

logger = get_logger(__name__)


class PathTraversalError(ValueError):
    """Raised when an object key escapes the storage root."""


class BlobStorage(Protocol):
    driver: str

    async def put(self, key: str, buffer: bytes, mime: str) -> str: ...

    async def get(self, key: str) -> Optional[bytes]: ...

    async def delete(self, key: str) -> None: ...


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


class LocalBlobStorage:
    """Objects stored as files below ``root``; missing keys read as ``None``."""

    driver = "local"

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def _put_sync(self, key: str, buffer: bytes) -> None:
        path = safe_join(self.root, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # per-writer temp name: identical content maps to the same key
        handle = tempfile.NamedTemporaryFile(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
        )
        tmp = Path(handle.name)
        try:
            with handle:
                handle.write(buffer)
            os.replace(tmp, path)
        finally:
            tmp.unlink(missing_ok=True)

    def _get_sync(self, key: str) -> Optional[bytes]:
        path = safe_join(self.root, key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _delete_sync(self, key: str) -> None:
        safe_join(self.root, key).unlink(missing_ok=True)

    async def put(self, key: str, buffer: bytes, mime: str) -> str:
        await asyncio.to_thread(self._put_sync, key, buffer)
        return key

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._get_sync, key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)


class S3BlobStorage:
    """S3 (or S3-compatible, via ``endpoint``) object storage through boto3."""

    driver = "s3"

    def __init__(
        self,
        *,
        bucket: str,
        region: str,
        access_key: str,
        secret_key: str,
        endpoint: str | None = None,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.client = client or _build_s3_client(
            region=region, access_key=access_key, secret_key=secret_key, endpoint=endpoint
        )

    async def put(self, key: str, buffer: bytes, mime: str) -> str:
        await asyncio.to_thread(
            self.client.put_object, Bucket=self.bucket, Key=key, Body=buffer, ContentType=mime
        )
        return key

    def _get_sync(self, key: str) -> Optional[bytes]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"NoSuchKey", "404", "NotFound"}:
                return None
            raise
        body = response.get("Body")
        return body.read() if body is not None else None

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._get_sync, key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)


def _build_s3_client(*, region: str, access_key: str, secret_key: str, endpoint: str | None) -> Any:
    kwargs: dict[str, Any] = {
        "region_name": region,
        "aws_access_key_id": access_key,
        "aws_secret_access_key": secret_key,
    }
    if endpoint:
        # custom endpoints (MinIO, R2) need path-style addressing
        kwargs["endpoint_url"] = endpoint
        kwargs["config"] = Config(s3={"addressing_style": "path"})
    return boto3.client("s3", **kwargs)


@dataclass(frozen=True)
class S3Status:
    configured: bool
    connected: bool
    message: str


async def check_s3_status(settings: "Settings", *, client: Any = None) -> S3Status:
    """Report whether S3 credentials are configured and the bucket is reachable."""
    if not settings.s3_configured:
        return S3Status(
            configured=False,
            connected=False,
            message=(
                "S3 credentials not configured. Set S3_BUCKET, S3_REGION, "
                "S3_ACCESS_KEY and S3_SECRET_KEY."
            ),
        )
    try:
        s3 = client or _build_s3_client(
            region=settings.s3_region,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            endpoint=settings.s3_endpoint,
        )
        await asyncio.to_thread(s3.head_bucket, Bucket=settings.s3_bucket)
    except ClientError as exc:
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        code = exc.response.get("Error", {}).get("Code")
        if status == 404 or code in {"404", "NoSuchBucket", "NotFound"}:
            message = f"Bucket '{settings.s3_bucket}' does not exist."
        elif status == 403:
            message = "Access denied. Verify the credentials have access to the bucket."
        elif status == 401:
            message = "Invalid credentials. Verify the access key and secret key."
        else:
            message = "Please verify your configuration."
        logger.warning("s3_status_check_failed", error=str(exc), code=code)
        return S3Status(configured=True, connected=False, message=f"Failed to connect to S3. {message}")
    except BotoCoreError as exc:
        logger.warning("s3_status_check_failed", error=str(exc))
        return S3Status(
            configured=True,
            connected=False,
            message="Failed to connect to S3. Please verify your configuration.",
        )
    return S3Status(configured=True, connected=True, message="S3 is configured and accessible")
