from __future__ import annotations

import asyncio
import hashlib
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from tessra.config import Settings, StorageDriver, Visibility
from tessra.logging import get_logger
from tessra.service.blob_storage import BlobStorage
from tessra.service.errors import NotFoundError, ValidationError
from tessra.service.jobs import JobQueue
from tessra.service.ocr import OcrProvider
from tessra.service.settings_cache import SettingsCache
from tessra.storage.models import Job, Upload

if TYPE_CHECKING:
    from tessra.storage.memory import MemoryStore
    from tessra.storage.postgres import PostgresStore

logger = get_logger(__name__)

OCR_JOB_NAME = "ocr:process"
OCR_JOB_ATTEMPTS = 3

StorageResolver = Callable[[str], BlobStorage]

_EXTENSION_SAFE = re.compile(r"[^a-z0-9]")


def object_key_for(digest: str, mime: str) -> str:
    """Content-addressed key: ``uploads/<h[:2]>/<h>.<ext>``."""
    subtype = mime.split("/", 1)[1] if "/" in mime else ""
    extension = _EXTENSION_SAFE.sub("", subtype.split("+", 1)[0].lower()) or "bin"
    return f"uploads/{digest[:2]}/{digest}.{extension}"


@dataclass
class IngestResult:
    upload: Upload
    ocr_job: Optional[Job] = None


class UploadService:
    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        settings_cache: SettingsCache,
        queue: JobQueue,
        resolve_storage: StorageResolver,
        config: Settings,
    ) -> None:
        self.store = store
        self.settings = settings_cache
        self.queue = queue
        self.resolve_storage = resolve_storage
        self.config = config

    async def storage_driver(self) -> str:
        return await self.settings.get("storage_driver", self.config.storage_driver.value)

    async def default_visibility(self) -> str:
        value = await self.settings.get(
            "default_visibility", self.config.default_visibility.value
        )
        if value not in {v.value for v in Visibility}:
            logger.warning("default_visibility_invalid", value=value)
            return Visibility.PRIVATE.value
        return value

    async def ocr_enabled(self) -> bool:
        fallback = "true" if self.config.ocr_enabled else "false"
        return (await self.settings.get("ocr_enabled", fallback)) == "true"

    async def ingest(self, buffer: bytes, mime: Optional[str]) -> IngestResult:
        """Store the bytes, record the upload and queue OCR for images."""
        if not buffer:
            raise ValidationError("file required")
        mime = mime or "application/octet-stream"
        digest = hashlib.sha256(buffer).hexdigest()
        key = object_key_for(digest, mime)

        driver = await self.storage_driver()
        if driver not in {d.value for d in StorageDriver}:
            logger.warning("storage_driver_invalid", value=driver)
            driver = self.config.storage_driver.value
        await self.resolve_storage(driver).put(key, buffer, mime)

        upload = await asyncio.to_thread(
            self.store.create_upload,
            object_key=key,
            mime=mime,
            size_bytes=len(buffer),
            sha256=digest,
            visibility=await self.default_visibility(),
            storage_driver=driver,
        )
        logger.info(
            "upload_stored",
            upload_id=upload.id,
            size_bytes=upload.size_bytes,
            mime=mime,
            driver=driver,
        )

        job = None
        if mime.startswith("image/") and await self.ocr_enabled():
            job = await self.queue.enqueue(
                OCR_JOB_NAME,
                {
                    "upload_id": upload.id,
                    "object_key": key,
                    "mime": mime,
                    "storage_driver": driver,
                },
                attempts=OCR_JOB_ATTEMPTS,
            )
        return IngestResult(upload=upload, ocr_job=job)

    async def get(self, upload_id: str) -> Upload:
        upload = await asyncio.to_thread(self.store.get_upload, upload_id)
        if upload is None:
            raise NotFoundError("Upload not found")
        return upload

    async def read_public(self, upload_id: str) -> tuple[Upload, bytes]:
        """Return a public upload and its bytes; private and missing look alike."""
        upload = await asyncio.to_thread(self.store.get_upload, upload_id)
        if upload is None or upload.visibility != Visibility.PUBLIC.value:
            raise NotFoundError("Upload not found")
        buffer = await self.resolve_storage(upload.storage_driver).get(upload.object_key)
        if buffer is None:
            raise NotFoundError("File not found in storage")
        return upload, buffer


def build_ocr_processor(
    store: "PostgresStore | MemoryStore",
    resolve_storage: StorageResolver,
    ocr: OcrProvider,
) -> Callable[[Dict[str, Any]], Any]:
    """Processor for ``ocr:process`` jobs.

    The text is written with an overwrite, so a redelivered job leaves the
    same result as a single run.
    """

    async def process_ocr(payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            upload_id = payload["upload_id"]
            object_key = payload["object_key"]
            mime = payload["mime"]
        except KeyError as exc:
            raise ValueError(f"ocr job payload missing {exc.args[0]}") from exc
        driver = payload.get("storage_driver", StorageDriver.LOCAL.value)

        buffer = await resolve_storage(driver).get(object_key)
        if buffer is None:
            raise FileNotFoundError(f"object not found in storage: {object_key}")

        text = await ocr.extract_text(buffer, mime)
        updated = await asyncio.to_thread(store.set_upload_ocr_text, upload_id, text)
        if not updated:
            logger.warning("ocr_upload_missing", upload_id=upload_id)
        logger.info("ocr_completed", upload_id=upload_id, text_length=len(text))
        return {"upload_id": upload_id, "text_length": len(text)}

    return process_ocr
