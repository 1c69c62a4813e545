from __future__ import annotations

import asyncio
import re
from typing import Protocol

from tessra.logging import get_logger

logger = get_logger(__name__)

# Characters kept from engine output; anything else is recognition noise.
_NOISE = re.compile(r"[^a-zA-Z0-9\s.,!?;:'\"()\[\]{}\-_=+@#$%&*/\\|<>~`]")


class OcrError(RuntimeError):
    """The OCR engine failed or timed out."""


class OcrProvider(Protocol):
    async def extract_text(self, buffer: bytes, mime: str) -> str: ...


def clean_ocr_text(text: str) -> str:
    return _NOISE.sub("", text)


class TesseractOcr:
    """Runs the ``tesseract`` CLI on image bytes piped through stdin."""

    def __init__(self, lang: str = "eng", *, binary: str = "tesseract", timeout: float = 120.0) -> None:
        self.lang = lang
        self.binary = binary
        self.timeout = timeout

    async def extract_text(self, buffer: bytes, mime: str) -> str:
        if not mime.startswith("image/"):
            return ""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                "stdin",
                "stdout",
                "-l",
                self.lang,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise OcrError(f"OCR engine not found: {self.binary}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(buffer), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise OcrError(f"OCR timed out after {self.timeout}s") from exc
        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            logger.warning("ocr_engine_failed", returncode=proc.returncode, stderr=message[:500])
            raise OcrError(f"tesseract exited with status {proc.returncode}")
        text = clean_ocr_text(stdout.decode("utf-8", errors="replace"))
        logger.info("ocr_text_extracted", chars=len(text), lang=self.lang)
        return text
