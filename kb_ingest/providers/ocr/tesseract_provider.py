"""Tesseract OCR provider.

Runs pytesseract in a worker thread so the event loop keeps serving other
coroutines while a page is recognised.  Requires the ``tesseract`` binary
and the configured language packs (``chi_sim+eng`` by default).
"""

from __future__ import annotations

import asyncio
import io
import time

import pytesseract
from PIL import Image

from kb_ingest.config.settings import Settings
from kb_ingest.interfaces.ocr_provider import IOCRProvider
from kb_ingest.utils.errors import OCRExtractionError
from kb_ingest.utils.logging import get_logger


class TesseractOCRProvider(IOCRProvider):
    """OCR provider backed by Google Tesseract via pytesseract."""

    def __init__(self, settings: Settings) -> None:
        self._lang = settings.ocr_tesseract_lang
        self._logger = get_logger(__name__)

    async def extract_page_text(self, image_data: bytes, page_number: int) -> str:
        start = time.perf_counter()
        try:
            text = await asyncio.to_thread(self._recognise, image_data)
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as exc:
            raise OCRExtractionError(
                message=f"Tesseract failed on page {page_number}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        self._logger.info(
            "tesseract_ocr_page",
            page=page_number,
            lang=self._lang,
            chars=len(text),
            elapsed_s=round(time.perf_counter() - start, 2),
        )
        return text

    def _recognise(self, image_data: bytes) -> str:
        with Image.open(io.BytesIO(image_data)) as img:
            # --psm 3: fully automatic page segmentation.
            return pytesseract.image_to_string(img.convert("RGB"), lang=self._lang, config="--psm 3")

    def get_provider_name(self) -> str:
        return "tesseract"

    def is_available(self) -> bool:
        """Return ``True`` when the tesseract binary can be executed."""
        try:
            pytesseract.get_tesseract_version()
        except (pytesseract.TesseractNotFoundError, OSError):
            return False
        return True
