"""Abstract base class for OCR service providers.

The text extractor falls back to OCR for PDFs without a usable text layer:
each page is rasterized to PNG and handed to the configured provider one
page at a time.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations: VisionOCRProvider, TesseractOCRProvider
# Located in: kb_ingest/providers/ocr/
class IOCRProvider(ABC):
    """Contract for OCR engines that turn a page image into text."""

    @abstractmethod
    async def extract_page_text(self, image_data: bytes, page_number: int) -> str:
        """Recognise the text on one rasterized page.

        Parameters
        ----------
        image_data:
            PNG bytes of the rendered page.
        page_number:
            1-based page number, used for logging.

        Returns
        -------
        str
            Recognised text with line breaks preserved.  May be empty for a
            blank page.

        Raises
        ------
        kb_ingest.utils.errors.OCRExtractionError
            If the engine fails on this page.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier, e.g. ``"tesseract"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the engine is configured and its binaries or
        credentials are present."""
