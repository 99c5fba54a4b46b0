"""OCR provider adapters used by the PDF OCR fallback."""

from kb_ingest.providers.ocr.tesseract_provider import TesseractOCRProvider
from kb_ingest.providers.ocr.vision_provider import VisionOCRProvider

__all__ = ["TesseractOCRProvider", "VisionOCRProvider"]
