"""Document text extraction and cleaning."""

from kb_ingest.services.extraction.text_cleaner import clean, clean_text
from kb_ingest.services.extraction.text_extractor import (
    SUPPORTED_FORMATS,
    TextExtractor,
    detect_format,
    lines_from_text,
)

__all__ = [
    "SUPPORTED_FORMATS",
    "TextExtractor",
    "clean",
    "clean_text",
    "detect_format",
    "lines_from_text",
]
