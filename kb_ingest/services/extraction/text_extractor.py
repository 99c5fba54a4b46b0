"""Format-aware text extraction with page/line positions.

Every reader returns :class:`PositionedLine` objects whose ``page`` and
``line`` point back into the source file:

* PDF  -- PyMuPDF text layer, one page per PDF page.  Scanned PDFs (text
  layer under ``min_text_chars`` characters) fall back to per-page OCR.
* DOCX -- python-docx paragraphs and table rows in body order, page 1.
* XLSX -- openpyxl, one page per sheet, one line per non-empty row.
* MD / TXT -- one line per source line, page 1.

Line numbers are the 1-based index in the source, so they stay stable even
though lines that clean down to nothing are dropped.  The result is never
empty: a document without text yields a single empty placeholder line.
"""

from __future__ import annotations

import asyncio
import re
import zipfile
from pathlib import Path

import docx
import fitz  # PyMuPDF
import openpyxl
import structlog
from docx.opc.exceptions import PackageNotFoundError
from docx.table import Table
from docx.text.paragraph import Paragraph
from openpyxl.utils.exceptions import InvalidFileException

from kb_ingest.interfaces.ocr_provider import IOCRProvider
from kb_ingest.models.extraction import PositionedLine, placeholder_lines
from kb_ingest.services.extraction.text_cleaner import clean
from kb_ingest.utils.errors import ExtractionError, OCRExtractionError, UnsupportedFormatError

logger = structlog.get_logger(logger_name=__name__)

SUPPORTED_FORMATS = frozenset({"pdf", "docx", "xlsx", "md", "txt"})

_FORMAT_ALIASES: dict[str, str] = {
    "markdown": "md",
    "text": "txt",
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "text/markdown": "md",
    "text/plain": "txt",
}

_FRONT_MATTER_RE = re.compile(r"\A---\r?\n.*?\r?\n---[ \t]*(\r?\n|\Z)", re.DOTALL)


def detect_format(path: str | Path, format_hint: str | None = None) -> str:
    """Resolve a format tag from a hint (extension, filename or MIME type) or the path.

    Raises:
        UnsupportedFormatError: If neither resolves to a supported format.
    """
    candidates: list[str] = []
    if format_hint:
        hint = format_hint.strip().lower()
        candidates.append(_FORMAT_ALIASES.get(hint, hint))
        if "." in hint and "/" not in hint:
            candidates.append(Path(hint).suffix.lstrip("."))
    candidates.append(Path(path).suffix.lower().lstrip("."))

    for candidate in candidates:
        fmt = _FORMAT_ALIASES.get(candidate, candidate)
        if fmt in SUPPORTED_FORMATS:
            return fmt
    raise UnsupportedFormatError(
        message=f"Unsupported document format for {Path(path).name!r} (hint={format_hint!r})"
    )


def lines_from_text(text: str | None, is_ocr_source: bool = False, page: int = 1) -> list[PositionedLine]:
    """Split a text blob into cleaned positioned lines on one page."""
    return [
        PositionedLine(page=page, line=index, text=cleaned)
        for index, raw in enumerate((text or "").splitlines(), start=1)
        if (cleaned := clean(raw, is_ocr_source))
    ]


# ---------------------------------------------------------------------------
# Blocking readers (run in worker threads)
# ---------------------------------------------------------------------------

def _read_pdf_pages(path: Path) -> list[str]:
    try:
        with fitz.open(str(path)) as doc:
            return [page.get_text("text") for page in doc]
    except (RuntimeError, ValueError, OSError) as exc:
        raise ExtractionError(message=f"Cannot read PDF {path.name}: {exc}", provider_name="pymupdf") from exc


def _render_pdf_page(path: Path, page_index: int, dpi: int) -> bytes:
    try:
        with fitz.open(str(path)) as doc:
            pixmap = doc.load_page(page_index).get_pixmap(dpi=dpi)
            return pixmap.tobytes("png")
    except (RuntimeError, ValueError, OSError) as exc:
        raise ExtractionError(
            message=f"Cannot rasterize page {page_index + 1} of {path.name}: {exc}",
            provider_name="pymupdf",
        ) from exc


def _read_docx_lines(path: Path) -> list[str]:
    """Cleaned body lines in document order; table rows keep tab-separated cells."""
    try:
        document = docx.Document(str(path))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError, OSError) as exc:
        raise ExtractionError(message=f"Cannot read DOCX {path.name}: {exc}", provider_name="python-docx") from exc

    lines: list[str] = []
    for child in document.element.body.iterchildren():
        tag = child.tag.rsplit("}", 1)[-1]
        if tag == "p":
            lines.extend(clean(text) for text in Paragraph(child, document).text.split("\n"))
        elif tag == "tbl":
            for row in Table(child, document).rows:
                cells = [clean(cell.text) for cell in row.cells]
                while cells and not cells[-1]:
                    cells.pop()
                lines.append("\t".join(cells))
    return lines


def _read_xlsx_rows(path: Path) -> list[tuple[int, int, str]]:
    """Return ``(sheet_number, row_number, text)`` for each non-empty row."""
    try:
        workbook = openpyxl.load_workbook(str(path), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as exc:
        raise ExtractionError(message=f"Cannot read XLSX {path.name}: {exc}", provider_name="openpyxl") from exc

    rows: list[tuple[int, int, str]] = []
    try:
        for sheet_number, sheet in enumerate(workbook.worksheets, start=1):
            for row_number, values in enumerate(sheet.iter_rows(values_only=True), start=1):
                cells = [clean("" if value is None else str(value)) for value in values]
                while cells and not cells[-1]:
                    cells.pop()
                if not cells:
                    continue
                rows.append((sheet_number, row_number, f"{sheet.title}: " + "\t".join(cells)))
    finally:
        workbook.close()
    return rows


def _read_plain_text(path: Path) -> str:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ExtractionError(message=f"Cannot read {path.name}: {exc}") from exc
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        # Legacy Chinese encodings are the common non-UTF-8 case.
        return data.decode("gb18030", errors="replace")


def _strip_front_matter(text: str) -> str:
    """Blank out YAML front matter, keeping its line count."""
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return text
    blanked = "\n" * match.group(0).count("\n")
    return blanked + text[match.end():]


# ---------------------------------------------------------------------------
# TextExtractor
# ---------------------------------------------------------------------------

class TextExtractor:
    """Turns a stored document into cleaned, positioned lines.

    Parameters
    ----------
    ocr_provider:
        Engine used for PDFs without a usable text layer.  ``None`` disables
        the fallback.
    min_text_chars:
        Text layers shorter than this (after stripping) trigger OCR.
    ocr_dpi:
        Rasterization resolution for OCR pages.
    ocr_timeout:
        Seconds allowed for one page's OCR call.
    rasterize_timeout:
        Seconds allowed for rendering one page.
    ocr_concurrency:
        Pages OCR'd at once; ``1`` processes pages sequentially.
    ocr_max_pages:
        Only the first *n* pages are OCR'd; ``0`` means all.
    """

    def __init__(
        self,
        ocr_provider: IOCRProvider | None = None,
        *,
        min_text_chars: int = 50,
        ocr_dpi: int = 200,
        ocr_timeout: float = 120.0,
        rasterize_timeout: float = 30.0,
        ocr_concurrency: int = 1,
        ocr_max_pages: int = 0,
    ) -> None:
        self._ocr = ocr_provider
        self._min_text_chars = min_text_chars
        self._ocr_dpi = ocr_dpi
        self._ocr_timeout = ocr_timeout
        self._rasterize_timeout = rasterize_timeout
        self._ocr_concurrency = max(1, ocr_concurrency)
        self._ocr_max_pages = max(0, ocr_max_pages)

    async def extract_with_position(
        self, path: str | Path, format_hint: str | None = None
    ) -> list[PositionedLine]:
        """Extract cleaned lines from *path*.

        Raises:
            UnsupportedFormatError: Unknown format.
            ExtractionError: Unreadable file, or a scanned PDF whose OCR
                failed on page one with no other text anywhere.
        """
        file_path = Path(path)
        fmt = detect_format(file_path, format_hint)
        if not file_path.is_file():
            raise ExtractionError(message=f"File not found: {file_path}")

        if fmt == "pdf":
            lines = await self._extract_pdf(file_path)
        elif fmt == "docx":
            docx_lines = await asyncio.to_thread(_read_docx_lines, file_path)
            lines = self._number_lines(docx_lines)
        elif fmt == "xlsx":
            rows = await asyncio.to_thread(_read_xlsx_rows, file_path)
            lines = [PositionedLine(page=s, line=r, text=t) for s, r, t in rows]
        elif fmt == "md":
            text = await asyncio.to_thread(_read_plain_text, file_path)
            lines = lines_from_text(_strip_front_matter(text))
        else:
            text = await asyncio.to_thread(_read_plain_text, file_path)
            lines = lines_from_text(text)

        if not lines:
            logger.warning("extraction_empty", path=str(file_path), format=fmt)
            return placeholder_lines()

        logger.info(
            "extraction_complete",
            path=str(file_path),
            format=fmt,
            lines=len(lines),
            pages=max(line.page for line in lines),
        )
        return lines

    @staticmethod
    def _number_lines(cleaned_lines: list[str], page: int = 1) -> list[PositionedLine]:
        return [
            PositionedLine(page=page, line=index, text=text)
            for index, text in enumerate(cleaned_lines, start=1)
            if text
        ]

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    async def _extract_pdf(self, path: Path) -> list[PositionedLine]:
        pages = await asyncio.to_thread(_read_pdf_pages, path)
        layer_lines = [
            line
            for number, page_text in enumerate(pages, start=1)
            for line in lines_from_text(page_text, page=number)
        ]
        layer_chars = sum(len(page_text.strip()) for page_text in pages)
        if layer_lines and layer_chars >= self._min_text_chars:
            return layer_lines

        logger.info(
            "pdf_text_layer_insufficient",
            path=str(path),
            pages=len(pages),
            text_chars=layer_chars,
            threshold=self._min_text_chars,
        )
        if not pages:
            return layer_lines
        if self._ocr is None:
            logger.warning("pdf_ocr_unavailable", path=str(path))
            return layer_lines

        ocr_lines = await self._ocr_pdf(path, len(pages), text_layer_empty=not layer_lines)
        if any(line.text for line in ocr_lines):
            return ocr_lines
        # OCR found nothing; a short text layer still beats empty pages.
        return layer_lines or ocr_lines

    async def _ocr_pdf(
        self, path: Path, page_count: int, text_layer_empty: bool
    ) -> list[PositionedLine]:
        if self._ocr_max_pages:
            page_count = min(page_count, self._ocr_max_pages)
        semaphore = asyncio.Semaphore(self._ocr_concurrency)

        async def ocr_page(number: int) -> str | None:
            async with semaphore:
                try:
                    image = await asyncio.wait_for(
                        asyncio.to_thread(_render_pdf_page, path, number - 1, self._ocr_dpi),
                        timeout=self._rasterize_timeout,
                    )
                    return await asyncio.wait_for(
                        self._ocr.extract_page_text(image, number),
                        timeout=self._ocr_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning("ocr_page_timeout", path=str(path), page=number)
                except (OCRExtractionError, ExtractionError) as exc:
                    logger.warning("ocr_page_failed", path=str(path), page=number, error=str(exc))
                return None

        results = await asyncio.gather(*(ocr_page(n) for n in range(1, page_count + 1)))

        lines: list[PositionedLine] = []
        failed_pages: list[int] = []
        for number, text in enumerate(results, start=1):
            if text is None:
                failed_pages.append(number)
                lines.append(PositionedLine(page=number, line=1, text=""))
                continue
            lines.extend(lines_from_text(text, is_ocr_source=True, page=number))

        other_text = any(line.text for line in lines if line.page != 1)
        if text_layer_empty and 1 in failed_pages and not other_text:
            raise ExtractionError(
                message=f"OCR failed on the first page of {path.name} and no other text was found",
                provider_name=self._ocr.get_provider_name(),
            )

        logger.info(
            "pdf_ocr_complete",
            path=str(path),
            pages=page_count,
            failed_pages=failed_pages,
            lines=sum(1 for line in lines if line.text),
            provider=self._ocr.get_provider_name(),
        )
        return lines
