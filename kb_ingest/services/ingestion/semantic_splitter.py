"""Position-aware semantic splitting.

The splitter works on the newline-joined text of all extracted lines and
keeps an offset table so every chunk can be traced back to the page and
line where it starts and ends.

Pipeline::

    lines ─► join + offset table ─► recursive split (target size)
          ─► locate each chunk ─► merge small neighbours ─► re-split oversized

Chunks are located by exact search from a moving cursor, then by a
whitespace-normalised search, and finally by proportional position, so a
chunk always receives *some* span even when the underlying splitter
rewrote its whitespace.
"""

from __future__ import annotations

import bisect

import structlog
from langchain_text_splitters import RecursiveCharacterTextSplitter

from kb_ingest.models.extraction import PositionedLine
from kb_ingest.models.rag import SplitterConfig, TextSpan

logger = structlog.get_logger(logger_name=__name__)

# Paragraph, line, sentence (CJK then ASCII), clause, word.
BASE_SEPARATORS: list[str] = [
    "\n\n",
    "\n",
    "。",
    "！",
    "？",
    ". ",
    "! ",
    "? ",
    "；",
    "，",
    "; ",
    ", ",
    " ",
]

# Oversized chunks are re-split without the paragraph separator and with a
# character-level last resort, which bounds every piece by the fine size.
FINE_SEPARATORS: list[str] = [*BASE_SEPARATORS[1:], ""]

_FINE_SIZE_RATIO = 0.6
_FINE_OVERLAP_RATIO = 0.5


# ---------------------------------------------------------------------------
# Offset table
# ---------------------------------------------------------------------------
class _OffsetTable:
    """Maps character offsets in the joined text back to source lines.

    The ``\\n`` that joins line *i* to line *i+1* belongs to line *i*.
    """

    def __init__(self, lines: list[PositionedLine]) -> None:
        self.lines = lines
        self.text = "\n".join(line.text for line in lines)
        self._starts: list[int] = []
        position = 0
        for line in lines:
            self._starts.append(position)
            position += len(line.text) + 1
        self._normalized: str | None = None
        self._normalized_map: list[int] = []

    def line_at(self, offset: int) -> PositionedLine:
        index = bisect.bisect_right(self._starts, offset) - 1
        index = min(max(index, 0), len(self.lines) - 1)
        return self.lines[index]

    def span(self, text: str, start: int, end: int) -> TextSpan:
        first = self.line_at(start)
        last = self.line_at(max(start, end - 1))
        return TextSpan(
            text=text,
            start_offset=start,
            end_offset=end,
            page=first.page,
            line=first.line,
            end_page=last.page,
            end_line=last.line,
        )

    def normalized(self) -> tuple[str, list[int]]:
        """Joined text with whitespace runs collapsed, plus a map to raw offsets."""
        if self._normalized is None:
            chars: list[str] = []
            mapping: list[int] = []
            in_space = False
            for index, char in enumerate(self.text):
                if char.isspace():
                    if in_space:
                        continue
                    in_space = True
                    chars.append(" ")
                else:
                    in_space = False
                    chars.append(char)
                mapping.append(index)
            self._normalized = "".join(chars)
            self._normalized_map = mapping
        return self._normalized, self._normalized_map

    def locate(
        self,
        chunk_text: str,
        cursor: int,
        index: int,
        total: int,
        low: int = 0,
        high: int | None = None,
    ) -> tuple[int, int]:
        """Return ``(start, end)`` raw offsets for *chunk_text*.

        Search starts at *cursor*; matches starting at or after *high* are
        rejected.  ``index``/``total`` drive the proportional fallback
        inside ``[low, high)``.
        """
        high = len(self.text) if high is None else high

        start = self.text.find(chunk_text, cursor)
        if 0 <= start < high:
            return start, start + len(chunk_text)

        normalized, mapping = self.normalized()
        needle = " ".join(chunk_text.split())
        if needle:
            norm_cursor = bisect.bisect_left(mapping, cursor)
            found = normalized.find(needle, norm_cursor)
            if found >= 0 and mapping[found] < high:
                return mapping[found], mapping[found + len(needle) - 1] + 1

        span_length = max(high - low, 0)
        start = low + (span_length * index) // max(total, 1)
        end = min(start + len(chunk_text), len(self.text))
        logger.debug("splitter_proportional_position", index=index, total=total, start=start)
        return start, max(end, start)


# ---------------------------------------------------------------------------
# SemanticSplitter
# ---------------------------------------------------------------------------
class SemanticSplitter:
    """Splits positioned lines into size-bounded, position-tagged spans.

    Sizes are measured in characters.  After :meth:`split`:

    * no span is longer than ``max_chunk_size``;
    * no two neighbouring spans produced by the merge pass are both shorter
      than ``min_chunk_size``.
    """

    def __init__(self, config: SplitterConfig | None = None) -> None:
        self._config = config or SplitterConfig()
        self._base = RecursiveCharacterTextSplitter(
            chunk_size=self._config.target_chunk_size,
            chunk_overlap=self._config.chunk_overlap,
            length_function=len,
            separators=BASE_SEPARATORS,
            keep_separator="end",
        )
        fine_size = max(1, int(self._config.target_chunk_size * _FINE_SIZE_RATIO))
        fine_overlap = min(int(self._config.chunk_overlap * _FINE_OVERLAP_RATIO), fine_size - 1)
        self._fine = RecursiveCharacterTextSplitter(
            chunk_size=fine_size,
            chunk_overlap=max(fine_overlap, 0),
            length_function=len,
            separators=FINE_SEPARATORS,
            keep_separator="end",
        )

    @property
    def config(self) -> SplitterConfig:
        return self._config

    def split(self, lines: list[PositionedLine]) -> list[TextSpan]:
        """Split *lines* into spans.  Blank input yields an empty list."""
        if not lines:
            return []
        table = _OffsetTable(lines)
        if not table.text.strip():
            return []

        pieces = [piece.strip() for piece in self._base.split_text(table.text) if piece.strip()]
        spans: list[TextSpan] = []
        cursor = 0
        for index, piece in enumerate(pieces):
            start, end = table.locate(piece, cursor, index, len(pieces))
            spans.append(table.span(piece, start, end))
            cursor = start + 1

        merged = self._merge_small(spans)
        result = self._split_oversized(merged, table)
        logger.debug(
            "semantic_split",
            chars=len(table.text),
            base_chunks=len(spans),
            merged_chunks=len(merged),
            final_chunks=len(result),
        )
        return result

    def estimate_chunk_count(self, text: str) -> int:
        """Cheap chunk-count estimate for a raw text blob (base split only)."""
        if not text.strip():
            return 1
        return len(self._base.split_text(text))

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _merge_small(self, spans: list[TextSpan]) -> list[TextSpan]:
        """Single greedy forward pass joining undersized spans with their successor."""
        merged: list[TextSpan] = []
        current: TextSpan | None = None
        for span in spans:
            if current is None:
                current = span
                continue
            if current.size < self._config.min_chunk_size:
                joined = f"{current.text}\n{span.text}"
                if len(joined) <= self._config.max_chunk_size:
                    current = TextSpan(
                        text=joined,
                        start_offset=current.start_offset,
                        end_offset=max(current.end_offset, span.end_offset),
                        page=current.page,
                        line=current.line,
                        end_page=span.end_page,
                        end_line=span.end_line,
                    )
                    continue
            merged.append(current)
            current = span
        if current is not None:
            merged.append(current)
        return merged

    def _split_oversized(self, spans: list[TextSpan], table: _OffsetTable) -> list[TextSpan]:
        result: list[TextSpan] = []
        for span in spans:
            if span.size <= self._config.max_chunk_size:
                result.append(span)
                continue
            pieces = [piece.strip() for piece in self._fine.split_text(span.text) if piece.strip()]
            cursor = span.start_offset
            for index, piece in enumerate(pieces):
                start, end = table.locate(
                    piece,
                    cursor,
                    index,
                    len(pieces),
                    low=span.start_offset,
                    high=span.end_offset,
                )
                result.append(table.span(piece, start, end))
                cursor = start + 1
            logger.debug("splitter_resplit_oversized", size=span.size, pieces=len(pieces))
        return result
