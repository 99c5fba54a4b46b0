"""Line-level text cleaning.

:func:`clean` never changes how many lines there are or their order; it
maps one line to one (possibly empty) line.  Callers decide whether to drop
empty results.  OCR output additionally goes through a character whitelist
that removes the stray symbols engines hallucinate from scan noise.
"""

from __future__ import annotations

import re

_ZERO_WIDTH_RE = re.compile("[\N{ZERO WIDTH SPACE}-\N{ZERO WIDTH JOINER}\N{WORD JOINER}\N{ZERO WIDTH NO-BREAK SPACE}]")
_CONTROL_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# NBSP, ideographic space and the other Unicode space separators.
_EXOTIC_SPACE_RE = re.compile(
    "[\N{NO-BREAK SPACE}\N{OGHAM SPACE MARK}\N{EN QUAD}-\N{HAIR SPACE}"
    "\N{NARROW NO-BREAK SPACE}\N{MEDIUM MATHEMATICAL SPACE}\N{IDEOGRAPHIC SPACE}]"
)
_WHITESPACE_RE = re.compile(r"\s+")

# CJK ideographs, ASCII alphanumerics, full-width alphanumerics, whitespace and
# common CJK / ASCII punctuation.
_OCR_DISALLOWED_RE = re.compile(
    "[^"
    "㐀-䶿一-鿿"
    "a-zA-Z0-9０-９Ａ-Ｚａ-ｚ"
    r"\s"
    "，。！？；：、“”‘’（）"
    "【】《》〈〉「」『』·—…～％"
    r".,!?;:'\"()\[\]<>\-_/\\@#%&*+=~|"
    "]"
)


def clean(line: str | None, is_ocr_source: bool = False) -> str:
    """Normalise one line of extracted text.

    Strips zero-width and control characters, folds exotic spaces to a
    plain space, collapses whitespace runs and trims.  With
    *is_ocr_source*, characters outside the OCR whitelist are removed too.
    """
    if not line:
        return ""
    text = _ZERO_WIDTH_RE.sub("", line)
    text = _CONTROL_RE.sub("", text)
    text = _EXOTIC_SPACE_RE.sub(" ", text)
    if is_ocr_source:
        text = _OCR_DISALLOWED_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def clean_text(text: str | None, is_ocr_source: bool = False) -> str:
    """Clean a multi-line blob line by line, dropping lines that end up empty."""
    if not text:
        return ""
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    cleaned = (clean(line, is_ocr_source) for line in lines)
    return "\n".join(line for line in cleaned if line)
