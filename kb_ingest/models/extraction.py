"""Extraction output model.

A :class:`PositionedLine` is the unit the extractor hands to the splitter.
It is never persisted; its page/line numbers survive only as the position
span stamped onto each chunk's metadata.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class PositionedLine(BaseModel):
    """One line of document text tagged with its 1-based page and line."""

    model_config = ConfigDict(frozen=True)

    page: int = Field(ge=1, description="1-based page (or sheet) number.")
    line: int = Field(ge=1, description="1-based line number within the page.")
    text: str = Field(default="", description="Cleaned line text; may be empty.")


def placeholder_lines() -> list[PositionedLine]:
    """Return the single empty line used for documents with no text."""
    return [PositionedLine(page=1, line=1, text="")]
