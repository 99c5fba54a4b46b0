"""Uploads root: where backing files of knowledge records live.

Files are never written in place.  A new upload is copied into the root
under a timestamp-prefixed, sanitized name and the temporary file is
removed afterwards; replacing a record's file copies over the old path the
same way.  JSON/free-text knowledge is kept under ``<root>/json/``.
"""

from __future__ import annotations

import asyncio
import json
import re
import shutil
import time
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(logger_name=__name__)

# Characters not allowed in stored file names (Windows-reserved plus controls).
_UNSAFE_FILENAME_RE = re.compile(r'[<>:"/\\|?*\x00-\x1F]')


def sanitize_filename(name: str, fallback: str = "file") -> str:
    """Replace unsafe characters with ``_``; blank results fall back to *fallback*."""
    cleaned = _UNSAFE_FILENAME_RE.sub("_", name).strip()
    return cleaned or fallback


class UploadStorage:
    """Filesystem operations on the uploads root.

    Stored paths are absolute so every consumer of ``file_url`` can open
    them directly.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def json_dir(self) -> Path:
        return self._root / "json"

    def resolve(self, stored_path: str | Path) -> Path:
        """Absolute path for a stored path that may be relative to the root."""
        path = Path(stored_path)
        if path.is_absolute():
            return path
        parts = path.parts
        if parts and parts[0] == self._root.name:
            path = Path(*parts[1:])
        return self._root / path

    async def store(self, temp_path: str | Path, original_name: str) -> Path:
        """Copy an uploaded temp file into the root, then delete the temp file."""
        safe = sanitize_filename(Path(original_name).name)
        target = self._root / f"{int(time.time() * 1000)}-{safe}"
        await asyncio.to_thread(self._copy_then_delete, Path(temp_path), target)
        logger.info("upload_stored", original_name=original_name, path=str(target))
        return target

    async def replace(self, temp_path: str | Path, existing_path: str | Path) -> Path:
        """Overwrite *existing_path* with the temp file's bytes; returns the final path."""
        source = Path(temp_path).resolve()
        target = self.resolve(existing_path)
        if source == target:
            return target
        await asyncio.to_thread(self._copy_then_delete, source, target)
        logger.info("upload_replaced", path=str(target))
        return target

    async def save_json(self, content: Any, knowledge_id: int, title: str) -> Path:
        """Write json/text knowledge to ``json/<id>_<safe title>.json``."""
        fallback = f"knowledge_{knowledge_id}"
        safe_title = sanitize_filename(title or fallback, fallback=fallback)
        target = self.json_dir / f"{knowledge_id}_{safe_title}.json"
        body = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False, indent=2)
        await asyncio.to_thread(self._write_text, target, body)
        logger.debug("json_knowledge_saved", knowledge_id=knowledge_id, path=str(target))
        return target

    async def remove(self, stored_path: str | Path | None) -> bool:
        """Delete a stored file.  A missing file is logged and reported as ``False``."""
        if not stored_path:
            return False
        path = self.resolve(stored_path)
        if not path.exists():
            logger.warning("stored_file_missing", path=str(path))
            return False
        try:
            await asyncio.to_thread(path.unlink)
        except OSError as exc:
            logger.warning("stored_file_delete_failed", path=str(path), error=str(exc))
            return False
        logger.info("stored_file_deleted", path=str(path))
        return True

    @staticmethod
    def _copy_then_delete(source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        try:
            source.unlink()
        except OSError as exc:
            logger.warning("temp_file_delete_failed", path=str(source), error=str(exc))

    @staticmethod
    def _write_text(target: Path, body: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(body, encoding="utf-8")
