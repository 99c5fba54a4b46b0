"""Unit tests for UploadStorage (the uploads root)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from kb_ingest.services.upload_storage import UploadStorage, sanitize_filename


def _temp_file(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / "incoming" / name
    path.parent.mkdir(exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


class TestSanitizeFilename:
    def test_unsafe_characters_replaced(self) -> None:
        assert sanitize_filename('a<b>:c"d|e?.pdf') == "a_b__c_d_e_.pdf"

    def test_blank_uses_fallback(self) -> None:
        assert sanitize_filename("  ", fallback="knowledge_3") == "knowledge_3"

    def test_unicode_kept(self) -> None:
        assert sanitize_filename("退货政策.docx") == "退货政策.docx"


class TestUploadStorage:
    @pytest.mark.asyncio
    async def test_store_copies_then_deletes_temp(self, storage, tmp_path) -> None:
        temp = _temp_file(tmp_path, "tmp123", "hello")

        stored = await storage.store(temp, "report.pdf")

        assert stored.parent == storage.root
        assert stored.name.endswith("-report.pdf")
        assert stored.read_text(encoding="utf-8") == "hello"
        assert not temp.exists()

    @pytest.mark.asyncio
    async def test_replace_overwrites_existing_path(self, storage, tmp_path) -> None:
        original = await storage.store(_temp_file(tmp_path, "t1", "v1"), "doc.txt")

        final = await storage.replace(_temp_file(tmp_path, "t2", "v2"), original)

        assert final == original
        assert original.read_text(encoding="utf-8") == "v2"

    @pytest.mark.asyncio
    async def test_save_json(self, storage) -> None:
        path = await storage.save_json({"q": "退货?", "a": "7天"}, 12, "FAQ/returns")

        assert path == storage.json_dir / "12_FAQ_returns.json"
        assert json.loads(path.read_text(encoding="utf-8")) == {"q": "退货?", "a": "7天"}

    @pytest.mark.asyncio
    async def test_save_plain_text(self, storage) -> None:
        path = await storage.save_json("plain body", 4, "")
        assert path.name == "4_knowledge_4.json"
        assert path.read_text(encoding="utf-8") == "plain body"

    @pytest.mark.asyncio
    async def test_remove(self, storage, tmp_path) -> None:
        stored = await storage.store(_temp_file(tmp_path, "t", "x"), "a.txt")

        assert await storage.remove(stored) is True
        assert not stored.exists()
        assert await storage.remove(stored) is False
        assert await storage.remove(None) is False

    def test_resolve_relative_paths(self, storage) -> None:
        assert storage.resolve("uploads/a.pdf") == storage.root / "a.pdf"
        assert storage.resolve("a.pdf") == storage.root / "a.pdf"
        assert storage.resolve("/elsewhere/a.pdf") == Path("/elsewhere/a.pdf")

    def test_root_is_absolute(self, tmp_path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        assert UploadStorage("uploads").root == (tmp_path / "uploads").resolve()
