"""Unit tests for the kb_ingest.cli.ingest command-line interface.

Parser shape is tested directly; command handlers run against a
``MagicMock`` container so no stores are touched.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from kb_ingest.cli.ingest import (
    _build_parser,
    _handle_add,
    _handle_delete,
    _handle_expire,
    _handle_search,
    _handle_text,
    _handle_update,
    _stage_upload,
    main,
)
from kb_ingest.interfaces.vector_store_provider import MetadataMatch
from kb_ingest.models.knowledge import DuplicatePolicy, KnowledgeRecord, KnowledgeStatus, SubmissionReceipt
from kb_ingest.models.rag import Chunk, IngestionResult, ScoredChunk
from kb_ingest.utils.errors import DuplicateTitleError


def _container() -> MagicMock:
    container = MagicMock()
    container.knowledge_service = MagicMock()
    return container


def _result(knowledge_id: int = 1) -> IngestionResult:
    return IngestionResult(knowledge_id=knowledge_id, title="manual.txt", chunks_created=3)


# ======================================================================
# Parser
# ======================================================================


class TestParser:
    def test_add_defaults(self) -> None:
        args = _build_parser().parse_args(["add", "--file", "manual.pdf"])
        assert args.command == "add"
        assert args.business == ""
        assert args.queue is False
        assert args.replace is False
        assert args.config == "config/config.yaml"

    def test_text_requires_content(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["text", "--title", "FAQ"])

    def test_update_scope_defaults_to_none(self) -> None:
        args = _build_parser().parse_args(["update", "42", "--title", "New"])
        assert args.knowledge_id == 42
        assert args.business is None
        assert args.scene is None

    def test_delete_paths_repeatable(self) -> None:
        args = _build_parser().parse_args(["delete", "--path", "a.pdf", "--path", "b.pdf", "--queue"])
        assert args.path == ["a.pdf", "b.pdf"]
        assert args.knowledge_id is None

    def test_expire_by_id(self) -> None:
        args = _build_parser().parse_args(["expire", "7", "--revive"])
        assert args.knowledge_id == 7
        assert args.revive is True

    def test_search_options(self) -> None:
        args = _build_parser().parse_args(["search", "refund window", "--top-k", "3", "--active-only"])
        assert args.top_k == 3
        assert args.active_only is True

    def test_no_command_exits_with_help(self, capsys) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1
        assert "usage" in capsys.readouterr().out


# ======================================================================
# Handlers
# ======================================================================


class TestHandlers:
    def test_stage_upload_copies_file(self, tmp_path) -> None:
        source = tmp_path / "manual.txt"
        source.write_text("content", encoding="utf-8")

        upload = _stage_upload(source)

        assert upload.original_name == "manual.txt"
        assert Path(upload.temp_path).read_text(encoding="utf-8") == "content"
        assert source.exists()
        Path(upload.temp_path).unlink()

    def test_stage_upload_missing_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            _stage_upload(tmp_path / "missing.txt")

    @pytest.mark.asyncio
    async def test_add_inline(self, tmp_path, capsys) -> None:
        source = tmp_path / "manual.txt"
        source.write_text("content", encoding="utf-8")
        container = _container()
        container.knowledge_service.create_file_knowledge = AsyncMock(return_value=_result(5))
        args = _build_parser().parse_args(["add", "--file", str(source), "--business", "it"])

        assert await _handle_add(args, container) == 0

        call = container.knowledge_service.create_file_knowledge.await_args
        assert call.args[1] == "it"
        assert call.args[3] is None
        Path(call.args[0].temp_path).unlink()
        assert "Knowledge ID:   5" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_add_queued_with_replace(self, tmp_path, capsys) -> None:
        source = tmp_path / "manual.txt"
        source.write_text("content", encoding="utf-8")
        container = _container()
        container.knowledge_service.submit_file_knowledge = AsyncMock(
            return_value=SubmissionReceipt(knowledge_id=9, title="manual.txt", is_update=True, estimated_chunks=4)
        )
        args = _build_parser().parse_args(["add", "--file", str(source), "--queue", "--replace"])

        assert await _handle_add(args, container) == 0

        assert container.knowledge_service.submit_file_knowledge.await_args.args[3] is DuplicatePolicy.REPLACE
        Path(container.knowledge_service.submit_file_knowledge.await_args.args[0].temp_path).unlink()
        assert "Estimated chunks: 4" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_add_duplicate_returns_2(self, tmp_path, capsys) -> None:
        source = tmp_path / "manual.txt"
        source.write_text("content", encoding="utf-8")
        container = _container()
        existing = KnowledgeRecord(knowledge_id=3, type="txt", title="manual.txt")
        container.knowledge_service.create_file_knowledge = AsyncMock(
            side_effect=DuplicateTitleError(message="exists", existing=existing)
        )
        args = _build_parser().parse_args(["add", "--file", str(source)])

        assert await _handle_add(args, container) == 2
        assert "knowledge 3" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_text_from_json_file(self, tmp_path) -> None:
        content_file = tmp_path / "faq.json"
        content_file.write_text('{"q": "refund?", "a": "7 days"}', encoding="utf-8")
        container = _container()
        container.knowledge_service.add_text_knowledge = AsyncMock(return_value=_result())
        args = _build_parser().parse_args(["text", "--title", "FAQ", "--content-file", str(content_file)])

        assert await _handle_text(args, container) == 0

        assert container.knowledge_service.add_text_knowledge.await_args.args[1] == {"q": "refund?", "a": "7 days"}

    @pytest.mark.asyncio
    async def test_update_metadata_only(self) -> None:
        container = _container()
        container.knowledge_service.update_metadata = AsyncMock(
            return_value=KnowledgeRecord(knowledge_id=4, type="pdf", title="Renamed")
        )
        args = _build_parser().parse_args(["update", "4", "--title", "Renamed"])

        assert await _handle_update(args, container) == 0

        container.knowledge_service.update_metadata.assert_awaited_once_with(
            4, title="Renamed", business=None, scene=None
        )

    @pytest.mark.asyncio
    async def test_delete_by_id_and_queued_paths(self) -> None:
        container = _container()
        container.knowledge_service.delete_knowledge = AsyncMock(return_value=3)
        container.knowledge_service.queue_delete_by_paths = AsyncMock()

        await _handle_delete(_build_parser().parse_args(["delete", "12"]), container)
        await _handle_delete(_build_parser().parse_args(["delete", "--path", "a.pdf", "--queue"]), container)

        container.knowledge_service.delete_knowledge.assert_awaited_once_with(12)
        container.knowledge_service.queue_delete_by_paths.assert_awaited_once_with(["a.pdf"])

    @pytest.mark.asyncio
    async def test_expire_revive_by_id(self) -> None:
        container = _container()
        container.knowledge_service.set_status = AsyncMock(
            return_value=KnowledgeRecord(knowledge_id=7, type="txt", title="t", status=KnowledgeStatus.EFFECTIVE)
        )

        await _handle_expire(_build_parser().parse_args(["expire", "7", "--revive"]), container)

        container.knowledge_service.set_status.assert_awaited_once_with(7, KnowledgeStatus.EFFECTIVE)

    @pytest.mark.asyncio
    async def test_search_builds_predicate(self, capsys) -> None:
        container = _container()
        chunk = Chunk(text="Refunds within 7 days.", metadata={"title": "FAQ", "knowledgeId": "2", "page": 1, "line": 3})
        container.ingestion_service.search = AsyncMock(return_value=[ScoredChunk(chunk=chunk, score=0.91)])
        args = _build_parser().parse_args(["search", "refund", "--business", "sales", "--active-only"])

        assert await _handle_search(args, container) == 0

        predicate = container.ingestion_service.search.await_args.kwargs["predicate"]
        assert isinstance(predicate, MetadataMatch)
        assert predicate.fields == {"business": "sales", "isActive": True}
        assert "[0.910] FAQ" in capsys.readouterr().out
