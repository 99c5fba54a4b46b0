# =============================================================================
# kb_ingest/cli/ingest.py - Knowledge Base CLI
# =============================================================================
#
# Operator CLI over the knowledge orchestrator.  Every command builds the
# same container as a long-lived service would (kb_ingest.main), so the CLI
# and a worker share one vector store, one SQLite database and one uploads
# root.
#
# Supported subcommands:
#
#   add     - Upload a file (indexed inline, or queued with --queue)
#   text    - Add JSON / free-text knowledge
#   update  - Replace a record's file or text, or change its metadata
#   delete  - Delete a record by id, or whatever is indexed from stored paths
#   expire  - Expire (or --revive) a record by id or by stored paths
#   search  - Similarity search over the index
#   stats   - Record and chunk counts
#   worker  - Run the queue consumer until interrupted
#
# Usage examples:
#   python -m kb_ingest.cli add --file manual.pdf --business sales --scene onboarding
#   python -m kb_ingest.cli text --title "Return policy" --content-file policy.json
#   python -m kb_ingest.cli update 42 --file manual-v2.pdf
#   python -m kb_ingest.cli expire --path uploads/1712-manual.pdf
#   python -m kb_ingest.cli search "how do I reset my password" --top-k 3
#   python -m kb_ingest.cli worker
# =============================================================================

"""Command-line interface for the knowledge base ingestion service."""

from __future__ import annotations

import argparse
import asyncio
import json
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any

from kb_ingest.config.loader import load_config
from kb_ingest.interfaces.vector_store_provider import MetadataMatch
from kb_ingest.main import AppContainer, build_consumer, build_container, shutdown, startup
from kb_ingest.models.knowledge import DuplicatePolicy, KnowledgeStatus, UploadedFile
from kb_ingest.utils.errors import DuplicateTitleError, KnowledgeBaseError
from kb_ingest.utils.logging import configure_logging


def _stage_upload(path: Path) -> UploadedFile:
    """Copy a user file to a temp file; the orchestrator consumes the copy."""
    if not path.is_file():
        raise FileNotFoundError(f"No such file: {path}")
    handle, temp_name = tempfile.mkstemp(suffix=path.suffix, prefix="kb-upload-")
    with open(handle, "wb") as target, open(path, "rb") as source:
        shutil.copyfileobj(source, target)
    return UploadedFile(temp_path=temp_name, original_name=path.name, size=path.stat().st_size)


def _read_content(args: argparse.Namespace) -> Any:
    if args.content_file:
        raw = Path(args.content_file).read_text(encoding="utf-8")
        if args.content_file.endswith(".json"):
            return json.loads(raw)
        return raw
    return args.content


def _policy(args: argparse.Namespace) -> DuplicatePolicy | None:
    return DuplicatePolicy.REPLACE if getattr(args, "replace", False) else None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_add(args: argparse.Namespace, container: AppContainer) -> int:
    service = container.knowledge_service
    upload = _stage_upload(Path(args.file))
    print(f"Adding file: {upload.original_name}")
    try:
        if args.queue:
            receipt = await service.submit_file_knowledge(upload, args.business, args.scene, _policy(args))
            print("\nQueued for indexing:")
            print(f"  Knowledge ID:     {receipt.knowledge_id}")
            print(f"  Update:           {receipt.is_update}")
            print(f"  Estimated chunks: {receipt.estimated_chunks}")
            return 0
        result = await service.create_file_knowledge(upload, args.business, args.scene, _policy(args))
    except DuplicateTitleError as exc:
        existing = exc.existing
        print(
            f"Error: {upload.original_name!r} already exists as knowledge {existing.knowledge_id}; "
            "re-run with --replace or use `update`.",
            file=sys.stderr,
        )
        Path(upload.temp_path).unlink(missing_ok=True)
        return 2
    _print_result(result)
    return 0


async def _handle_text(args: argparse.Namespace, container: AppContainer) -> int:
    service = container.knowledge_service
    content = _read_content(args)
    try:
        if args.queue:
            receipt = await service.submit_text_knowledge(
                args.title, content, args.business, args.scene, _policy(args)
            )
            print(f"Queued text knowledge {receipt.knowledge_id} ({receipt.estimated_chunks} chunks estimated)")
            return 0
        result = await service.add_text_knowledge(args.title, content, args.business, args.scene, _policy(args))
    except DuplicateTitleError as exc:
        print(
            f"Error: text knowledge {args.title!r} already exists as {exc.existing.knowledge_id}; "
            "re-run with --replace.",
            file=sys.stderr,
        )
        return 2
    _print_result(result)
    return 0


async def _handle_update(args: argparse.Namespace, container: AppContainer) -> int:
    service = container.knowledge_service
    if args.file:
        result = await service.update_file_knowledge(
            args.knowledge_id, _stage_upload(Path(args.file)), args.business, args.scene
        )
        _print_result(result)
        return 0
    if args.content is not None or args.content_file:
        result = await service.update_text_knowledge(
            args.knowledge_id, _read_content(args), args.business, args.scene, args.title
        )
        _print_result(result)
        return 0
    record = await service.update_metadata(
        args.knowledge_id, title=args.title, business=args.business, scene=args.scene
    )
    print(f"Updated metadata of knowledge {record.knowledge_id}: {record.title!r}")
    return 0


async def _handle_delete(args: argparse.Namespace, container: AppContainer) -> int:
    service = container.knowledge_service
    if args.path:
        if args.queue:
            await service.queue_delete_by_paths(args.path)
            print(f"Queued deletion of {len(args.path)} stored file(s)")
            return 0
        removed = await service.delete_by_paths(args.path)
    else:
        removed = await service.delete_knowledge(args.knowledge_id)
    print(f"Deleted. Chunks removed: {removed}")
    return 0


async def _handle_expire(args: argparse.Namespace, container: AppContainer) -> int:
    service = container.knowledge_service
    expired = not args.revive
    if args.path:
        if args.queue:
            await service.queue_expire_by_paths(args.path, expired)
            print(f"Queued expire toggle of {len(args.path)} stored file(s)")
            return 0
        updated = await service.set_expired_by_paths(args.path, expired)
        print(f"Chunks updated: {updated}")
        return 0
    status = KnowledgeStatus.EXPIRED if expired else KnowledgeStatus.EFFECTIVE
    record = await service.set_status(args.knowledge_id, status)
    print(f"Knowledge {record.knowledge_id} is now {record.status.value}")
    return 0


async def _handle_search(args: argparse.Namespace, container: AppContainer) -> int:
    filters: dict[str, Any] = {}
    if args.business:
        filters["business"] = args.business
    if args.active_only:
        filters["isActive"] = True
    predicate = MetadataMatch(**filters) if filters else None

    results = await container.ingestion_service.search(args.query, top_k=args.top_k, predicate=predicate)
    if not results:
        print("No results.")
        return 0
    for rank, scored in enumerate(results, start=1):
        meta = scored.chunk.metadata
        print(
            f"{rank:>2}. [{scored.score:.3f}] {meta.get('title', '')} "
            f"(knowledge {meta.get('knowledgeId')}, page {meta.get('page')} line {meta.get('line')})"
        )
        print(f"    {scored.chunk.text[:200].replace(chr(10), ' ')}")
    return 0


async def _handle_stats(container: AppContainer) -> int:
    chunks = await container.vector_store.count()
    records = await container.repository.count()
    print("Knowledge Base Statistics")
    print("=" * 40)
    print(f"  Records:       {records}")
    print(f"  Chunks:        {chunks}")
    print(f"  Vector store:  {container.vector_store.get_provider_name()}")
    print(f"  Queue enabled: {container.publisher.enabled}")
    recent = await container.vector_store.list(limit=5)
    if recent:
        print("\n  Most recent chunks:")
        for chunk in recent:
            print(f"    {chunk.metadata.get('knowledgeId', '?'):>6}  {chunk.metadata.get('title', '')}")
    return 0


async def _handle_worker(args: argparse.Namespace, container: AppContainer) -> int:
    consumer = build_consumer(container, consumer_id=args.consumer_id)
    print(f"Consuming {container.settings.queue_name} (Ctrl+C to stop)")
    try:
        await consumer.run()
    finally:
        await consumer.close()
    return 0


def _print_result(result: Any) -> None:
    print("\nIngestion complete:")
    print(f"  Knowledge ID:   {result.knowledge_id}")
    print(f"  Chunks created: {result.chunks_created}")
    print(f"  Chunks removed: {result.chunks_removed}")
    if result.placeholder:
        print("  (no extractable text; placeholder chunk stored)")
    print(f"  Time:           {result.ingestion_time_seconds:.2f}s")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_scope_args(parser: argparse.ArgumentParser, default: str | None = "") -> None:
    parser.add_argument("--business", default=default, help="Business line")
    parser.add_argument("--scene", default=default, help="Usage scene")


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the knowledge base CLI."""
    parser = argparse.ArgumentParser(
        prog="python -m kb_ingest.cli",
        description="Manage the knowledge base: ingest, update, expire, delete and search.",
    )
    parser.add_argument("--config", default="config/config.yaml", help="YAML configuration file")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # -- add --
    add_parser = subparsers.add_parser("add", help="Upload and index a file")
    add_parser.add_argument("--file", required=True, help="PDF, DOCX, XLSX, MD or TXT file")
    _add_scope_args(add_parser)
    add_parser.add_argument("--queue", action="store_true", help="Queue instead of indexing inline")
    add_parser.add_argument("--replace", action="store_true", help="Update a same-title record")

    # -- text --
    text_parser = subparsers.add_parser("text", help="Add JSON or free-text knowledge")
    text_parser.add_argument("--title", required=True, help="Knowledge title")
    content = text_parser.add_mutually_exclusive_group(required=True)
    content.add_argument("--content", help="Inline text")
    content.add_argument("--content-file", dest="content_file", help="Text or .json file")
    _add_scope_args(text_parser)
    text_parser.add_argument("--queue", action="store_true", help="Queue instead of indexing inline")
    text_parser.add_argument("--replace", action="store_true", help="Update a same-title record")

    # -- update --
    update_parser = subparsers.add_parser("update", help="Update an existing record")
    update_parser.add_argument("knowledge_id", type=int)
    source = update_parser.add_mutually_exclusive_group()
    source.add_argument("--file", help="Replacement file")
    source.add_argument("--content", help="Replacement text (text knowledge)")
    source.add_argument("--content-file", dest="content_file", help="Replacement text or .json file")
    update_parser.add_argument("--title", help="New title")
    _add_scope_args(update_parser, default=None)

    # -- delete --
    delete_parser = subparsers.add_parser("delete", help="Delete by id or by stored path")
    target = delete_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("knowledge_id", type=int, nargs="?")
    target.add_argument("--path", action="append", help="Stored path (repeatable)")
    delete_parser.add_argument("--queue", action="store_true", help="Queue path deletions")

    # -- expire --
    expire_parser = subparsers.add_parser("expire", help="Expire (or revive) by id or stored path")
    target = expire_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("knowledge_id", type=int, nargs="?")
    target.add_argument("--path", action="append", help="Stored path (repeatable)")
    expire_parser.add_argument("--revive", action="store_true", help="Mark effective again")
    expire_parser.add_argument("--queue", action="store_true", help="Queue path toggles")

    # -- search --
    search_parser = subparsers.add_parser("search", help="Similarity search")
    search_parser.add_argument("query")
    search_parser.add_argument("--top-k", dest="top_k", type=int, default=5)
    search_parser.add_argument("--business", help="Only chunks of this business line")
    search_parser.add_argument("--active-only", dest="active_only", action="store_true")

    # -- stats --
    subparsers.add_parser("stats", help="Show record and chunk counts")

    # -- worker --
    worker_parser = subparsers.add_parser("worker", help="Run the queue consumer")
    worker_parser.add_argument("--consumer-id", dest="consumer_id", help="Processing-list suffix")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def _run(args: argparse.Namespace) -> int:
    app_settings = load_config(args.config)
    configure_logging(
        log_level=app_settings.log_level,
        json_output=(app_settings.app_env == "production"),
    )
    container = build_container(app_settings)
    await startup(container)
    try:
        if args.command == "add":
            return await _handle_add(args, container)
        if args.command == "text":
            return await _handle_text(args, container)
        if args.command == "update":
            return await _handle_update(args, container)
        if args.command == "delete":
            return await _handle_delete(args, container)
        if args.command == "expire":
            return await _handle_expire(args, container)
        if args.command == "search":
            return await _handle_search(args, container)
        if args.command == "stats":
            return await _handle_stats(container)
        return await _handle_worker(args, container)
    finally:
        await shutdown(container)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        exit_code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        exit_code = 130
    except (KnowledgeBaseError, FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
