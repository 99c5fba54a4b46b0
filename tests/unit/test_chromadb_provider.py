"""Unit tests for the ChromaDB vector store provider.

Runs against a real embedded ``PersistentClient`` under ``tmp_path`` for
add/list/count, metadata round-trips (lists and dicts through the codec),
pushed-down and post-hoc predicates, removal, metadata/text updates and
similarity search.  Error wrapping is tested with a mocked client.
"""

from __future__ import annotations

import warnings
from unittest.mock import MagicMock

import pytest

from kb_ingest.interfaces.vector_store_provider import MetadataMatch, by_knowledge_id
from kb_ingest.providers.vector_store.chromadb_provider import ChromaDBStore, _NoopEmbeddingFunction
from kb_ingest.utils.errors import VectorStoreError


class TestChromaDBStore:
    @pytest.fixture()
    def store(self, tmp_path) -> ChromaDBStore:
        return ChromaDBStore(
            mode="persistent",
            persist_directory=str(tmp_path / "chroma"),
            collection_name="test_collection",
        )

    def test_provider_info(self, store) -> None:
        assert store.get_provider_name() == "chromadb"
        assert store.is_available() is True

    def test_unknown_mode_rejected(self) -> None:
        with pytest.raises(ValueError):
            ChromaDBStore(mode="memory")

    @pytest.mark.asyncio
    async def test_add_and_list_round_trip(self, store, make_chunk) -> None:
        chunk = make_chunk("refund rules", knowledge_id=3, tags=["faq", "退货"], span={"page": 1})

        ids = await store.add_many([chunk])

        assert await store.count() == 1
        stored = (await store.list_all())[0]
        assert stored.id == ids[0]
        assert stored.text == "refund rules"
        assert stored.metadata["knowledgeId"] == "3"
        assert stored.metadata["tags"] == ["faq", "退货"]
        assert stored.metadata["span"] == {"page": 1}
        assert stored.created_at
        assert stored.embedding is not None
        assert len(stored.embedding) == len(chunk.embedding)

    @pytest.mark.asyncio
    async def test_list_newest_first(self, store, make_chunk) -> None:
        await store.add_many([make_chunk("first")])
        await store.add_many([make_chunk("second")])

        recent = await store.list(limit=1)

        assert [c.text for c in recent] == ["second"]

    @pytest.mark.asyncio
    async def test_remove_where_pushes_down_metadata_match(self, store, make_chunk) -> None:
        await store.add_many(
            [make_chunk("a", knowledge_id=1), make_chunk("b", knowledge_id=1), make_chunk("c", knowledge_id=2)]
        )

        assert await store.remove_where(by_knowledge_id(1)) == 2
        assert await store.remove_where(by_knowledge_id(1)) == 0
        assert [c.text for c in await store.list_all()] == ["c"]

    @pytest.mark.asyncio
    async def test_remove_where_plain_callable(self, store, make_chunk) -> None:
        await store.add_many([make_chunk("keep"), make_chunk("drop")])

        removed = await store.remove_where(lambda chunk: chunk.text == "drop")

        assert removed == 1
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_update_where_metadata_only(self, store, make_chunk) -> None:
        await store.add_many([make_chunk("a", knowledge_id=5, status="effective", isActive=True)])

        updated = await store.update_where(
            by_knowledge_id(5), lambda chunk: chunk.with_metadata(status="expired", isActive=False)
        )

        assert updated == 1
        chunk = (await store.list_all())[0]
        assert chunk.text == "a"
        assert chunk.metadata["status"] == "expired"
        assert chunk.metadata["isActive"] is False

    @pytest.mark.asyncio
    async def test_update_where_text_rewrite(self, store, make_chunk, hash_vector) -> None:
        await store.add_many([make_chunk("old", knowledge_id=5)])

        await store.update_where(
            by_knowledge_id(5),
            lambda chunk: chunk.model_copy(update={"text": "new", "embedding": hash_vector("new")}),
        )

        results = await store.similarity_search(hash_vector("new"), top_k=1)
        assert results[0].chunk.text == "new"
        assert results[0].score == pytest.approx(1.0, abs=1e-3)

    @pytest.mark.asyncio
    async def test_similarity_search_orders_by_score(self, store, make_chunk, hash_vector) -> None:
        await store.add_many([make_chunk("alpha"), make_chunk("beta"), make_chunk("gamma")])

        results = await store.similarity_search(hash_vector("beta"), top_k=3)

        assert results[0].chunk.text == "beta"
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_similarity_search_with_where_clause(self, store, make_chunk, hash_vector) -> None:
        await store.add_many(
            [make_chunk("same", knowledge_id=1, business="sales"), make_chunk("same", knowledge_id=2, business="hr")]
        )

        results = await store.similarity_search(hash_vector("same"), predicate=MetadataMatch(business="hr"))

        assert [r.chunk.knowledge_id for r in results] == ["2"]

    @pytest.mark.asyncio
    async def test_similarity_search_post_filter(self, store, make_chunk, hash_vector) -> None:
        await store.add_many([make_chunk("one", knowledge_id=1), make_chunk("two", knowledge_id=2)])

        results = await store.similarity_search(
            hash_vector("one"), top_k=5, predicate=lambda chunk: chunk.knowledge_id == "2"
        )

        assert [r.chunk.text for r in results] == ["two"]

    @pytest.mark.asyncio
    async def test_similarity_search_empty_collection(self, store, hash_vector) -> None:
        assert await store.similarity_search(hash_vector("q")) == []

    @pytest.mark.asyncio
    async def test_add_failure_wrapped(self, make_chunk) -> None:
        collection = MagicMock()
        collection.upsert.side_effect = RuntimeError("disk full")
        client = MagicMock()
        client.get_or_create_collection.return_value = collection
        store = ChromaDBStore(client=client)

        with pytest.raises(VectorStoreError, match="disk full"):
            await store.add_many([make_chunk("x")])

    @pytest.mark.asyncio
    async def test_collection_open_failure_wrapped(self) -> None:
        client = MagicMock()
        client.get_or_create_collection.side_effect = ConnectionError("refused")
        store = ChromaDBStore(mode="http", client=client)

        assert store.is_available() is False
        with pytest.raises(VectorStoreError):
            await store.count()


class TestNoopEmbeddingFunction:
    def test_construct_and_config_without_deprecation_warnings(self) -> None:
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            function = _NoopEmbeddingFunction()
            config = function.get_config()

        assert config == {}
        assert _NoopEmbeddingFunction.name() == "noop_precomputed"
        assert isinstance(_NoopEmbeddingFunction.build_from_config(config), _NoopEmbeddingFunction)

    def test_refuses_to_embed(self) -> None:
        with pytest.raises(NotImplementedError):
            _NoopEmbeddingFunction()(["text"])
