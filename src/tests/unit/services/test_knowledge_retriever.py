"""
Tests for KnowledgeRetriever: knowledge base creation, ingestion, search and
context assembly over the hashing embedding backend.
"""

import pytest

from agentu.core.exceptions import (
    ChunkConfigError,
    ConflictError,
    EmbeddingFailureError,
    KnowledgeBaseNotFoundError,
    ValidationError,
)
from agentu.models.enums import DocumentStatus
from agentu.schemas.knowledge_base import KnowledgeBaseCreate, SearchResult
from agentu.services.embedding_service import EmbeddingService
from agentu.services.knowledge_retriever import KnowledgeRetriever
from agentu.services.vector_index import InMemoryVectorIndex


class FailingBackend:
    async def embed(self, texts, model, dimension):
        raise EmbeddingFailureError("provider down")


def result(content: str, index: int = 0) -> SearchResult:
    return SearchResult(
        chunk_id=f"c{index}",
        document_id="d",
        kb_id="kb",
        chunk_index=index,
        content=content,
        start_offset=0,
        end_offset=len(content),
        score=0.5,
    )


class TestCreateKnowledgeBase:
    @pytest.mark.asyncio
    async def test_defaults_come_from_settings(self, harness):
        kb = await harness.retriever.create_knowledge_base("user", KnowledgeBaseCreate(name="docs"))
        assert (kb.chunk_size, kb.chunk_overlap) == (1000, 200)
        assert kb.vector_dimension == 64
        assert kb.embedding_model == harness.settings.default_embedding_model

    @pytest.mark.asyncio
    async def test_overlap_must_be_smaller_than_size(self, harness):
        with pytest.raises(ChunkConfigError):
            await harness.retriever.create_knowledge_base(
                "user", KnowledgeBaseCreate(name="docs", chunk_size=100, chunk_overlap=100)
            )

    @pytest.mark.asyncio
    async def test_duplicate_name(self, harness):
        await harness.retriever.create_knowledge_base("user", KnowledgeBaseCreate(name="docs"))
        with pytest.raises(ConflictError):
            await harness.retriever.create_knowledge_base("user", KnowledgeBaseCreate(name="docs"))


class TestIngestDocument:
    @pytest.mark.asyncio
    async def test_chunks_and_completes(self, harness):
        kb = await harness.retriever.create_knowledge_base("user", KnowledgeBaseCreate(name="docs"))
        text = "lorem ipsum " * 200 + "tail"

        document = await harness.retriever.ingest_document(kb.id, "user", text, file_name="notes.txt")

        assert document.processing_status == DocumentStatus.COMPLETED
        assert document.chunk_count == 3
        assert document.total_characters == len(text)
        chunks = sorted(await harness.store.list_chunks([kb.id]), key=lambda c: c.chunk_index)
        assert [(c.start_offset, c.end_offset) for c in chunks] == [(0, 1000), (800, 1800), (1600, 2404)]
        assert all(len(c.embedding) == 64 for c in chunks)
        assert (await harness.store.get_knowledge_base(kb.id)).total_chunks == 3

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, harness):
        kb = await harness.retriever.create_knowledge_base("user", KnowledgeBaseCreate(name="docs"))
        with pytest.raises(ValidationError):
            await harness.retriever.ingest_document(kb.id, "user", "")

    @pytest.mark.asyncio
    async def test_other_users_kb_is_not_found(self, harness):
        kb = await harness.retriever.create_knowledge_base("owner", KnowledgeBaseCreate(name="docs"))
        with pytest.raises(KnowledgeBaseNotFoundError):
            await harness.retriever.ingest_document(kb.id, "intruder", "text")

    @pytest.mark.asyncio
    async def test_embedding_failure_marks_document_failed(self, harness, monkeypatch):
        retriever = KnowledgeRetriever(
            harness.store,
            embedding_service=EmbeddingService(FailingBackend(), harness.settings),
            vector_index=InMemoryVectorIndex(harness.store),
            config_manager=harness.config_manager,
        )
        kb = await retriever.create_knowledge_base("user", KnowledgeBaseCreate(name="docs"))

        created = []
        add_document = harness.store.add_document

        async def capture(document):
            stored = await add_document(document)
            created.append(stored.id)
            return stored

        monkeypatch.setattr(harness.store, "add_document", capture)

        with pytest.raises(EmbeddingFailureError):
            await retriever.ingest_document(kb.id, "user", "some text to embed")

        document = await harness.store.get_document(created[0])
        assert document.processing_status == DocumentStatus.FAILED
        assert "provider down" in document.processing_error
        assert await harness.store.count_chunks([kb.id]) == 0


class TestSearch:
    async def _kb_with_docs(self, harness, user_id="user"):
        kb = await harness.retriever.create_knowledge_base(
            user_id, KnowledgeBaseCreate(name="docs", vector_dimension=256)
        )
        for text in ["postgres vector index", "banana bread recipe", "weather report for tuesday"]:
            await harness.retriever.ingest_document(kb.id, user_id, text)
        return kb

    @pytest.mark.asyncio
    async def test_ranks_matching_chunk_first(self, harness):
        kb = await self._kb_with_docs(harness)

        results = await harness.retriever.search([kb.id], "postgres vector index", limit=2, user_id="user")

        assert len(results) == 2
        assert results[0].content == "postgres vector index"
        assert results[0].score == pytest.approx(1.0)
        assert results[0].score >= results[1].score

    @pytest.mark.asyncio
    async def test_search_bumps_chunk_statistics(self, harness):
        kb = await self._kb_with_docs(harness)
        results = await harness.retriever.search([kb.id], "banana", limit=1)

        chunk = (await harness.store.get_chunks([results[0].chunk_id]))[0]
        assert chunk.search_count == 1
        assert chunk.last_searched_at is not None

    @pytest.mark.asyncio
    async def test_empty_kb_returns_no_results(self, harness):
        kb = await harness.retriever.create_knowledge_base("user", KnowledgeBaseCreate(name="empty"))
        assert await harness.retriever.search([kb.id], "anything") == []

    @pytest.mark.asyncio
    async def test_no_kbs_returns_no_results(self, harness):
        assert await harness.retriever.search([], "anything") == []

    @pytest.mark.asyncio
    async def test_missing_kb(self, harness):
        with pytest.raises(KnowledgeBaseNotFoundError):
            await harness.retriever.search(["missing"], "anything")

    @pytest.mark.asyncio
    async def test_other_users_kb(self, harness):
        kb = await self._kb_with_docs(harness, user_id="owner")
        with pytest.raises(KnowledgeBaseNotFoundError):
            await harness.retriever.search([kb.id], "banana", user_id="intruder")

    @pytest.mark.asyncio
    async def test_empty_query_fails(self, harness):
        kb = await self._kb_with_docs(harness)
        with pytest.raises(EmbeddingFailureError):
            await harness.retriever.search([kb.id], "  ")


class TestAssembleContext:
    def test_skips_chunks_that_do_not_fit_and_continues(self, harness):
        assembled = harness.retriever.assemble_context(
            [result("a" * 10, 0), result("b" * 50, 1), result("c" * 5, 2)], budget=20, unit="chars"
        )

        assert assembled.text == "a" * 10 + "\n\n" + "c" * 5
        assert assembled.used == 17
        assert assembled.skipped == 1
        assert [r.chunk_index for r in assembled.included] == [0, 2]

    def test_nothing_fits(self, harness):
        assembled = harness.retriever.assemble_context([result("x" * 30)], budget=10, unit="chars")
        assert assembled.text == ""
        assert assembled.included == []

    def test_default_budget_from_settings(self, harness):
        assembled = harness.retriever.assemble_context([result("x" * 3000), result("y" * 3000, 1)])
        assert len(assembled.included) == 1
        assert assembled.used == 3000


class BrokenIndex:
    async def nearest_neighbors(self, vector, kb_ids, k):
        raise RuntimeError("index unavailable")


class TestSearchTiesAndIndexFailures:
    @pytest.mark.asyncio
    async def test_equal_scores_order_by_chunk_index_then_document_id(self, harness):
        kb = await harness.retriever.create_knowledge_base(
            "user", KnowledgeBaseCreate(name="dupes", chunk_size=10, chunk_overlap=0)
        )
        # Two documents with identical content, each split into two identical chunks
        docs = [await harness.retriever.ingest_document(kb.id, "user", "same words" * 2) for _ in range(2)]

        results = await harness.retriever.search([kb.id], "same words", limit=4, user_id="user")

        assert len({r.score for r in results}) == 1
        first, second = sorted(d.id for d in docs)
        assert [(r.chunk_index, r.document_id) for r in results] == [
            (0, first),
            (0, second),
            (1, first),
            (1, second),
        ]

    @pytest.mark.asyncio
    async def test_index_failure_is_an_embedding_failure(self, harness):
        kb = await harness.retriever.create_knowledge_base("user", KnowledgeBaseCreate(name="docs"))
        await harness.retriever.ingest_document(kb.id, "user", "postgres vector index")
        retriever = KnowledgeRetriever(
            harness.store,
            embedding_service=harness.embedding_service,
            vector_index=BrokenIndex(),
            config_manager=harness.config_manager,
        )

        with pytest.raises(EmbeddingFailureError, match="vector index failure") as exc_info:
            await retriever.search([kb.id], "postgres", user_id="user")
        assert exc_info.value.details["kb_ids"] == [kb.id]
