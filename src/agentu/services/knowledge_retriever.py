"""
Knowledge retrieval: ingestion, similarity search and context assembly.

Chunking happens once per document at ingestion. Search embeds the query
with each knowledge base's own embedding model, ranks by cosine similarity
and bumps per-chunk search statistics on a best-effort basis.
"""

from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from ..core.config import ConfigurationManager, get_config_manager
from ..core.exceptions import (
    AgentUException,
    ChunkConfigError,
    EmbeddingFailureError,
    KnowledgeBaseNotFoundError,
    ValidationError,
)
from ..core.logging import get_logger
from ..core.store_backend import StoreBackend, get_store_backend
from ..models.enums import DocumentStatus
from ..models.records import ChunkRecord, DocumentRecord, KnowledgeBaseRecord, utcnow
from ..schemas.knowledge_base import KnowledgeBaseCreate, SearchResult
from ..utils.tokenization import estimate_tokens
from .chunking import split_text, validate_chunk_config
from .embedding_service import EmbeddingService, get_embedding_service
from .vector_index import ScoredChunk, VectorIndex, build_vector_index, ranking_key

logger = get_logger(__name__)

CONTEXT_SEPARATOR = "\n\n"
PREVIEW_LENGTH = 200


@dataclass
class AssembledContext:
    """Retrieved text that fit the budget, and the hits it came from."""

    text: str = ""
    included: list[SearchResult] = field(default_factory=list)
    skipped: int = 0
    used: int = 0


class KnowledgeRetriever:
    """Splits, embeds, searches and assembles knowledge base content."""

    def __init__(
        self,
        store: StoreBackend | None = None,
        embedding_service: EmbeddingService | None = None,
        vector_index: VectorIndex | None = None,
        config_manager: ConfigurationManager | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store or get_store_backend()
        self.embedding_service = embedding_service or get_embedding_service()
        self.vector_index = vector_index or build_vector_index(self.store)
        self.config_manager = config_manager or get_config_manager()
        self._clock = clock

    async def create_knowledge_base(self, user_id: str, data: KnowledgeBaseCreate) -> KnowledgeBaseRecord:
        """Create a knowledge base with a validated chunking configuration.

        Raises:
            ChunkConfigError: If the resolved chunk size/overlap is invalid.
            ConflictError: If the user already has a knowledge base with that name.
        """
        settings = self.config_manager.settings
        kb_config = data.model_dump(include={"chunk_size", "chunk_overlap"})
        chunk_size = self.config_manager.get_chunk_size(kb_config)
        chunk_overlap = self.config_manager.get_chunk_overlap(kb_config)
        validate_chunk_config(chunk_size, chunk_overlap)

        kb = KnowledgeBaseRecord(
            user_id=user_id,
            name=data.name,
            description=data.description,
            embedding_model=data.embedding_model or settings.default_embedding_model,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            vector_dimension=data.vector_dimension or settings.default_vector_dimension,
        )
        created = await self.store.add_knowledge_base(kb)
        logger.info(
            "Knowledge base created",
            extra={"kb_id": created.id, "user_id": user_id, "chunk_size": chunk_size, "chunk_overlap": chunk_overlap},
        )
        return created

    async def _require_kb(self, kb_id: str, user_id: str | None = None) -> KnowledgeBaseRecord:
        kb = await self.store.get_knowledge_base(kb_id)
        # Other users' knowledge bases are reported as missing
        if kb is None or (user_id is not None and kb.user_id != user_id):
            raise KnowledgeBaseNotFoundError(kb_id)
        return kb

    async def ingest_document(
        self,
        kb_id: str,
        user_id: str,
        text: str,
        file_name: str | None = None,
        title: str | None = None,
    ) -> DocumentRecord:
        """Chunk, embed and store a document's text.

        The document moves pending -> processing -> completed, or to failed
        when embedding fails. An invalid chunk configuration is rejected
        before the document is written.

        Raises:
            KnowledgeBaseNotFoundError: If the knowledge base is missing or not the user's.
            ChunkConfigError: If the knowledge base's chunking config is invalid.
            ValidationError: If the text is empty.
            EmbeddingFailureError: If embedding fails; the document is marked failed.
        """
        kb = await self._require_kb(kb_id, user_id)
        validate_chunk_config(kb.chunk_size, kb.chunk_overlap)
        if not text:
            raise ValidationError("Document text is empty", {"kb_id": kb_id})

        document = await self.store.add_document(
            DocumentRecord(
                kb_id=kb.id,
                user_id=user_id,
                file_name=file_name,
                title=title,
                total_characters=len(text),
                content_preview=text[:PREVIEW_LENGTH],
            )
        )

        def start_processing(doc: DocumentRecord) -> None:
            doc.processing_status = DocumentStatus.PROCESSING
            doc.embedding_status = DocumentStatus.PROCESSING
            doc.processing_progress = 10

        await self.store.mutate(DocumentRecord, document.id, start_processing)

        try:
            pieces = split_text(text, kb.chunk_size, kb.chunk_overlap)
            vectors = await self.embedding_service.embed_texts(
                [piece.content for piece in pieces], kb.embedding_model, kb.vector_dimension
            )
        except (EmbeddingFailureError, ChunkConfigError) as e:
            await self._mark_failed(document.id, e)
            raise

        chunks = [
            ChunkRecord(
                document_id=document.id,
                kb_id=kb.id,
                chunk_index=piece.index,
                content=piece.content,
                start_offset=piece.start_offset,
                end_offset=piece.end_offset,
                embedding=vector,
                embedding_model=kb.embedding_model,
            )
            for piece, vector in zip(pieces, vectors, strict=True)
        ]
        completed = await self.store.replace_document_chunks(document.id, chunks)
        logger.info(
            "Document ingested",
            extra={"kb_id": kb.id, "document_id": document.id, "chunk_count": len(chunks)},
        )
        return completed

    async def _mark_failed(self, document_id: str, error: AgentUException) -> None:
        def fail(doc: DocumentRecord) -> None:
            doc.processing_status = DocumentStatus.FAILED
            doc.embedding_status = DocumentStatus.FAILED
            doc.processing_error = error.message

        await self.store.mutate(DocumentRecord, document_id, fail)
        logger.error(
            "Document ingestion failed",
            extra={"document_id": document_id, "error_code": error.error_code, "error": error.message},
        )

    async def search(
        self,
        kb_ids: Sequence[str],
        query: str,
        limit: int | None = None,
        user_id: str | None = None,
    ) -> list[SearchResult]:
        """Rank chunks of the given knowledge bases by similarity to ``query``.

        Returns an empty list only when the knowledge bases hold no chunks.
        Ties are broken by smaller chunk_index, then smaller document_id.

        Raises:
            KnowledgeBaseNotFoundError: If any knowledge base is missing.
            EmbeddingFailureError: If the query cannot be embedded or the index fails.
        """
        kb_ids = list(dict.fromkeys(kb_ids))
        limit = self.config_manager.get_rag_max_results(limit)
        if not kb_ids:
            return []

        kbs = [await self._require_kb(kb_id, user_id) for kb_id in kb_ids]
        if await self.store.count_chunks(kb_ids) == 0:
            logger.debug("Knowledge bases have no chunks", extra={"kb_ids": kb_ids})
            return []

        # One query embedding per (model, dimension) shared by several knowledge bases
        groups: dict[tuple[str, int], list[str]] = defaultdict(list)
        for kb in kbs:
            groups[(kb.embedding_model, kb.vector_dimension)].append(kb.id)

        hits: list[ScoredChunk] = []
        for (model, dimension), group_ids in groups.items():
            vector = await self.embedding_service.embed_query(query, model, dimension)
            try:
                hits.extend(await self.vector_index.nearest_neighbors(vector, group_ids, limit))
            except EmbeddingFailureError:
                raise
            except Exception as e:
                logger.error("Vector index search failed", extra={"kb_ids": group_ids, "error": str(e)})
                raise EmbeddingFailureError(f"vector index failure: {e}", {"kb_ids": group_ids}) from e

        hits.sort(key=ranking_key)
        hits = hits[:limit]

        chunks = {chunk.id: chunk for chunk in await self.store.get_chunks([hit.chunk_id for hit in hits])}
        results = [
            SearchResult(
                chunk_id=hit.chunk_id,
                document_id=hit.document_id,
                kb_id=hit.kb_id,
                chunk_index=hit.chunk_index,
                content=chunks[hit.chunk_id].content,
                start_offset=chunks[hit.chunk_id].start_offset,
                end_offset=chunks[hit.chunk_id].end_offset,
                score=hit.score,
            )
            for hit in hits
            if hit.chunk_id in chunks
        ]

        await self._record_hits([r.chunk_id for r in results])
        logger.info("Knowledge search completed", extra={"kb_ids": kb_ids, "results": len(results)})
        return results

    async def _record_hits(self, chunk_ids: list[str]) -> None:
        if not chunk_ids:
            return
        try:
            await self.store.record_chunk_hits(chunk_ids, self._clock())
        except Exception as e:
            # Search statistics are best effort
            logger.warning("Failed to record chunk search hits", extra={"error": str(e), "count": len(chunk_ids)})

    def assemble_context(
        self,
        results: Sequence[SearchResult],
        budget: int | None = None,
        unit: str | None = None,
    ) -> AssembledContext:
        """Concatenate ranked chunk texts up to ``budget``.

        A chunk that does not fit the remaining budget is dropped whole and
        later, smaller chunks may still be placed.
        """
        default_budget, default_unit = self.config_manager.get_context_budget()
        budget = default_budget if budget is None else budget
        unit = unit or default_unit

        def cost(text: str) -> int:
            return estimate_tokens(text) if unit == "tokens" else len(text)

        assembled = AssembledContext()
        parts: list[str] = []
        separator_cost = cost(CONTEXT_SEPARATOR)
        for result in results:
            needed = cost(result.content) + (separator_cost if parts else 0)
            if assembled.used + needed > budget:
                assembled.skipped += 1
                continue
            parts.append(result.content)
            assembled.included.append(result)
            assembled.used += needed

        assembled.text = CONTEXT_SEPARATOR.join(parts)
        return assembled
