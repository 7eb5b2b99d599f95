"""
Nearest-neighbour search over chunk embeddings.

``InMemoryVectorIndex`` scores every embedded chunk of the requested
knowledge bases with scipy's cosine distance; ``PgVectorIndex`` pushes the
same ranking into PostgreSQL through pgvector's ``<=>`` operator. Both order
by descending similarity, then ``chunk_index``, then ``document_id``.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from scipy.spatial.distance import cosine
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.exceptions import EmbeddingFailureError
from ..core.store_backend import StoreBackend
from ..models.knowledge_base import DocumentChunk


@dataclass(frozen=True)
class ScoredChunk:
    chunk_id: str
    document_id: str
    kb_id: str
    chunk_index: int
    score: float


def ranking_key(hit: ScoredChunk) -> tuple:
    return (-hit.score, hit.chunk_index, hit.document_id)


def cosine_similarity(query: np.ndarray, candidate: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; zero vectors score 0."""
    vector = np.asarray(candidate, dtype=np.float64)
    if vector.shape != query.shape:
        raise EmbeddingFailureError(
            f"stored vector dimension {vector.shape[0]} does not match query dimension {query.shape[0]}"
        )
    if not np.any(vector) or not np.any(query):
        return 0.0
    score = 1.0 - float(cosine(query, vector))
    return 0.0 if math.isnan(score) else score


class VectorIndex(Protocol):
    async def nearest_neighbors(self, vector: Sequence[float], kb_ids: Sequence[str], k: int) -> list[ScoredChunk]: ...


class InMemoryVectorIndex:
    """Exhaustive cosine scoring over chunks loaded from the store."""

    def __init__(self, store: StoreBackend) -> None:
        self.store = store

    async def nearest_neighbors(self, vector: Sequence[float], kb_ids: Sequence[str], k: int) -> list[ScoredChunk]:
        query = np.asarray(vector, dtype=np.float64)
        hits = [
            ScoredChunk(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                kb_id=chunk.kb_id,
                chunk_index=chunk.chunk_index,
                score=cosine_similarity(query, chunk.embedding),
            )
            for chunk in await self.store.list_chunks(kb_ids)
            if chunk.embedding is not None
        ]
        hits.sort(key=ranking_key)
        return hits[:k]


class PgVectorIndex:
    """pgvector-backed search; requires PostgreSQL with the ``vector`` extension."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def nearest_neighbors(self, vector: Sequence[float], kb_ids: Sequence[str], k: int) -> list[ScoredChunk]:
        distance = DocumentChunk.embedding.cosine_distance(list(vector))
        stmt = (
            select(
                DocumentChunk.id,
                DocumentChunk.document_id,
                DocumentChunk.kb_id,
                DocumentChunk.chunk_index,
                distance.label("distance"),
            )
            .where(DocumentChunk.kb_id.in_(list(kb_ids)), DocumentChunk.embedding.is_not(None))
            .order_by(distance, DocumentChunk.chunk_index, DocumentChunk.document_id)
            .limit(k)
        )
        async with self.session_factory() as db:
            rows = (await db.execute(stmt)).all()
        return [
            ScoredChunk(
                chunk_id=row.id,
                document_id=row.document_id,
                kb_id=row.kb_id,
                chunk_index=row.chunk_index,
                score=1.0 - float(row.distance),
            )
            for row in rows
        ]


def build_vector_index(store: StoreBackend) -> VectorIndex:
    """pgvector search for PostgreSQL-backed SQL stores, exhaustive scoring otherwise."""
    from ..core.sql_store_backend import SqlStoreBackend

    if isinstance(store, SqlStoreBackend):
        bind = store.session_factory.kw.get("bind")
        if bind is not None and bind.dialect.name == "postgresql":
            return PgVectorIndex(store.session_factory)
    return InMemoryVectorIndex(store)
