"""
Pydantic schemas for knowledge base operations.
"""

from pydantic import BaseModel, Field


class KnowledgeBaseCreate(BaseModel):
    """Schema for creating a knowledge base.

    Chunking values left as None resolve to the global defaults. The
    ``chunk_overlap < chunk_size`` rule is enforced by the retriever so that
    it surfaces as a ChunkConfigError.
    """

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    embedding_model: str | None = None
    chunk_size: int | None = Field(default=None, gt=0, le=100_000)
    chunk_overlap: int | None = Field(default=None, ge=0)
    vector_dimension: int | None = Field(default=None, gt=0, le=16_000)


class SearchResult(BaseModel):
    """One ranked retrieval hit."""

    chunk_id: str
    document_id: str
    kb_id: str
    chunk_index: int
    content: str
    start_offset: int
    end_offset: int
    score: float = Field(description="Cosine similarity in [-1, 1]")
