"""
Knowledge base, document and chunk tables.

Chunk embeddings live in a pgvector column. The column is declared without a
fixed dimension because each knowledge base chooses its own
``vector_dimension``; the retriever validates vector length on write.
"""

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import TIMESTAMP

from .base import BaseModel


class KnowledgeBase(BaseModel):
    __tablename__ = "knowledge_bases"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_knowledge_bases_user_name"),
        CheckConstraint("chunk_overlap >= 0 AND chunk_overlap < chunk_size", name="ck_knowledge_bases_chunking"),
    )

    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    embedding_model = Column(String(100), nullable=False, default="text-embedding-ada-002")
    chunk_size = Column(Integer, nullable=False, default=1000)
    chunk_overlap = Column(Integer, nullable=False, default=200)
    vector_dimension = Column(Integer, nullable=False, default=1536)
    document_count = Column(Integer, nullable=False, default=0)
    total_chunks = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="ACTIVE")


class Document(BaseModel):
    __tablename__ = "documents"

    kb_id = Column(String, ForeignKey("knowledge_bases.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    file_name = Column(String(500), nullable=True)
    title = Column(String(500), nullable=True)
    processing_status = Column(String(20), nullable=False, default="pending")
    processing_progress = Column(Integer, nullable=False, default=0)
    processing_error = Column(Text, nullable=True)
    embedding_status = Column(String(20), nullable=False, default="pending")
    total_characters = Column(Integer, nullable=False, default=0)
    content_preview = Column(Text, nullable=True)
    chunk_count = Column(Integer, nullable=False, default=0)


class DocumentChunk(BaseModel):
    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_index"),
        CheckConstraint("content_length > 0", name="ck_document_chunks_length"),
        CheckConstraint("end_offset > start_offset", name="ck_document_chunks_offsets"),
    )

    document_id = Column(String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    kb_id = Column(String, ForeignKey("knowledge_bases.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    content_length = Column(Integer, nullable=False)
    start_offset = Column(Integer, nullable=False)
    end_offset = Column(Integer, nullable=False)
    embedding = Column(Vector(), nullable=True)
    embedding_model = Column(String(100), nullable=True)
    search_count = Column(Integer, nullable=False, default=0)
    last_searched_at = Column(TIMESTAMP(timezone=True), nullable=True)
