"""Pydantic schemas exchanged with the presentation layer."""

from .conversation import RetrievedSource, SessionCreate, TokenUsage, TurnResult
from .knowledge_base import KnowledgeBaseCreate, SearchResult
from .quota import QuotaStatus

__all__ = [
    "KnowledgeBaseCreate",
    "QuotaStatus",
    "RetrievedSource",
    "SearchResult",
    "SessionCreate",
    "TokenUsage",
    "TurnResult",
]
