"""
Data models for AgentU.

Importing this package registers every ORM table on ``Base.metadata``.
Services work with the plain records; only the SQL store backend touches
the ORM classes.
"""

from .base import BaseModel
from .conversation import ChatSession, Message
from .credential import CredentialConfig
from .enums import (
    AUTO_TIER_ORDER,
    CredentialPreference,
    CredentialStatus,
    DocumentStatus,
    KnowledgeBaseStatus,
    MessageRole,
    MessageStatus,
    ModelStatus,
    ProviderStatus,
    ServiceType,
    SessionStatus,
    UserStatus,
)
from .knowledge_base import Document, DocumentChunk, KnowledgeBase
from .provider import AIModel, AIProvider
from .records import (
    ChunkRecord,
    CredentialRecord,
    DocumentRecord,
    KnowledgeBaseRecord,
    MessageRecord,
    ModelRecord,
    ProviderRecord,
    SessionRecord,
    UserRecord,
)
from .user import User

__all__ = [
    "AUTO_TIER_ORDER",
    "AIModel",
    "AIProvider",
    "BaseModel",
    "ChatSession",
    "ChunkRecord",
    "CredentialConfig",
    "CredentialPreference",
    "CredentialRecord",
    "CredentialStatus",
    "Document",
    "DocumentChunk",
    "DocumentRecord",
    "DocumentStatus",
    "KnowledgeBase",
    "KnowledgeBaseRecord",
    "KnowledgeBaseStatus",
    "Message",
    "MessageRecord",
    "MessageRole",
    "MessageStatus",
    "ModelRecord",
    "ModelStatus",
    "ProviderRecord",
    "ProviderStatus",
    "ServiceType",
    "SessionRecord",
    "SessionStatus",
    "User",
    "UserRecord",
    "UserStatus",
]
