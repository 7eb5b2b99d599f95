"""
Plain records the services operate on.

Records are detached snapshots: store backends hand out copies and persist
the copies they receive back, so no service ever shares mutable state with
the store or with another request. A Session keeps its messages as an
ordered list of ids; a Message refers to its session only by id.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from .enums import (
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


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


def default_rate_limit_config() -> dict[str, int]:
    return {"requests_per_minute": 60, "tokens_per_minute": 100_000}


@dataclass
class UserRecord:
    id: str = field(default_factory=new_id)
    username: str | None = None
    monthly_token_limit: int = 1_000_000
    monthly_token_used: int = 0
    quota_reset_date: date | None = None
    quota_exceeded: bool = False
    status: UserStatus = UserStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.status = UserStatus(self.status)


@dataclass
class ProviderRecord:
    code: str
    id: str = field(default_factory=new_id)
    name: str | None = None
    service_type: ServiceType = ServiceType.USER_PROVIDED
    base_url: str | None = None
    api_version: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    rate_limit_config: dict[str, int] = field(default_factory=default_rate_limit_config)
    timeout_seconds: int = 60
    max_retries: int = 3
    official_api_key_encrypted: str | None = None
    free_quota_per_user_monthly: int = 0
    status: ProviderStatus = ProviderStatus.ACTIVE
    is_system_default: bool = False
    sort_order: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.service_type = ServiceType(self.service_type)
        self.status = ProviderStatus(self.status)


@dataclass
class ModelRecord:
    provider_id: str
    model_code: str
    id: str = field(default_factory=new_id)
    display_name: str | None = None
    context_window: int = 4096
    max_tokens: int = 4096
    input_price_per_1m_tokens: Decimal = Decimal("0")
    output_price_per_1m_tokens: Decimal = Decimal("0")
    supports_streaming: bool = True
    supports_function_calling: bool = False
    supports_vision: bool = False
    temperature_min: float = 0.0
    temperature_max: float = 2.0
    temperature_default: float = 0.7
    status: ModelStatus = ModelStatus.ACTIVE
    is_recommended: bool = False
    sort_order: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.status = ModelStatus(self.status)
        self.input_price_per_1m_tokens = Decimal(str(self.input_price_per_1m_tokens))
        self.output_price_per_1m_tokens = Decimal(str(self.output_price_per_1m_tokens))

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> Decimal:
        return (
            self.input_price_per_1m_tokens * input_tokens + self.output_price_per_1m_tokens * output_tokens
        ) / Decimal(1_000_000)


@dataclass
class CredentialRecord:
    user_id: str
    provider_id: str
    key_type: ServiceType
    id: str = field(default_factory=new_id)
    name: str | None = None
    encrypted_secret: str | None = None
    key_prefix: str | None = None
    is_default: bool = False
    priority: int = 1
    total_requests: int = 0
    total_tokens: int = 0
    last_used_at: datetime | None = None
    monthly_free_quota_used: int = 0
    quota_reset_date: date | None = None
    status: CredentialStatus = CredentialStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.key_type = ServiceType(self.key_type)
        self.status = CredentialStatus(self.status)


@dataclass
class SessionRecord:
    user_id: str
    provider_id: str
    model_id: str
    id: str = field(default_factory=new_id)
    credential_id: str | None = None
    credential_preference: CredentialPreference = CredentialPreference.AUTO
    title: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    enable_knowledge_base: bool = False
    knowledge_base_ids: list[str] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)
    message_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    is_pinned: bool = False
    last_message_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.credential_preference = CredentialPreference(self.credential_preference)
        self.status = SessionStatus(self.status)

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens


@dataclass
class MessageRecord:
    session_id: str
    user_id: str
    role: MessageRole
    content: str
    id: str = field(default_factory=new_id)
    sequence_number: int = 0
    parent_id: str | None = None
    model_id: str | None = None
    provider_id: str | None = None
    model_name: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    response_time_ms: int = 0
    message_metadata: dict[str, Any] = field(default_factory=dict)
    user_rating: int | None = None
    user_feedback: str | None = None
    status: MessageStatus = MessageStatus.NORMAL
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.role = MessageRole(self.role)
        self.status = MessageStatus(self.status)


@dataclass
class KnowledgeBaseRecord:
    user_id: str
    name: str
    id: str = field(default_factory=new_id)
    description: str | None = None
    embedding_model: str = "text-embedding-ada-002"
    chunk_size: int = 1000
    chunk_overlap: int = 200
    vector_dimension: int = 1536
    document_count: int = 0
    total_chunks: int = 0
    status: KnowledgeBaseStatus = KnowledgeBaseStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.status = KnowledgeBaseStatus(self.status)


@dataclass
class DocumentRecord:
    kb_id: str
    user_id: str
    id: str = field(default_factory=new_id)
    file_name: str | None = None
    title: str | None = None
    processing_status: DocumentStatus = DocumentStatus.PENDING
    processing_progress: int = 0
    processing_error: str | None = None
    embedding_status: DocumentStatus = DocumentStatus.PENDING
    total_characters: int = 0
    content_preview: str | None = None
    chunk_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.processing_status = DocumentStatus(self.processing_status)
        self.embedding_status = DocumentStatus(self.embedding_status)


@dataclass
class ChunkRecord:
    document_id: str
    kb_id: str
    chunk_index: int
    content: str
    start_offset: int
    end_offset: int
    id: str = field(default_factory=new_id)
    embedding: list[float] | None = None
    embedding_model: str | None = None
    search_count: int = 0
    last_searched_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def content_length(self) -> int:
        return len(self.content)
