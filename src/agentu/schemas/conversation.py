"""
Pydantic schemas for conversation sessions and turns.
"""

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from ..models.enums import CredentialPreference, ServiceType


class SessionCreate(BaseModel):
    """Configuration for a new conversation session.

    ``provider_id`` defaults to the system default provider and ``model_id``
    to that provider's recommended model. Generation parameters left as None
    fall through to the model and then the global defaults.
    """

    provider_id: str | None = None
    model_id: str | None = None
    credential_id: str | None = None
    credential_preference: CredentialPreference = CredentialPreference.AUTO
    title: str | None = Field(default=None, max_length=200)

    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    frequency_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)
    presence_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)

    enable_knowledge_base: bool = False
    knowledge_base_ids: list[str] = Field(default_factory=list)

    @field_validator("knowledge_base_ids")
    @classmethod
    def dedupe_knowledge_base_ids(cls, v: list[str]) -> list[str]:
        """Knowledge bases attached to a session form a set; keep first-seen order."""
        return list(dict.fromkeys(v))


class TokenUsage(BaseModel):
    """Token counts reported by the provider for one call."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class RetrievedSource(BaseModel):
    """A knowledge chunk that was placed into the prompt."""

    chunk_id: str
    document_id: str
    kb_id: str
    chunk_index: int
    score: float


class TurnResult(BaseModel):
    """Outcome of one successful send: the persisted pair of messages."""

    model_config = ConfigDict(protected_namespaces=())

    session_id: str
    user_message_id: str
    user_sequence_number: int
    assistant_message_id: str
    assistant_sequence_number: int
    assistant_content: str
    token_usage: TokenUsage
    credential_id: str
    key_type: ServiceType
    model_code: str
    response_time_ms: int = 0
    cost_estimate: str = "0"
    sources: list[RetrievedSource] = Field(default_factory=list)

    # Quota warning is advisory; quota_exceeded means later sends will be refused.
    quota_warning: bool = False
    quota_exceeded: bool = False
