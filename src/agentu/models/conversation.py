"""
Conversation tables: sessions and their append-only messages.

``(session_id, sequence_number)`` is unique, so a store bug that hands out a
duplicate sequence number fails loudly at commit instead of corrupting order.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import TIMESTAMP

from .base import BaseModel


class ChatSession(BaseModel):
    __tablename__ = "chat_sessions"
    __table_args__ = (
        CheckConstraint("temperature IS NULL OR (temperature >= 0 AND temperature <= 2)", name="ck_sessions_temp"),
        CheckConstraint("top_p IS NULL OR (top_p >= 0 AND top_p <= 1)", name="ck_sessions_top_p"),
        CheckConstraint(
            "frequency_penalty IS NULL OR (frequency_penalty >= -2 AND frequency_penalty <= 2)",
            name="ck_sessions_frequency_penalty",
        ),
        CheckConstraint(
            "presence_penalty IS NULL OR (presence_penalty >= -2 AND presence_penalty <= 2)",
            name="ck_sessions_presence_penalty",
        ),
    )

    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_id = Column(String, ForeignKey("ai_providers.id"), nullable=False)
    model_id = Column(String, ForeignKey("ai_models.id"), nullable=False)
    credential_id = Column(String, ForeignKey("credential_configs.id", ondelete="SET NULL"), nullable=True)
    credential_preference = Column(String(20), default="AUTO", nullable=False)
    title = Column(String(200), nullable=True)
    temperature = Column(Float, nullable=True)
    max_tokens = Column(Integer, nullable=True)
    top_p = Column(Float, nullable=True)
    frequency_penalty = Column(Float, nullable=True)
    presence_penalty = Column(Float, nullable=True)
    enable_knowledge_base = Column(Boolean, default=False, nullable=False)
    knowledge_base_ids = Column(JSON, nullable=False, default=list)
    message_count = Column(Integer, default=0, nullable=False)
    total_input_tokens = Column(BigInteger, default=0, nullable=False)
    total_output_tokens = Column(BigInteger, default=0, nullable=False)
    status = Column(String(20), default="ACTIVE", nullable=False, index=True)
    is_pinned = Column(Boolean, default=False, nullable=False)
    last_message_at = Column(TIMESTAMP(timezone=True), nullable=True)


class Message(BaseModel):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("session_id", "sequence_number", name="uq_messages_session_sequence"),
        CheckConstraint("user_rating IS NULL OR (user_rating >= 1 AND user_rating <= 5)", name="ck_messages_rating"),
    )

    session_id = Column(String, ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    sequence_number = Column(Integer, nullable=False)
    parent_id = Column(String, ForeignKey("messages.id"), nullable=True)
    model_id = Column(String, nullable=True)
    provider_id = Column(String, nullable=True)
    model_name = Column(String(100), nullable=True)
    input_tokens = Column(Integer, default=0, nullable=False)
    output_tokens = Column(Integer, default=0, nullable=False)
    total_tokens = Column(Integer, default=0, nullable=False)
    response_time_ms = Column(Integer, default=0, nullable=False)
    message_metadata = Column(JSON, nullable=False, default=dict)
    user_rating = Column(Integer, nullable=True)
    user_feedback = Column(Text, nullable=True)
    status = Column(String(20), default="normal", nullable=False)
