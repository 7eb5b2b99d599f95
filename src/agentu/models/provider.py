"""
AI provider and model catalog tables.

A provider's ``service_type`` decides how its credentials are billed; at most
one provider carries ``is_system_default``.
"""

from sqlalchemy import (
    DECIMAL,
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from .base import BaseModel


class AIProvider(BaseModel):
    __tablename__ = "ai_providers"
    __table_args__ = (
        Index(
            "uq_ai_providers_system_default",
            "is_system_default",
            unique=True,
            postgresql_where=text("is_system_default"),
            sqlite_where=text("is_system_default = 1"),
        ),
    )

    code = Column(String(50), nullable=False, unique=True)
    name = Column(String(100), nullable=True)
    service_type = Column(String(20), default="USER_PROVIDED", nullable=False)
    base_url = Column(String(500), nullable=True)
    api_version = Column(String(50), nullable=True)
    default_headers = Column(JSON, nullable=False, default=dict)
    rate_limit_config = Column(JSON, nullable=False, default=dict)
    timeout_seconds = Column(Integer, default=60, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    official_api_key_encrypted = Column(Text, nullable=True)
    free_quota_per_user_monthly = Column(Integer, default=0, nullable=False)
    status = Column(String(20), default="ACTIVE", nullable=False, index=True)
    is_system_default = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)


class AIModel(BaseModel):
    __tablename__ = "ai_models"
    __table_args__ = (UniqueConstraint("provider_id", "model_code", name="uq_ai_models_provider_code"),)

    provider_id = Column(String, ForeignKey("ai_providers.id", ondelete="CASCADE"), nullable=False, index=True)
    model_code = Column(String(100), nullable=False)
    display_name = Column(String(200), nullable=True)
    context_window = Column(Integer, default=4096, nullable=False)
    max_tokens = Column(Integer, default=4096, nullable=False)
    input_price_per_1m_tokens = Column(DECIMAL(10, 6), default=0, nullable=False)
    output_price_per_1m_tokens = Column(DECIMAL(10, 6), default=0, nullable=False)
    supports_streaming = Column(Boolean, default=True, nullable=False)
    supports_function_calling = Column(Boolean, default=False, nullable=False)
    supports_vision = Column(Boolean, default=False, nullable=False)
    temperature_min = Column(Float, default=0.0, nullable=False)
    temperature_max = Column(Float, default=2.0, nullable=False)
    temperature_default = Column(Float, default=0.7, nullable=False)
    status = Column(String(20), default="ACTIVE", nullable=False)
    is_recommended = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
