"""Per-user provider credentials."""

from sqlalchemy import BigInteger, Boolean, Column, Date, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import TIMESTAMP

from .base import BaseModel


class CredentialConfig(BaseModel):
    """A usable (provider, secret-or-official-access) pairing for one user.

    ``encrypted_secret`` is empty for official credentials, which borrow the
    provider's own key. Only one credential per (user, provider) may be the
    default; the partial unique index backs the store-level rule.
    """

    __tablename__ = "credential_configs"
    __table_args__ = (
        Index(
            "uq_credential_configs_default",
            "user_id",
            "provider_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_id = Column(String, ForeignKey("ai_providers.id", ondelete="CASCADE"), nullable=False, index=True)
    key_type = Column(String(20), nullable=False)
    name = Column(String(100), nullable=True)
    encrypted_secret = Column(Text, nullable=True)
    key_prefix = Column(String(20), nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    priority = Column(Integer, default=1, nullable=False)
    total_requests = Column(Integer, default=0, nullable=False)
    total_tokens = Column(BigInteger, default=0, nullable=False)
    last_used_at = Column(TIMESTAMP(timezone=True), nullable=True)
    monthly_free_quota_used = Column(Integer, default=0, nullable=False)
    quota_reset_date = Column(Date, nullable=True)
    status = Column(String(20), default="ACTIVE", nullable=False, index=True)
