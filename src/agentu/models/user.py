"""User quota account table."""

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Column, Date, String

from .base import BaseModel


class User(BaseModel):
    """A tenant user and their monthly token ledger."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("monthly_token_used >= 0", name="ck_users_used_non_negative"),
        CheckConstraint("monthly_token_used <= monthly_token_limit", name="ck_users_used_within_limit"),
    )

    username = Column(String(100), nullable=True, unique=True)
    monthly_token_limit = Column(BigInteger, default=1_000_000, nullable=False)
    monthly_token_used = Column(BigInteger, default=0, nullable=False)
    quota_reset_date = Column(Date, nullable=True)
    quota_exceeded = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default="ACTIVE", nullable=False, index=True)
