"""
Base model class for AgentU ORM tables.

Column attribute names match the field names of the corresponding records in
``agentu.models.records`` so rows and records convert field by field.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, String
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import declarative_mixin

from ..core.database import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


@declarative_mixin
class TimestampMixin:
    """Mixin for adding timestamp columns to models."""

    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


@declarative_mixin
class UUIDMixin:
    """Mixin for adding UUID primary key to models."""

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))


class BaseModel(Base, TimestampMixin, UUIDMixin):
    """Base model class with common functionality."""

    __abstract__ = True

    @classmethod
    def column_keys(cls) -> set[str]:
        return {attr.key for attr in cls.__mapper__.column_attrs}

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(id={self.id})>"
