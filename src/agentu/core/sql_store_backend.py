"""
SQLAlchemy implementation of the StoreBackend protocol.

Each operation runs in its own transaction. Read-modify-write operations
lock the affected rows with ``SELECT ... FOR UPDATE`` so concurrent
processes serialize per row (per session for message appends, per account
for quota updates) while unrelated rows proceed in parallel.
"""

import copy
from collections.abc import Callable, Sequence
from dataclasses import fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    AIModel,
    AIProvider,
    ChatSession,
    CredentialConfig,
    Document,
    DocumentChunk,
    KnowledgeBase,
    Message,
    User,
)
from ..models.base import BaseModel
from ..models.enums import DocumentStatus
from ..models.records import (
    ChunkRecord,
    CredentialRecord,
    DocumentRecord,
    KnowledgeBaseRecord,
    MessageRecord,
    ModelRecord,
    ProviderRecord,
    SessionRecord,
    UserRecord,
    utcnow,
)
from .exceptions import ConflictError, KnowledgeBaseNotFoundError, ProviderNotFoundError
from .logging import get_logger
from .store_backend import not_found

logger = get_logger(__name__)

R = TypeVar("R")
T = TypeVar("T")

ORM_BY_RECORD: dict[type, type[BaseModel]] = {
    UserRecord: User,
    ProviderRecord: AIProvider,
    ModelRecord: AIModel,
    CredentialRecord: CredentialConfig,
    SessionRecord: ChatSession,
    MessageRecord: Message,
    KnowledgeBaseRecord: KnowledgeBase,
    DocumentRecord: Document,
    ChunkRecord: DocumentChunk,
}


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return copy.deepcopy(value)


def _record_value(value: Any) -> Any:
    # SQLite drops tzinfo; all stored timestamps are UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return copy.deepcopy(value)


def apply_record(row: BaseModel, record: Any, include_id: bool = False) -> None:
    """Copy record fields onto an ORM row (field names match column keys)."""
    columns = row.column_keys()
    for f in fields(record):
        if f.name not in columns or (f.name == "id" and not include_id):
            continue
        setattr(row, f.name, _column_value(getattr(record, f.name)))
    if isinstance(record, ChunkRecord):
        row.content_length = record.content_length


def row_to_record(record_type: type[R], row: BaseModel) -> R:
    """Build a detached record from an ORM row."""
    columns = row.column_keys()
    values = {f.name: _record_value(getattr(row, f.name)) for f in fields(record_type) if f.name in columns}
    if record_type is ChunkRecord and values.get("embedding") is not None:
        # pgvector hands back numpy arrays
        values["embedding"] = [float(x) for x in values["embedding"]]
    return record_type(**values)


class SqlStoreBackend:
    """Store backend over an ``async_sessionmaker``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    async def _to_record(self, db: AsyncSession, record_type: type[R], row: BaseModel) -> R:
        record = row_to_record(record_type, row)
        if record_type is SessionRecord:
            result = await db.execute(
                select(Message.id).where(Message.session_id == row.id).order_by(Message.sequence_number)
            )
            record.message_ids = list(result.scalars().all())
        return record

    async def _locked_row(self, db: AsyncSession, record_type: type, record_id: str) -> Any:
        orm_cls = ORM_BY_RECORD[record_type]
        result = await db.execute(select(orm_cls).where(orm_cls.id == record_id).with_for_update())
        row = result.scalar_one_or_none()
        if row is None:
            raise not_found(record_type, record_id)
        return row

    async def _get(self, record_type: type[R], record_id: str) -> R | None:
        orm_cls = ORM_BY_RECORD[record_type]
        async with self._session_factory() as db:
            row = await db.get(orm_cls, record_id)
            if row is None:
                return None
            return await self._to_record(db, record_type, row)

    async def _first(self, record_type: type[R], *criteria: Any, order_by: Sequence[Any] = ()) -> R | None:
        records = await self._list(record_type, *criteria, order_by=order_by, limit=1)
        return records[0] if records else None

    async def _list(
        self, record_type: type[R], *criteria: Any, order_by: Sequence[Any] = (), limit: int | None = None
    ) -> list[R]:
        orm_cls = ORM_BY_RECORD[record_type]
        stmt = select(orm_cls).where(*criteria).order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [await self._to_record(db, record_type, row) for row in result.scalars().all()]

    async def _insert(self, record: Any, before: Callable[[AsyncSession], Any] | None = None) -> Any:
        orm_cls = ORM_BY_RECORD[type(record)]
        try:
            async with self._session_factory.begin() as db:
                if before is not None:
                    await before(db)
                row = orm_cls()
                apply_record(row, record, include_id=True)
                db.add(row)
        except IntegrityError as e:
            logger.warning(
                "Insert rejected by constraint",
                extra={"record_type": type(record).__name__, "record_id": record.id, "error": str(e.orig)},
            )
            raise ConflictError(
                f"{type(record).__name__} violates a uniqueness or integrity constraint", {"id": record.id}
            ) from e
        return copy.deepcopy(record)

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    async def add_user(self, user: UserRecord) -> UserRecord:
        return await self._insert(user)

    async def get_user(self, user_id: str) -> UserRecord | None:
        return await self._get(UserRecord, user_id)

    # ------------------------------------------------------------------
    # providers and models
    # ------------------------------------------------------------------
    async def add_provider(self, provider: ProviderRecord) -> ProviderRecord:
        if await self.find_provider_by_code(provider.code) is not None:
            raise ConflictError(f"Provider code '{provider.code}' already exists", {"code": provider.code})

        async def clear_system_default(db: AsyncSession) -> None:
            if provider.is_system_default:
                await db.execute(
                    update(AIProvider).where(AIProvider.is_system_default.is_(True)).values(is_system_default=False)
                )
                await db.flush()

        return await self._insert(provider, before=clear_system_default)

    async def get_provider(self, provider_id: str) -> ProviderRecord | None:
        return await self._get(ProviderRecord, provider_id)

    async def find_provider_by_code(self, code: str) -> ProviderRecord | None:
        return await self._first(ProviderRecord, AIProvider.code == code)

    async def get_system_default_provider(self) -> ProviderRecord | None:
        return await self._first(ProviderRecord, AIProvider.is_system_default.is_(True))

    async def list_providers(self) -> list[ProviderRecord]:
        return await self._list(ProviderRecord, order_by=(AIProvider.sort_order, AIProvider.code))

    async def add_model(self, model: ModelRecord) -> ModelRecord:
        if await self.get_provider(model.provider_id) is None:
            raise ProviderNotFoundError(model.provider_id)
        if await self.find_model(model.provider_id, model.model_code) is not None:
            raise ConflictError(
                f"Model '{model.model_code}' already exists for provider",
                {"provider_id": model.provider_id, "model_code": model.model_code},
            )
        return await self._insert(model)

    async def get_model(self, model_id: str) -> ModelRecord | None:
        return await self._get(ModelRecord, model_id)

    async def find_model(self, provider_id: str, model_code: str) -> ModelRecord | None:
        return await self._first(ModelRecord, AIModel.provider_id == provider_id, AIModel.model_code == model_code)

    async def list_models(self, provider_id: str) -> list[ModelRecord]:
        return await self._list(
            ModelRecord, AIModel.provider_id == provider_id, order_by=(AIModel.sort_order, AIModel.model_code)
        )

    # ------------------------------------------------------------------
    # credentials
    # ------------------------------------------------------------------
    @staticmethod
    async def _demote_defaults(db: AsyncSession, user_id: str, provider_id: str) -> None:
        # Lock the sibling rows so two concurrent promotions serialize
        await db.execute(
            select(CredentialConfig.id)
            .where(CredentialConfig.user_id == user_id, CredentialConfig.provider_id == provider_id)
            .with_for_update()
        )
        await db.execute(
            update(CredentialConfig)
            .where(
                CredentialConfig.user_id == user_id,
                CredentialConfig.provider_id == provider_id,
                CredentialConfig.is_default.is_(True),
            )
            .values(is_default=False, updated_at=utcnow())
        )
        await db.flush()

    async def add_credential(self, credential: CredentialRecord) -> CredentialRecord:
        async def demote(db: AsyncSession) -> None:
            if credential.is_default:
                await self._demote_defaults(db, credential.user_id, credential.provider_id)

        return await self._insert(credential, before=demote)

    async def get_credential(self, credential_id: str) -> CredentialRecord | None:
        return await self._get(CredentialRecord, credential_id)

    async def list_credentials(self, user_id: str, provider_id: str | None = None) -> list[CredentialRecord]:
        criteria = [CredentialConfig.user_id == user_id]
        if provider_id is not None:
            criteria.append(CredentialConfig.provider_id == provider_id)
        return await self._list(CredentialRecord, *criteria)

    async def set_default_credential(self, credential_id: str) -> CredentialRecord:
        async with self._session_factory.begin() as db:
            row = await self._locked_row(db, CredentialRecord, credential_id)
            await self._demote_defaults(db, row.user_id, row.provider_id)
            row.is_default = True
            row.updated_at = utcnow()
            await db.flush()
            return row_to_record(CredentialRecord, row)

    # ------------------------------------------------------------------
    # sessions and messages
    # ------------------------------------------------------------------
    async def add_session(self, session: SessionRecord) -> SessionRecord:
        session.message_ids = []
        session.message_count = 0
        return await self._insert(session)

    async def get_session(self, session_id: str) -> SessionRecord | None:
        return await self._get(SessionRecord, session_id)

    async def append_message(
        self, session_id: str, build: Callable[[SessionRecord], MessageRecord]
    ) -> MessageRecord:
        async with self._session_factory.begin() as db:
            row = await self._locked_row(db, SessionRecord, session_id)
            session = await self._to_record(db, SessionRecord, row)
            message = build(copy.deepcopy(session))
            message.session_id = row.id
            message.sequence_number = row.message_count + 1

            message_row = Message()
            apply_record(message_row, message, include_id=True)
            db.add(message_row)

            row.message_count = message.sequence_number
            row.last_message_at = message.created_at
            row.updated_at = utcnow()
        return copy.deepcopy(message)

    async def get_message(self, message_id: str) -> MessageRecord | None:
        return await self._get(MessageRecord, message_id)

    async def list_messages(self, session_id: str) -> list[MessageRecord]:
        return await self._list(MessageRecord, Message.session_id == session_id, order_by=(Message.sequence_number,))

    # ------------------------------------------------------------------
    # knowledge bases, documents and chunks
    # ------------------------------------------------------------------
    async def add_knowledge_base(self, kb: KnowledgeBaseRecord) -> KnowledgeBaseRecord:
        existing = await self._first(
            KnowledgeBaseRecord, KnowledgeBase.user_id == kb.user_id, KnowledgeBase.name == kb.name
        )
        if existing is not None:
            raise ConflictError(f"Knowledge base '{kb.name}' already exists", {"name": kb.name})
        return await self._insert(kb)

    async def get_knowledge_base(self, kb_id: str) -> KnowledgeBaseRecord | None:
        return await self._get(KnowledgeBaseRecord, kb_id)

    async def add_document(self, document: DocumentRecord) -> DocumentRecord:
        async def bump_count(db: AsyncSession) -> None:
            result = await db.execute(
                select(KnowledgeBase).where(KnowledgeBase.id == document.kb_id).with_for_update()
            )
            kb_row = result.scalar_one_or_none()
            if kb_row is None:
                raise KnowledgeBaseNotFoundError(document.kb_id)
            kb_row.document_count += 1

        return await self._insert(document, before=bump_count)

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        return await self._get(DocumentRecord, document_id)

    async def replace_document_chunks(self, document_id: str, chunks: Sequence[ChunkRecord]) -> DocumentRecord:
        try:
            async with self._session_factory.begin() as db:
                doc_row = await self._locked_row(db, DocumentRecord, document_id)
                kb_row = await self._locked_row(db, KnowledgeBaseRecord, doc_row.kb_id)
                previous = doc_row.chunk_count or 0

                await db.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id))
                for chunk in chunks:
                    chunk_row = DocumentChunk()
                    apply_record(chunk_row, chunk, include_id=True)
                    db.add(chunk_row)

                doc_row.chunk_count = len(chunks)
                doc_row.processing_status = DocumentStatus.COMPLETED.value
                doc_row.embedding_status = DocumentStatus.COMPLETED.value
                doc_row.processing_progress = 100
                doc_row.processing_error = None
                kb_row.total_chunks = (kb_row.total_chunks or 0) + len(chunks) - previous
                await db.flush()
                return row_to_record(DocumentRecord, doc_row)
        except IntegrityError as e:
            raise ConflictError("Chunk set violates a uniqueness or integrity constraint", {"document_id": document_id}) from e

    async def list_chunks(self, kb_ids: Sequence[str]) -> list[ChunkRecord]:
        if not kb_ids:
            return []
        return await self._list(ChunkRecord, DocumentChunk.kb_id.in_(list(kb_ids)))

    async def count_chunks(self, kb_ids: Sequence[str]) -> int:
        if not kb_ids:
            return 0
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count(DocumentChunk.id)).where(DocumentChunk.kb_id.in_(list(kb_ids)))
            )
            return int(result.scalar_one())

    async def get_chunks(self, chunk_ids: Sequence[str]) -> list[ChunkRecord]:
        if not chunk_ids:
            return []
        found = await self._list(ChunkRecord, DocumentChunk.id.in_(list(chunk_ids)))
        by_id = {chunk.id: chunk for chunk in found}
        return [by_id[cid] for cid in chunk_ids if cid in by_id]

    async def record_chunk_hits(self, chunk_ids: Sequence[str], at: datetime) -> None:
        if not chunk_ids:
            return
        async with self._session_factory.begin() as db:
            await db.execute(
                update(DocumentChunk)
                .where(DocumentChunk.id.in_(list(chunk_ids)))
                .values(search_count=DocumentChunk.search_count + 1, last_searched_at=at)
            )

    # ------------------------------------------------------------------
    # generic atomic update
    # ------------------------------------------------------------------
    async def mutate(self, record_type: type[R], record_id: str, fn: Callable[[R], T]) -> T:
        async with self._session_factory.begin() as db:
            row = await self._locked_row(db, record_type, record_id)
            working = await self._to_record(db, record_type, row)
            result = fn(working)
            if working.id != record_id:
                raise ConflictError("Record id cannot change", {"id": record_id})
            apply_record(row, working)
            row.updated_at = utcnow()
        return copy.deepcopy(result)
