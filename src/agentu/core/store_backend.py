"""
Unified persistence interface for the orchestration core.

This module defines the StoreBackend protocol the services persist through.
It supports two interchangeable implementations:
- SqlStoreBackend (``agentu.core.sql_store_backend``): PostgreSQL/pgvector
  via SQLAlchemy, row locks with ``SELECT ... FOR UPDATE``.
- InMemoryStoreBackend: single-process deployments and tests, per-row
  ``asyncio.Lock`` serialization.

Backend selection is automatic based on the AGENTU_DATABASE_URL setting.

Example usage:
    from agentu.core.store_backend import get_store_backend

    store = get_store_backend()
    user = await store.get_user(user_id)

    def charge(user):
        user.monthly_token_used += 100
        return user

    updated = await store.mutate(UserRecord, user_id, charge)
"""

import copy
from collections import defaultdict
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any, Protocol, TypeVar, runtime_checkable

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
from .exceptions import (
    ConflictError,
    CredentialNotFoundError,
    DocumentNotFoundError,
    KnowledgeBaseNotFoundError,
    MessageNotFoundError,
    ModelNotFoundError,
    NotFoundError,
    ProviderNotFoundError,
    SessionNotFoundError,
    UserNotFoundError,
)
from .keyed_lock import KeyedLockRegistry
from .logging import get_logger

logger = get_logger(__name__)

R = TypeVar("R")
T = TypeVar("T")

# Global store backend instance (singleton)
_store_backend: "StoreBackend | None" = None

_NOT_FOUND: dict[type, Callable[[str], NotFoundError]] = {
    UserRecord: UserNotFoundError,
    ProviderRecord: ProviderNotFoundError,
    ModelRecord: ModelNotFoundError,
    CredentialRecord: CredentialNotFoundError,
    SessionRecord: SessionNotFoundError,
    MessageRecord: MessageNotFoundError,
    KnowledgeBaseRecord: KnowledgeBaseNotFoundError,
    DocumentRecord: DocumentNotFoundError,
}


def not_found(record_type: type, record_id: str) -> NotFoundError:
    """Build the lookup error matching a record type."""
    factory = _NOT_FOUND.get(record_type)
    if factory is None:
        return NotFoundError(f"{record_type.__name__} '{record_id}' not found", {"id": record_id})
    return factory(record_id)


@runtime_checkable
class StoreBackend(Protocol):
    """Protocol defining the persistence interface.

    Every method returns detached copies. Mutations go through ``mutate``
    (generic per-row read-modify-write) or one of the purpose-built atomic
    operations below, never through writes to a record obtained from ``get_*``.
    """

    # Users
    async def add_user(self, user: UserRecord) -> UserRecord: ...

    async def get_user(self, user_id: str) -> UserRecord | None: ...

    # Providers and models
    async def add_provider(self, provider: ProviderRecord) -> ProviderRecord:
        """Insert a provider. Setting ``is_system_default`` clears the flag elsewhere.

        Raises:
            ConflictError: If a provider with the same code exists.
        """
        ...

    async def get_provider(self, provider_id: str) -> ProviderRecord | None: ...

    async def find_provider_by_code(self, code: str) -> ProviderRecord | None: ...

    async def get_system_default_provider(self) -> ProviderRecord | None: ...

    async def list_providers(self) -> list[ProviderRecord]: ...

    async def add_model(self, model: ModelRecord) -> ModelRecord: ...

    async def get_model(self, model_id: str) -> ModelRecord | None: ...

    async def find_model(self, provider_id: str, model_code: str) -> ModelRecord | None: ...

    async def list_models(self, provider_id: str) -> list[ModelRecord]:
        """Models of a provider ordered by (sort_order, model_code)."""
        ...

    # Credentials
    async def add_credential(self, credential: CredentialRecord) -> CredentialRecord:
        """Insert a credential. ``is_default=True`` demotes the current default
        of the same (user, provider) in the same atomic step."""
        ...

    async def get_credential(self, credential_id: str) -> CredentialRecord | None: ...

    async def list_credentials(self, user_id: str, provider_id: str | None = None) -> list[CredentialRecord]: ...

    async def set_default_credential(self, credential_id: str) -> CredentialRecord: ...

    # Sessions and messages
    async def add_session(self, session: SessionRecord) -> SessionRecord: ...

    async def get_session(self, session_id: str) -> SessionRecord | None: ...

    async def append_message(
        self, session_id: str, build: Callable[[SessionRecord], MessageRecord]
    ) -> MessageRecord:
        """Append a message to a session as a single atomic step.

        ``build`` receives a copy of the locked session, may raise to abort,
        and returns the message to append. The store assigns
        ``sequence_number = message_count + 1``, appends the id to
        ``message_ids``, increments ``message_count`` and sets
        ``last_message_at``.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        ...

    async def get_message(self, message_id: str) -> MessageRecord | None: ...

    async def list_messages(self, session_id: str) -> list[MessageRecord]:
        """Messages of a session ordered by sequence_number."""
        ...

    # Knowledge bases, documents, chunks
    async def add_knowledge_base(self, kb: KnowledgeBaseRecord) -> KnowledgeBaseRecord:
        """Raises ConflictError when the user already has a knowledge base of that name."""
        ...

    async def get_knowledge_base(self, kb_id: str) -> KnowledgeBaseRecord | None: ...

    async def add_document(self, document: DocumentRecord) -> DocumentRecord:
        """Insert a document and bump its knowledge base's document_count."""
        ...

    async def get_document(self, document_id: str) -> DocumentRecord | None: ...

    async def replace_document_chunks(self, document_id: str, chunks: Sequence[ChunkRecord]) -> DocumentRecord:
        """Persist a document's chunks and counters atomically.

        Existing chunks of the document are replaced. The document becomes
        ``completed`` with ``chunk_count=len(chunks)`` and the knowledge base's
        ``total_chunks`` is adjusted by the difference.
        """
        ...

    async def list_chunks(self, kb_ids: Sequence[str]) -> list[ChunkRecord]: ...

    async def count_chunks(self, kb_ids: Sequence[str]) -> int: ...

    async def get_chunks(self, chunk_ids: Sequence[str]) -> list[ChunkRecord]:
        """Chunks in the order of ``chunk_ids``; unknown ids are skipped."""
        ...

    async def record_chunk_hits(self, chunk_ids: Sequence[str], at: datetime) -> None:
        """Increment search_count and set last_searched_at. Best effort."""
        ...

    # Generic atomic update
    async def mutate(self, record_type: type[R], record_id: str, fn: Callable[[R], T]) -> T:
        """Atomic read-modify-write of a single record.

        ``fn`` receives a private copy of the current record. If it returns,
        the modified copy is persisted and ``fn``'s return value handed back;
        if it raises, nothing is written and the exception propagates.

        Raises:
            NotFoundError: (record-specific subclass) if the record is missing.
        """
        ...


class InMemoryStoreBackend:
    """In-memory store with per-row asyncio locks.

    Suitable for single-process deployments and tests. Records are deep
    copied on the way in and on the way out.

    Limitations:
        - Data is not shared across processes
        - Data is lost on process restart
    """

    def __init__(self) -> None:
        self._tables: dict[type, dict[str, Any]] = defaultdict(dict)
        self._chunk_ids_by_document: dict[str, list[str]] = defaultdict(list)
        self._locks = KeyedLockRegistry()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _table(self, record_type: type[R]) -> dict[str, R]:
        return self._tables[record_type]

    def _put(self, record: Any) -> None:
        self._tables[type(record)][record.id] = copy.deepcopy(record)

    def _get(self, record_type: type[R], record_id: str) -> R | None:
        record = self._table(record_type).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def _require(self, record_type: type[R], record_id: str) -> R:
        record = self._get(record_type, record_id)
        if record is None:
            raise not_found(record_type, record_id)
        return record

    def _insert(self, record: Any) -> Any:
        if record.id in self._table(type(record)):
            raise ConflictError(f"{type(record).__name__} '{record.id}' already exists", {"id": record.id})
        self._put(record)
        return copy.deepcopy(record)

    @staticmethod
    def _lock_key(record_type: type, record_id: str) -> str:
        return f"{record_type.__name__}:{record_id}"

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    async def add_user(self, user: UserRecord) -> UserRecord:
        return self._insert(user)

    async def get_user(self, user_id: str) -> UserRecord | None:
        return self._get(UserRecord, user_id)

    # ------------------------------------------------------------------
    # providers and models
    # ------------------------------------------------------------------
    async def add_provider(self, provider: ProviderRecord) -> ProviderRecord:
        async with self._locks.hold("provider:catalog"):
            providers = self._table(ProviderRecord)
            if any(p.code == provider.code for p in providers.values()):
                raise ConflictError(f"Provider code '{provider.code}' already exists", {"code": provider.code})
            if provider.is_system_default:
                for other in providers.values():
                    other.is_system_default = False
            return self._insert(provider)

    async def get_provider(self, provider_id: str) -> ProviderRecord | None:
        return self._get(ProviderRecord, provider_id)

    async def find_provider_by_code(self, code: str) -> ProviderRecord | None:
        for provider in self._table(ProviderRecord).values():
            if provider.code == code:
                return copy.deepcopy(provider)
        return None

    async def get_system_default_provider(self) -> ProviderRecord | None:
        for provider in self._table(ProviderRecord).values():
            if provider.is_system_default:
                return copy.deepcopy(provider)
        return None

    async def list_providers(self) -> list[ProviderRecord]:
        providers = sorted(self._table(ProviderRecord).values(), key=lambda p: (p.sort_order, p.code))
        return copy.deepcopy(providers)

    async def add_model(self, model: ModelRecord) -> ModelRecord:
        if model.provider_id not in self._table(ProviderRecord):
            raise ProviderNotFoundError(model.provider_id)
        if await self.find_model(model.provider_id, model.model_code) is not None:
            raise ConflictError(
                f"Model '{model.model_code}' already exists for provider",
                {"provider_id": model.provider_id, "model_code": model.model_code},
            )
        return self._insert(model)

    async def get_model(self, model_id: str) -> ModelRecord | None:
        return self._get(ModelRecord, model_id)

    async def find_model(self, provider_id: str, model_code: str) -> ModelRecord | None:
        for model in self._table(ModelRecord).values():
            if model.provider_id == provider_id and model.model_code == model_code:
                return copy.deepcopy(model)
        return None

    async def list_models(self, provider_id: str) -> list[ModelRecord]:
        models = [m for m in self._table(ModelRecord).values() if m.provider_id == provider_id]
        models.sort(key=lambda m: (m.sort_order, m.model_code))
        return copy.deepcopy(models)

    # ------------------------------------------------------------------
    # credentials
    # ------------------------------------------------------------------
    def _demote_defaults(self, user_id: str, provider_id: str, keep_id: str | None = None) -> None:
        for credential in self._table(CredentialRecord).values():
            if (
                credential.user_id == user_id
                and credential.provider_id == provider_id
                and credential.id != keep_id
                and credential.is_default
            ):
                credential.is_default = False
                credential.updated_at = utcnow()

    async def add_credential(self, credential: CredentialRecord) -> CredentialRecord:
        async with self._locks.hold(f"credential-default:{credential.user_id}:{credential.provider_id}"):
            if credential.is_default:
                self._demote_defaults(credential.user_id, credential.provider_id)
            return self._insert(credential)

    async def get_credential(self, credential_id: str) -> CredentialRecord | None:
        return self._get(CredentialRecord, credential_id)

    async def list_credentials(self, user_id: str, provider_id: str | None = None) -> list[CredentialRecord]:
        return [
            copy.deepcopy(c)
            for c in self._table(CredentialRecord).values()
            if c.user_id == user_id and (provider_id is None or c.provider_id == provider_id)
        ]

    async def set_default_credential(self, credential_id: str) -> CredentialRecord:
        current = self._require(CredentialRecord, credential_id)
        async with self._locks.hold(f"credential-default:{current.user_id}:{current.provider_id}"):
            self._demote_defaults(current.user_id, current.provider_id, keep_id=credential_id)
            stored = self._table(CredentialRecord)[credential_id]
            stored.is_default = True
            stored.updated_at = utcnow()
            return copy.deepcopy(stored)

    # ------------------------------------------------------------------
    # sessions and messages
    # ------------------------------------------------------------------
    async def add_session(self, session: SessionRecord) -> SessionRecord:
        session.message_ids = []
        session.message_count = 0
        return self._insert(session)

    async def get_session(self, session_id: str) -> SessionRecord | None:
        return self._get(SessionRecord, session_id)

    async def append_message(
        self, session_id: str, build: Callable[[SessionRecord], MessageRecord]
    ) -> MessageRecord:
        async with self._locks.hold(self._lock_key(SessionRecord, session_id)):
            session = self._require(SessionRecord, session_id)
            message = build(copy.deepcopy(session))
            message.session_id = session.id
            message.sequence_number = session.message_count + 1
            session.message_count = message.sequence_number
            session.message_ids.append(message.id)
            session.last_message_at = message.created_at
            session.updated_at = utcnow()
            self._insert(message)
            self._put(session)
            return copy.deepcopy(message)

    async def get_message(self, message_id: str) -> MessageRecord | None:
        return self._get(MessageRecord, message_id)

    async def list_messages(self, session_id: str) -> list[MessageRecord]:
        session = self._table(SessionRecord).get(session_id)
        if session is None:
            return []
        messages = self._table(MessageRecord)
        return [copy.deepcopy(messages[mid]) for mid in session.message_ids if mid in messages]

    # ------------------------------------------------------------------
    # knowledge bases, documents and chunks
    # ------------------------------------------------------------------
    async def add_knowledge_base(self, kb: KnowledgeBaseRecord) -> KnowledgeBaseRecord:
        async with self._locks.hold(f"kb-name:{kb.user_id}"):
            if any(k.user_id == kb.user_id and k.name == kb.name for k in self._table(KnowledgeBaseRecord).values()):
                raise ConflictError(f"Knowledge base '{kb.name}' already exists", {"name": kb.name})
            return self._insert(kb)

    async def get_knowledge_base(self, kb_id: str) -> KnowledgeBaseRecord | None:
        return self._get(KnowledgeBaseRecord, kb_id)

    async def add_document(self, document: DocumentRecord) -> DocumentRecord:
        async with self._locks.hold(self._lock_key(KnowledgeBaseRecord, document.kb_id)):
            kb = self._table(KnowledgeBaseRecord).get(document.kb_id)
            if kb is None:
                raise KnowledgeBaseNotFoundError(document.kb_id)
            inserted = self._insert(document)
            kb.document_count += 1
            kb.updated_at = utcnow()
            return inserted

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        return self._get(DocumentRecord, document_id)

    async def replace_document_chunks(self, document_id: str, chunks: Sequence[ChunkRecord]) -> DocumentRecord:
        document = self._require(DocumentRecord, document_id)
        async with self._locks.hold(self._lock_key(KnowledgeBaseRecord, document.kb_id)):
            indexes = [c.chunk_index for c in chunks]
            if len(set(indexes)) != len(indexes):
                raise ConflictError("Duplicate chunk_index in document", {"document_id": document_id})

            chunk_table = self._table(ChunkRecord)
            previous = self._chunk_ids_by_document.pop(document_id, [])
            for chunk_id in previous:
                chunk_table.pop(chunk_id, None)
            for chunk in chunks:
                chunk_table[chunk.id] = copy.deepcopy(chunk)
                self._chunk_ids_by_document[document_id].append(chunk.id)

            now = utcnow()
            stored_doc = self._table(DocumentRecord)[document_id]
            stored_doc.chunk_count = len(chunks)
            stored_doc.processing_status = DocumentStatus.COMPLETED
            stored_doc.embedding_status = DocumentStatus.COMPLETED
            stored_doc.processing_progress = 100
            stored_doc.processing_error = None
            stored_doc.updated_at = now

            kb = self._table(KnowledgeBaseRecord)[document.kb_id]
            kb.total_chunks += len(chunks) - len(previous)
            kb.updated_at = now
            return copy.deepcopy(stored_doc)

    def _chunks_in(self, kb_ids: Sequence[str]) -> list[ChunkRecord]:
        wanted = set(kb_ids)
        return [c for c in self._table(ChunkRecord).values() if c.kb_id in wanted]

    async def list_chunks(self, kb_ids: Sequence[str]) -> list[ChunkRecord]:
        return copy.deepcopy(self._chunks_in(kb_ids))

    async def count_chunks(self, kb_ids: Sequence[str]) -> int:
        return len(self._chunks_in(kb_ids))

    async def get_chunks(self, chunk_ids: Sequence[str]) -> list[ChunkRecord]:
        table = self._table(ChunkRecord)
        return [copy.deepcopy(table[cid]) for cid in chunk_ids if cid in table]

    async def record_chunk_hits(self, chunk_ids: Sequence[str], at: datetime) -> None:
        table = self._table(ChunkRecord)
        for chunk_id in chunk_ids:
            chunk = table.get(chunk_id)
            if chunk is not None:
                chunk.search_count += 1
                chunk.last_searched_at = at

    # ------------------------------------------------------------------
    # generic atomic update
    # ------------------------------------------------------------------
    async def mutate(self, record_type: type[R], record_id: str, fn: Callable[[R], T]) -> T:
        async with self._locks.hold(self._lock_key(record_type, record_id)):
            working = self._require(record_type, record_id)
            result = fn(working)
            if working.id != record_id:
                raise ConflictError("Record id cannot change", {"id": record_id})
            working.updated_at = utcnow()
            self._put(working)
            return copy.deepcopy(result)


def get_store_backend() -> StoreBackend:
    """Get the configured store backend (singleton).

    Selection logic:
    1. If AGENTU_DATABASE_URL is set -> SqlStoreBackend over the shared session factory
    2. Otherwise -> InMemoryStoreBackend
    """
    global _store_backend  # noqa: PLW0603

    if _store_backend is not None:
        return _store_backend

    from .config import get_settings_instance

    settings = get_settings_instance()
    if settings.database_url:
        from .database import get_async_session_local
        from .sql_store_backend import SqlStoreBackend

        _store_backend = SqlStoreBackend(get_async_session_local())
        logger.info("Using SqlStoreBackend")
    else:
        logger.info("No database URL configured, using InMemoryStoreBackend")
        _store_backend = InMemoryStoreBackend()
    return _store_backend


def reset_store_backend() -> None:
    """Reset the store backend singleton (for testing only)."""
    global _store_backend  # noqa: PLW0603
    _store_backend = None
