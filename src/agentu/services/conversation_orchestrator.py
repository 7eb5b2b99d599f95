"""
Conversation orchestration.

One turn runs: session check -> user message append -> knowledge retrieval
(when enabled) -> credential selection -> prompt assembly -> model call ->
assistant message append -> quota accounting -> session aggregates.

Message appends are atomic per session in the store, so sequence numbers stay
gap-free under concurrent sends. Failures before the model call leave the
user message in place with no reply; a stream that is cancelled or fails
persists nothing beyond the user message.
"""

import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from ..core.config import ConfigurationManager, get_config_manager
from ..core.exceptions import (
    ConflictError,
    CredentialNotFoundError,
    KnowledgeBaseNotFoundError,
    MessageNotFoundError,
    ModelNotFoundError,
    ProviderNotFoundError,
    QuotaExceededError,
    SessionNotActiveError,
    SessionNotFoundError,
    UserNotActiveError,
    UserNotFoundError,
    ValidationError,
)
from ..core.logging import get_logger
from ..core.store_backend import StoreBackend, get_store_backend
from ..models.enums import MessageRole, MessageStatus, ServiceType, SessionStatus, UserStatus
from ..models.records import (
    CredentialRecord,
    MessageRecord,
    ModelRecord,
    ProviderRecord,
    SessionRecord,
    UserRecord,
    utcnow,
)
from ..providers import ChatRequest
from ..schemas.conversation import RetrievedSource, SessionCreate, TokenUsage, TurnResult
from ..schemas.knowledge_base import SearchResult
from ..schemas.quota import QuotaStatus
from .context_window_manager import ContextWindowManager
from .credential_selector import CredentialSelector
from .knowledge_retriever import KnowledgeRetriever
from .model_gateway import ModelGateway, get_model_gateway
from .quota_ledger import QuotaLedger

logger = get_logger(__name__)

KNOWLEDGE_PROMPT = (
    "Use the following excerpts from the user's knowledge base when they are relevant "
    "to the question. If they are not relevant, answer from general knowledge.\n\n{context}"
)


@dataclass
class PreparedTurn:
    """State gathered before the model call."""

    session: SessionRecord
    user_message: MessageRecord
    provider: ProviderRecord
    model: ModelRecord
    credential: CredentialRecord
    request: ChatRequest
    sources: list[SearchResult] = field(default_factory=list)


@dataclass
class TurnStreamEvent:
    """Item yielded by ``stream_message``: content deltas, then one ``done`` with the result."""

    type: Literal["delta", "done"]
    content: str = ""
    result: TurnResult | None = None


class ConversationOrchestrator:
    """Coordinates sessions, messages, retrieval, credentials, model calls and quota."""

    def __init__(
        self,
        store: StoreBackend | None = None,
        quota_ledger: QuotaLedger | None = None,
        credential_selector: CredentialSelector | None = None,
        knowledge_retriever: KnowledgeRetriever | None = None,
        model_gateway: ModelGateway | None = None,
        config_manager: ConfigurationManager | None = None,
        context_manager: ContextWindowManager | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store or get_store_backend()
        self.config_manager = config_manager or get_config_manager()
        self.quota_ledger = quota_ledger or QuotaLedger(self.store, self.config_manager.settings, clock)
        self.credential_selector = credential_selector or CredentialSelector(self.store, clock)
        self._knowledge_retriever = knowledge_retriever
        self.model_gateway = model_gateway or get_model_gateway()
        self.context_manager = context_manager or ContextWindowManager(
            history_limit=self.config_manager.settings.conversation_history_limit
        )
        self._clock = clock

    @property
    def knowledge_retriever(self) -> KnowledgeRetriever:
        # Built on first use so sessions without knowledge bases need no embedding backend
        if self._knowledge_retriever is None:
            self._knowledge_retriever = KnowledgeRetriever(self.store, config_manager=self.config_manager)
        return self._knowledge_retriever

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    async def _require_active_user(self, user_id: str) -> UserRecord:
        user = await self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if user.status != UserStatus.ACTIVE:
            raise UserNotActiveError(user_id, user.status.value)
        return user

    async def _require_session(self, session_id: str, user_id: str | None = None) -> SessionRecord:
        session = await self.store.get_session(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFoundError(session_id)
        return session

    async def _require_message(self, message_id: str, user_id: str | None = None) -> MessageRecord:
        message = await self.store.get_message(message_id)
        if message is None or (user_id is not None and message.user_id != user_id):
            raise MessageNotFoundError(message_id)
        return message

    async def _resolve_provider(self, provider_id: str | None) -> ProviderRecord:
        if provider_id is None:
            provider = await self.store.get_system_default_provider()
            if provider is None:
                raise ValidationError("No provider given and no system default provider is configured")
            return provider
        provider = await self.store.get_provider(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        return provider

    async def _resolve_model(self, provider: ProviderRecord, model_id: str | None) -> ModelRecord:
        if model_id is not None:
            model = await self.store.get_model(model_id)
            if model is None or model.provider_id != provider.id:
                raise ModelNotFoundError(model_id)
            return model
        models = await self.store.list_models(provider.id)
        if not models:
            raise ValidationError(f"Provider '{provider.code}' has no models", {"provider_id": provider.id})
        recommended = [m for m in models if m.is_recommended]
        return (recommended or models)[0]

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    async def create_session(self, user_id: str, config: SessionCreate | None = None) -> SessionRecord:
        """Create an ACTIVE session for ``user_id``.

        Raises:
            UserNotFoundError / UserNotActiveError: Unknown or inactive user.
            ProviderNotFoundError / ModelNotFoundError: Bad provider or model reference.
            CredentialNotFoundError: Pinned credential is not the user's credential for the provider.
            KnowledgeBaseNotFoundError: A knowledge base is missing or not the user's.
        """
        config = config or SessionCreate()
        await self._require_active_user(user_id)
        provider = await self._resolve_provider(config.provider_id)
        model = await self._resolve_model(provider, config.model_id)

        if config.credential_id is not None:
            credential = await self.store.get_credential(config.credential_id)
            if credential is None or credential.user_id != user_id or credential.provider_id != provider.id:
                raise CredentialNotFoundError(config.credential_id)

        for kb_id in config.knowledge_base_ids:
            kb = await self.store.get_knowledge_base(kb_id)
            if kb is None or kb.user_id != user_id:
                raise KnowledgeBaseNotFoundError(kb_id)

        session = await self.store.add_session(
            SessionRecord(
                user_id=user_id,
                provider_id=provider.id,
                model_id=model.id,
                credential_id=config.credential_id,
                credential_preference=config.credential_preference,
                title=config.title,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                top_p=config.top_p,
                frequency_penalty=config.frequency_penalty,
                presence_penalty=config.presence_penalty,
                enable_knowledge_base=config.enable_knowledge_base,
                knowledge_base_ids=list(config.knowledge_base_ids),
            )
        )
        logger.info(
            "Session created",
            extra={"session_id": session.id, "user_id": user_id, "provider": provider.code, "model": model.model_code},
        )
        return session

    async def archive_session(self, session_id: str, user_id: str | None = None) -> SessionRecord:
        """ACTIVE -> ARCHIVED. Raises SessionNotActiveError from any other state."""
        await self._require_session(session_id, user_id)

        def archive(session: SessionRecord) -> SessionRecord:
            if session.status != SessionStatus.ACTIVE:
                raise SessionNotActiveError(session.id, session.status.value)
            session.status = SessionStatus.ARCHIVED
            return session

        archived = await self.store.mutate(SessionRecord, session_id, archive)
        logger.info("Session archived", extra={"session_id": session_id})
        return archived

    async def unarchive_session(self, session_id: str, user_id: str | None = None) -> SessionRecord:
        """ARCHIVED -> ACTIVE."""
        await self._require_session(session_id, user_id)

        def unarchive(session: SessionRecord) -> SessionRecord:
            if session.status != SessionStatus.ARCHIVED:
                raise ConflictError(
                    f"Session '{session.id}' is {session.status.value}, not ARCHIVED",
                    {"session_id": session.id, "status": session.status.value},
                )
            session.status = SessionStatus.ACTIVE
            return session

        restored = await self.store.mutate(SessionRecord, session_id, unarchive)
        logger.info("Session unarchived", extra={"session_id": session_id})
        return restored

    async def delete_session(self, session_id: str, user_id: str | None = None) -> SessionRecord:
        """Soft delete; messages are kept and the session stops accepting writes."""
        await self._require_session(session_id, user_id)

        def delete(session: SessionRecord) -> SessionRecord:
            if session.status == SessionStatus.DELETED:
                raise ConflictError(f"Session '{session.id}' is already deleted", {"session_id": session.id})
            session.status = SessionStatus.DELETED
            return session

        deleted = await self.store.mutate(SessionRecord, session_id, delete)
        logger.info("Session deleted", extra={"session_id": session_id})
        return deleted

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------
    async def get_history(
        self, session_id: str, user_id: str | None = None, include_hidden: bool = False
    ) -> list[MessageRecord]:
        """Messages of a session in sequence order."""
        session = await self._require_session(session_id, user_id)
        if session.status == SessionStatus.DELETED:
            raise SessionNotFoundError(session_id)
        visible = {MessageStatus.NORMAL, MessageStatus.HIDDEN} if include_hidden else {MessageStatus.NORMAL}
        return [m for m in await self.store.list_messages(session_id) if m.status in visible]

    async def rate_message(
        self, message_id: str, rating: int, feedback: str | None = None, user_id: str | None = None
    ) -> MessageRecord:
        """Attach a 1..5 rating and optional feedback to a message."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer from 1 to 5", {"rating": rating})
        await self._require_message(message_id, user_id)

        def rate(message: MessageRecord) -> MessageRecord:
            message.user_rating = rating
            message.user_feedback = feedback
            return message

        return await self.store.mutate(MessageRecord, message_id, rate)

    async def hide_message(self, message_id: str, user_id: str | None = None) -> MessageRecord:
        """Hide a message from history and from future prompts."""
        await self._require_message(message_id, user_id)

        def hide(message: MessageRecord) -> MessageRecord:
            if message.status == MessageStatus.DELETED:
                raise ConflictError(f"Message '{message.id}' is deleted", {"message_id": message.id})
            message.status = MessageStatus.HIDDEN
            return message

        return await self.store.mutate(MessageRecord, message_id, hide)

    # ------------------------------------------------------------------
    # turns
    # ------------------------------------------------------------------
    async def _prepare_turn(self, session_id: str, content: str, user_id: str | None) -> PreparedTurn:
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty", {"session_id": session_id})

        session = await self._require_session(session_id, user_id)
        if session.status != SessionStatus.ACTIVE:
            raise SessionNotActiveError(session.id, session.status.value)
        await self._require_active_user(session.user_id)
        # Hard stop before anything is written
        await self.quota_ledger.check_can_send(session.user_id)

        def build_user_message(locked: SessionRecord) -> MessageRecord:
            if locked.status != SessionStatus.ACTIVE:
                raise SessionNotActiveError(locked.id, locked.status.value)
            return MessageRecord(
                session_id=locked.id,
                user_id=locked.user_id,
                role=MessageRole.USER,
                content=content,
                created_at=self._clock(),
            )

        user_message = await self.store.append_message(session_id, build_user_message)
        logger.debug(
            "User message appended",
            extra={"session_id": session_id, "sequence_number": user_message.sequence_number},
        )

        sources: list[SearchResult] = []
        context_text = ""
        if session.enable_knowledge_base and session.knowledge_base_ids:
            sources = await self.knowledge_retriever.search(
                session.knowledge_base_ids, content, user_id=session.user_id
            )
            assembled = self.knowledge_retriever.assemble_context(sources)
            sources = assembled.included
            context_text = assembled.text

        credential = await self.credential_selector.select(
            session.user_id, session.provider_id, session.credential_preference, session.credential_id
        )

        provider = await self._resolve_provider(session.provider_id)
        model = await self.store.get_model(session.model_id)
        if model is None:
            raise ModelNotFoundError(session.model_id)

        max_tokens = self.config_manager.get_max_tokens(session, model)
        history = [
            m for m in await self.store.list_messages(session_id) if m.sequence_number <= user_message.sequence_number
        ]
        messages = self.context_manager.build_messages(
            history,
            context_window=model.context_window,
            max_output_tokens=max_tokens,
            system_prompt=KNOWLEDGE_PROMPT.format(context=context_text) if context_text else None,
        )
        request = ChatRequest(
            model=model.model_code,
            messages=messages,
            temperature=self.config_manager.get_temperature(session, model),
            max_tokens=max_tokens,
            top_p=session.top_p,
            frequency_penalty=session.frequency_penalty,
            presence_penalty=session.presence_penalty,
        )
        return PreparedTurn(
            session=session,
            user_message=user_message,
            provider=provider,
            model=model,
            credential=credential,
            request=request,
            sources=sources,
        )

    async def _complete_turn(
        self,
        turn: PreparedTurn,
        content: str,
        input_tokens: int,
        output_tokens: int,
        response_time_ms: int,
        extra_metadata: dict | None = None,
    ) -> TurnResult:
        usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        cost = turn.model.estimate_cost(input_tokens, output_tokens)
        metadata = {
            "credential_id": turn.credential.id,
            "key_type": turn.credential.key_type.value,
            "source_chunk_ids": [s.chunk_id for s in turn.sources],
            "cost_estimate": str(cost),
            **(extra_metadata or {}),
        }

        def build_assistant_message(locked: SessionRecord) -> MessageRecord:
            # A session archived mid-call still records the paid-for reply
            if locked.status == SessionStatus.DELETED:
                raise SessionNotActiveError(locked.id, locked.status.value)
            return MessageRecord(
                session_id=locked.id,
                user_id=locked.user_id,
                role=MessageRole.ASSISTANT,
                content=content,
                parent_id=turn.user_message.id,
                model_id=turn.model.id,
                provider_id=turn.provider.id,
                model_name=turn.model.model_code,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=usage.total_tokens,
                response_time_ms=response_time_ms,
                message_metadata=metadata,
                created_at=self._clock(),
            )

        assistant = await self.store.append_message(turn.session.id, build_assistant_message)

        quota_exceeded = False
        quota_status: QuotaStatus | None = None
        if usage.total_tokens > 0:
            try:
                quota_status = await self.quota_ledger.try_consume(turn.session.user_id, usage.total_tokens)
            except QuotaExceededError:
                # Reply is already generated and billed upstream; keep it and block later turns
                await self.quota_ledger.flag_over_quota(turn.session.user_id)
                quota_exceeded = True

        free_quota = (
            turn.provider.free_quota_per_user_monthly
            if turn.credential.key_type == ServiceType.OFFICIAL_FREE
            else None
        )
        await self.quota_ledger.record_credential_usage(turn.credential.id, usage.total_tokens, free_quota)

        def add_usage(session: SessionRecord) -> None:
            session.total_input_tokens += input_tokens
            session.total_output_tokens += output_tokens

        await self.store.mutate(SessionRecord, turn.session.id, add_usage)

        logger.info(
            "Turn completed",
            extra={
                "session_id": turn.session.id,
                "user_id": turn.session.user_id,
                "sequence_number": assistant.sequence_number,
                "total_tokens": usage.total_tokens,
                "quota_exceeded": quota_exceeded,
            },
        )
        return TurnResult(
            session_id=turn.session.id,
            user_message_id=turn.user_message.id,
            user_sequence_number=turn.user_message.sequence_number,
            assistant_message_id=assistant.id,
            assistant_sequence_number=assistant.sequence_number,
            assistant_content=content,
            token_usage=usage,
            credential_id=turn.credential.id,
            key_type=turn.credential.key_type,
            model_code=turn.model.model_code,
            response_time_ms=response_time_ms,
            cost_estimate=str(cost),
            sources=[
                RetrievedSource(
                    chunk_id=s.chunk_id,
                    document_id=s.document_id,
                    kb_id=s.kb_id,
                    chunk_index=s.chunk_index,
                    score=s.score,
                )
                for s in turn.sources
            ],
            quota_warning=bool(quota_status and quota_status.warning),
            quota_exceeded=quota_exceeded,
        )

    async def send_message(self, session_id: str, content: str, user_id: str | None = None) -> TurnResult:
        """Run one buffered conversation turn.

        Raises:
            SessionNotActiveError: The session is not ACTIVE.
            QuotaExceededError: The user is already over quota (nothing is written).
            NoAvailableCredentialError, EmbeddingFailureError: Before any provider
                call; the user message stays persisted without a reply.
            RateLimitExceededError, UnsupportedProviderError, ProviderTransientError,
                ProviderFatalError: From the model call; likewise no reply is stored.
        """
        turn = await self._prepare_turn(session_id, content, user_id)
        started = time.perf_counter()
        response = await self.model_gateway.invoke(turn.request, turn.provider, turn.credential)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        return await self._complete_turn(
            turn,
            response.content,
            response.input_tokens,
            response.output_tokens,
            elapsed_ms,
            {"finish_reason": response.finish_reason, "attempts": response.attempts},
        )

    async def stream_message(
        self, session_id: str, content: str, user_id: str | None = None
    ) -> AsyncIterator[TurnStreamEvent]:
        """Streaming variant of ``send_message``.

        Yields content deltas and then a single ``done`` event carrying the
        TurnResult. The assistant message is persisted only after the stream
        completes; on cancellation or error the partial content is discarded.
        """
        turn = await self._prepare_turn(session_id, content, user_id)
        started = time.perf_counter()
        parts: list[str] = []
        completed = False
        events = self.model_gateway.stream(turn.request, turn.provider, turn.credential)
        try:
            async with aclosing(events):
                async for event in events:
                    if event.type == "delta":
                        parts.append(event.content)
                        yield TurnStreamEvent(type="delta", content=event.content)
                        continue
                    elapsed_ms = int((time.perf_counter() - started) * 1000)
                    result = await self._complete_turn(
                        turn,
                        "".join(parts),
                        event.input_tokens,
                        event.output_tokens,
                        elapsed_ms,
                        {"finish_reason": event.finish_reason, "streamed": True, **event.metadata},
                    )
                    completed = True
                    yield TurnStreamEvent(type="done", result=result)
                    return
        finally:
            if not completed:
                logger.warning(
                    "Streaming turn did not complete; partial output discarded",
                    extra={"session_id": session_id, "discarded_chars": sum(len(p) for p in parts)},
                )

    # ------------------------------------------------------------------
    # passthroughs
    # ------------------------------------------------------------------
    async def search_knowledge_base(
        self, kb_ids: Sequence[str], query: str, limit: int | None = None, user_id: str | None = None
    ) -> list[SearchResult]:
        return await self.knowledge_retriever.search(kb_ids, query, limit, user_id=user_id)

    async def consume_quota(self, user_id: str, tokens: int) -> QuotaStatus:
        """Out-of-band accounting, e.g. administrative adjustments."""
        return await self.quota_ledger.try_consume(user_id, tokens)
