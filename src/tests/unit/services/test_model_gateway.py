"""
Tests for ModelGateway retries, streaming semantics and admission control.

Backends are scripted fakes registered under codes unique to each test;
backoff sleeps are recorded by the harness instead of awaited.
"""

import asyncio
import time
import uuid

import pytest
from cryptography.fernet import Fernet

from agentu.core.exceptions import (
    ProviderFatalError,
    ProviderTransientError,
    RateLimitExceededError,
    UnsupportedProviderError,
)
from agentu.core.secret_encryption import SecretEncryptionService
from agentu.models.enums import ServiceType
from agentu.models.records import CredentialRecord, ProviderRecord
from agentu.providers import ChatRequest, ChatResponse, StreamEvent
from agentu.providers.registry import register_backend
from agentu.services.model_gateway import ModelGateway

REQUEST = ChatRequest(model="m-1", messages=[{"role": "user", "content": "hi there"}])


class ScriptedBackend:
    """Plays back one outcome per call: an exception to raise or a value to return.

    For streaming, each outcome is a list of events where an exception
    entry is raised at that point of the stream.
    """

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def _next(self):
        self.calls += 1
        return self.outcomes.pop(0)

    async def complete(self, request, ctx):
        outcome = self._next()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def stream(self, request, ctx):
        for item in self._next():
            if isinstance(item, Exception):
                raise item
            yield item


def provider_for(backend, **fields) -> ProviderRecord:
    code = f"fake{uuid.uuid4().hex[:8]}"
    register_backend(code, backend)
    fields.setdefault("max_retries", 3)
    return ProviderRecord(code=code, **fields)


def credential_for(provider: ProviderRecord) -> CredentialRecord:
    return CredentialRecord(user_id="user", provider_id=provider.id, key_type=ServiceType.USER_PROVIDED)


def transient(message="upstream 503"):
    return ProviderTransientError(message, {"upstream_status": 503})


async def drain(gateway, provider, request=REQUEST):
    return [event async for event in gateway.stream(request, provider, credential_for(provider))]


class TestInvoke:
    @pytest.mark.asyncio
    async def test_retries_transient_errors_then_succeeds(self, harness):
        backend = ScriptedBackend([transient(), transient(), ChatResponse(content="ok", input_tokens=5, output_tokens=2)])
        provider = provider_for(backend)

        response = await harness.gateway.invoke(REQUEST, provider, credential_for(provider))

        assert response.content == "ok"
        assert response.attempts == 3
        assert backend.calls == 3
        assert len(harness.sleeps) == 2
        assert all(0 < delay <= 0.06 for delay in harness.sleeps)

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self, harness):
        backend = ScriptedBackend([ProviderFatalError("bad key"), ChatResponse(content="never")])
        provider = provider_for(backend)

        with pytest.raises(ProviderFatalError):
            await harness.gateway.invoke(REQUEST, provider, credential_for(provider))
        assert backend.calls == 1
        assert harness.sleeps == []

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, harness):
        backend = ScriptedBackend([transient() for _ in range(3)])
        provider = provider_for(backend, max_retries=2)

        with pytest.raises(ProviderTransientError) as exc_info:
            await harness.gateway.invoke(REQUEST, provider, credential_for(provider))

        assert exc_info.value.details["attempts"] == 3
        assert exc_info.value.details["provider"] == provider.code
        assert backend.calls == 3

    @pytest.mark.asyncio
    async def test_missing_usage_is_estimated(self, harness):
        provider = provider_for(ScriptedBackend([ChatResponse(content="a reply with some words")]))
        response = await harness.gateway.invoke(REQUEST, provider, credential_for(provider))
        assert response.input_tokens > 0
        assert response.output_tokens > 0

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, harness):
        provider = ProviderRecord(code="no-such-backend-xyz")
        with pytest.raises(UnsupportedProviderError) as exc_info:
            await harness.gateway.invoke(REQUEST, provider, credential_for(provider))
        assert "local" in exc_info.value.details["available"]

    @pytest.mark.asyncio
    async def test_rpm_limit_rejects_before_dispatch(self, harness):
        backend = ScriptedBackend([ChatResponse(content="one"), ChatResponse(content="two")])
        provider = provider_for(backend, rate_limit_config={"requests_per_minute": 1, "tokens_per_minute": 0})
        credential = credential_for(provider)

        await harness.gateway.invoke(REQUEST, provider, credential)
        with pytest.raises(RateLimitExceededError) as exc_info:
            await harness.gateway.invoke(REQUEST, provider, credential)

        assert exc_info.value.details["kind"] == "requests per minute"
        assert exc_info.value.details["retry_after"] > 0
        assert backend.calls == 1

    @pytest.mark.asyncio
    async def test_tpm_limit(self, harness):
        backend = ScriptedBackend([ChatResponse(content="one")])
        provider = provider_for(backend, rate_limit_config={"requests_per_minute": 0, "tokens_per_minute": 3})

        with pytest.raises(RateLimitExceededError) as exc_info:
            await harness.gateway.invoke(REQUEST, provider, credential_for(provider))
        assert exc_info.value.details["kind"] == "tokens per minute"
        assert backend.calls == 0


class TestApiKeyResolution:
    def test_secret_follows_key_type(self, harness):
        secrets = SecretEncryptionService(harness.settings)
        gateway = ModelGateway(harness.settings, harness.rate_limiter, secrets=secrets)
        provider = ProviderRecord(code="openai", official_api_key_encrypted=secrets.encrypt("sk-official"))
        credential = CredentialRecord(
            user_id="u",
            provider_id=provider.id,
            key_type=ServiceType.USER_PROVIDED,
            encrypted_secret=secrets.encrypt("sk-user"),
        )
        assert gateway.resolve_api_key(provider, credential) == "sk-user"

        official = CredentialRecord(user_id="u", provider_id=provider.id, key_type=ServiceType.OFFICIAL_FREE)
        assert gateway.resolve_api_key(provider, official) == "sk-official"

    def test_undecryptable_secret_is_fatal(self, harness, settings_factory):
        gateway = ModelGateway(harness.settings, harness.rate_limiter, secrets=SecretEncryptionService(harness.settings))
        other_key = settings_factory(secret_encryption_key=Fernet.generate_key().decode())
        foreign = SecretEncryptionService(other_key).encrypt("sk-user")
        provider = ProviderRecord(code="openai")
        credential = CredentialRecord(
            user_id="u", provider_id=provider.id, key_type=ServiceType.USER_PROVIDED, encrypted_secret=foreign
        )
        with pytest.raises(ProviderFatalError):
            gateway.resolve_api_key(provider, credential)


class TestStream:
    @pytest.mark.asyncio
    async def test_deltas_then_final(self, harness):
        backend = ScriptedBackend(
            [[StreamEvent(type="delta", content="Hel"), StreamEvent(type="delta", content="lo"), StreamEvent(type="final")]]
        )
        events = await drain(harness.gateway, provider_for(backend))

        assert [e.type for e in events] == ["delta", "delta", "final"]
        assert "".join(e.content for e in events) == "Hello"
        final = events[-1]
        assert final.input_tokens > 0
        assert final.output_tokens > 0
        assert final.metadata["attempts"] == 1

    @pytest.mark.asyncio
    async def test_retries_before_first_delta(self, harness):
        backend = ScriptedBackend(
            [[transient()], [StreamEvent(type="delta", content="ok"), StreamEvent(type="final", output_tokens=1)]]
        )
        events = await drain(harness.gateway, provider_for(backend))

        assert backend.calls == 2
        assert events[-1].metadata["attempts"] == 2
        assert len(harness.sleeps) == 1

    @pytest.mark.asyncio
    async def test_no_retry_after_first_delta(self, harness):
        backend = ScriptedBackend(
            [[StreamEvent(type="delta", content="partial"), transient()], [StreamEvent(type="final")]]
        )
        provider = provider_for(backend)
        received = []

        with pytest.raises(ProviderTransientError):
            async for event in harness.gateway.stream(REQUEST, provider, credential_for(provider)):
                received.append(event)

        assert [e.content for e in received] == ["partial"]
        assert backend.calls == 1

    @pytest.mark.asyncio
    async def test_stream_without_final_event_is_transient(self, harness):
        backend = ScriptedBackend([[], [], []])
        with pytest.raises(ProviderTransientError) as exc_info:
            await drain(harness.gateway, provider_for(backend, max_retries=2))
        assert exc_info.value.details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_fatal_stream_error(self, harness):
        backend = ScriptedBackend([[ProviderFatalError("denied")]])
        with pytest.raises(ProviderFatalError):
            await drain(harness.gateway, provider_for(backend))
        assert harness.sleeps == []


class TestRetryDelay:
    def test_backoff_is_capped(self, harness):
        delays = [harness.gateway.retry_delay(attempt) for attempt in range(10)]
        assert all(delay <= 0.05 + 0.01 for delay in delays)
        assert delays[0] < 0.05

    def test_retry_after_hint_is_respected_up_to_cap(self, harness):
        assert harness.gateway.retry_delay(0, retry_after=0.04) >= 0.04
        assert harness.gateway.retry_delay(0, retry_after=30) <= 0.06


class SlowStreamBackend:
    """Streams deltas with a fixed pause before each, then a final event."""

    def __init__(self, pieces: int, pause: float):
        self.pieces = pieces
        self.pause = pause

    async def complete(self, request, ctx):
        raise NotImplementedError

    async def stream(self, request, ctx):
        for i in range(self.pieces):
            await asyncio.sleep(self.pause)
            yield StreamEvent(type="delta", content=str(i))
        yield StreamEvent(type="final", output_tokens=self.pieces)


class TestStreamDeadline:
    @pytest.mark.asyncio
    async def test_trickling_stream_is_cut_off_at_provider_timeout(self, harness):
        provider = provider_for(SlowStreamBackend(pieces=6, pause=0.1), timeout_seconds=0.25, max_retries=0)
        received = []
        started = time.monotonic()

        with pytest.raises(ProviderTransientError, match="did not complete"):
            async for event in harness.gateway.stream(REQUEST, provider, credential_for(provider)):
                received.append(event)

        assert time.monotonic() - started < 0.5
        assert 0 < len(received) < 6
        assert all(e.type == "delta" for e in received)

    @pytest.mark.asyncio
    async def test_stream_within_timeout_completes(self, harness):
        provider = provider_for(SlowStreamBackend(pieces=3, pause=0.01), timeout_seconds=2)
        events = await drain(harness.gateway, provider)
        assert [e.type for e in events] == ["delta", "delta", "delta", "final"]


class GatedBackend:
    """Blocks every call until released, tracking how many run at once."""

    def __init__(self):
        self.release = asyncio.Event()
        self.running = 0
        self.peak = 0

    async def complete(self, request, ctx):
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            await self.release.wait()
            return ChatResponse(content="ok", input_tokens=1, output_tokens=1)
        finally:
            self.running -= 1

    async def stream(self, request, ctx):
        raise NotImplementedError
        yield


class TestConcurrencySlots:
    @pytest.mark.asyncio
    async def test_slots_bound_concurrency_and_are_released(self, harness, settings_factory):
        gateway = ModelGateway(settings_factory(llm_max_concurrent_requests=1), harness.rate_limiter)
        backend = GatedBackend()
        provider = provider_for(backend, rate_limit_config={"requests_per_minute": 0, "tokens_per_minute": 0})
        credential = credential_for(provider)

        calls = [asyncio.create_task(gateway.invoke(REQUEST, provider, credential)) for _ in range(3)]
        await asyncio.sleep(0.01)
        assert backend.peak == 1
        assert len(gateway._slots) == 1

        backend.release.set()
        await asyncio.gather(*calls)
        assert backend.peak == 1
        assert gateway._slots == {}
        assert gateway._slot_users == {}
