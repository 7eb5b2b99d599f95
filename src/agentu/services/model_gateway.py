"""
Model gateway: dispatches provider-neutral requests to provider backends.

Responsibilities:
- resolve the backend for ``provider.code`` (UnsupportedProviderError otherwise)
- resolve the API key (user secret or the provider's official key)
- enforce per-credential RPM/TPM limits before any upstream call
- apply the provider timeout and retry transient failures with capped
  exponential backoff plus jitter; fatal failures are raised at once
- streaming: retries only until the first content delta has been yielded
"""

import asyncio
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import httpx

from ..core.config import Settings, get_settings_instance
from ..core.exceptions import (
    ProviderFatalError,
    ProviderTransientError,
    RateLimitExceededError,
    SecretEncryptionError,
    UnsupportedProviderError,
)
from ..core.logging import get_logger
from ..core.rate_limiting import RateLimitService, get_rate_limit_service
from ..core.secret_encryption import SecretEncryptionService, get_secret_encryption_service
from ..models.enums import ServiceType
from ..models.records import CredentialRecord, ProviderRecord
from ..providers import (
    BackendContext,
    ChatRequest,
    ChatResponse,
    ModelBackend,
    StreamEvent,
    available_backends,
    lookup_backend,
)
from ..utils.tokenization import estimate_message_tokens, estimate_tokens

logger = get_logger(__name__)


class ModelGateway:
    """Buffered and streaming provider calls with rate limiting and retries."""

    def __init__(
        self,
        settings: Settings | None = None,
        rate_limiter: RateLimitService | None = None,
        secrets: SecretEncryptionService | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or get_settings_instance()
        self.rate_limiter = rate_limiter or get_rate_limit_service()
        self._secrets = secrets
        self._client = client
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._slots: dict[str, asyncio.Semaphore] = {}
        self._slot_users: dict[str, int] = {}

    # ------------------------------------------------------------------
    # resolution
    # ------------------------------------------------------------------
    def resolve_backend(self, provider: ProviderRecord) -> ModelBackend:
        backend = lookup_backend(provider.code)
        if backend is None:
            logger.warning("Unsupported provider code", extra={"provider_code": provider.code})
            raise UnsupportedProviderError(provider.code, available_backends())
        return backend

    def resolve_api_key(self, provider: ProviderRecord, credential: CredentialRecord) -> str | None:
        """Decrypt the secret the credential's key type calls for."""
        if credential.key_type == ServiceType.USER_PROVIDED:
            encrypted = credential.encrypted_secret
        else:
            encrypted = provider.official_api_key_encrypted
        if not encrypted:
            return None
        if self._secrets is None:
            self._secrets = get_secret_encryption_service()
        try:
            return self._secrets.decrypt(encrypted)
        except SecretEncryptionError as e:
            raise ProviderFatalError(
                "credential secret cannot be decrypted",
                {"provider": provider.code, "credential_id": credential.id},
            ) from e

    def _context(self, provider: ProviderRecord, credential: CredentialRecord) -> BackendContext:
        return BackendContext(
            provider=provider,
            api_key=self.resolve_api_key(provider, credential),
            client=self._client,
            timeout=float(provider.timeout_seconds),
        )

    # ------------------------------------------------------------------
    # admission control
    # ------------------------------------------------------------------
    async def check_rate_limits(
        self, provider: ProviderRecord, credential: CredentialRecord, request: ChatRequest
    ) -> None:
        """Reject locally when the credential's RPM or TPM budget is spent.

        Raises:
            RateLimitExceededError: With ``details["retry_after"]`` in seconds.
        """
        estimated = estimate_message_tokens(request.messages)
        result = await self.rate_limiter.admit(credential.id, provider.id, provider.rate_limit_config, estimated)
        if not result.allowed:
            self._reject(result.kind, provider, credential, result.to_details())

    @staticmethod
    def _reject(kind: str, provider: ProviderRecord, credential: CredentialRecord, details: dict) -> None:
        details = {**details, "kind": kind, "provider_id": provider.id, "credential_id": credential.id}
        logger.warning("Provider rate limit exceeded", extra=details)
        raise RateLimitExceededError(f"Rate limit exceeded ({kind}) for provider '{provider.code}'", details)

    @asynccontextmanager
    async def _slot(self, provider: ProviderRecord, credential: CredentialRecord) -> AsyncIterator[None]:
        limit = self.settings.llm_max_concurrent_requests
        if limit <= 0:
            yield
            return
        key = f"{credential.id}:{provider.id}"
        semaphore = self._slots.get(key)
        if semaphore is None:
            semaphore = self._slots[key] = asyncio.Semaphore(limit)
        # Dropped once no call holds or waits on it
        self._slot_users[key] = self._slot_users.get(key, 0) + 1
        try:
            async with semaphore:
                yield
        finally:
            self._slot_users[key] -= 1
            if self._slot_users[key] == 0:
                del self._slot_users[key]
                del self._slots[key]

    def retry_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Exponential backoff capped at ``llm_retry_max_delay`` plus jitter."""
        base = self.settings.llm_retry_base_delay
        cap = self.settings.llm_retry_max_delay
        delay = min(base * (2**attempt), cap)
        if retry_after:
            delay = max(delay, min(float(retry_after), cap))
        return delay + self._rng.uniform(0, base)

    async def _backoff(self, error: ProviderTransientError, provider: ProviderRecord, attempt: int) -> None:
        delay = self.retry_delay(attempt, (error.details or {}).get("retry_after"))
        logger.warning(
            "Transient provider error, retrying",
            extra={"provider": provider.code, "attempt": attempt + 1, "delay": round(delay, 3), "error": error.message},
        )
        await self._sleep(delay)

    @staticmethod
    def _exhausted(error: ProviderTransientError, provider: ProviderRecord, attempts: int) -> ProviderTransientError:
        details = {**(error.details or {}), "attempts": attempts, "provider": provider.code}
        logger.error("Provider retries exhausted", extra=details)
        return ProviderTransientError(f"{provider.code} failed after {attempts} attempts", details)

    # ------------------------------------------------------------------
    # calls
    # ------------------------------------------------------------------
    async def invoke(
        self, request: ChatRequest, provider: ProviderRecord, credential: CredentialRecord
    ) -> ChatResponse:
        """Buffered completion.

        Raises:
            UnsupportedProviderError: Unknown provider code.
            RateLimitExceededError: Local RPM/TPM budget exhausted.
            ProviderTransientError: Transient failures outlasted ``max_retries``.
            ProviderFatalError: Authentication or request errors; not retried.
        """
        backend = self.resolve_backend(provider)
        ctx = self._context(provider, credential)
        await self.check_rate_limits(provider, credential, request)

        max_retries = max(0, provider.max_retries)
        async with self._slot(provider, credential):
            attempt = 0
            while True:
                try:
                    async with asyncio.timeout(ctx.timeout):
                        response = await backend.complete(request, ctx)
                except TimeoutError:
                    error = ProviderTransientError(
                        f"{provider.code} timed out after {ctx.timeout}s", {"provider": provider.code}
                    )
                except ProviderTransientError as e:
                    error = e
                else:
                    response.attempts = attempt + 1
                    self._fill_usage(request, response)
                    logger.info(
                        "Provider call completed",
                        extra={
                            "provider": provider.code,
                            "model": request.model,
                            "attempts": attempt + 1,
                            "input_tokens": response.input_tokens,
                            "output_tokens": response.output_tokens,
                        },
                    )
                    return response

                if attempt >= max_retries:
                    raise self._exhausted(error, provider, attempt + 1)
                await self._backoff(error, provider, attempt)
                attempt += 1

    @staticmethod
    def _fill_usage(request: ChatRequest, response: ChatResponse) -> None:
        # Some backends omit usage; fall back to local estimates
        if response.input_tokens <= 0:
            response.input_tokens = estimate_message_tokens(request.messages)
        if response.output_tokens <= 0 and response.content:
            response.output_tokens = estimate_tokens(response.content)

    async def stream(
        self, request: ChatRequest, provider: ProviderRecord, credential: CredentialRecord
    ) -> AsyncIterator[StreamEvent]:
        """Streaming completion yielding deltas, then one ``final`` event with usage.

        Each attempt must deliver its final event within the provider timeout,
        measured from the start of the attempt, so a slow trickle of deltas
        cannot hold the call open. Transient failures are retried only while
        nothing has been yielded.
        """
        backend = self.resolve_backend(provider)
        ctx = self._context(provider, credential)
        await self.check_rate_limits(provider, credential, request)

        max_retries = max(0, provider.max_retries)
        async with self._slot(provider, credential):
            loop = asyncio.get_running_loop()
            attempt = 0
            while True:
                produced: list[str] = []
                deadline = loop.time() + ctx.timeout
                events = backend.stream(request, ctx)
                try:
                    while True:
                        try:
                            async with asyncio.timeout_at(deadline):
                                event = await anext(events)
                        except StopAsyncIteration:
                            break
                        except TimeoutError as e:
                            raise ProviderTransientError(
                                f"{provider.code} stream did not complete within {ctx.timeout}s",
                                {"provider": provider.code, "timeout": ctx.timeout},
                            ) from e
                        if event.type == "final":
                            event.input_tokens = event.input_tokens or estimate_message_tokens(request.messages)
                            event.output_tokens = event.output_tokens or estimate_tokens("".join(produced))
                            event.metadata["attempts"] = attempt + 1
                            yield event
                            return
                        produced.append(event.content)
                        yield event
                    raise ProviderTransientError(
                        f"{provider.code} stream ended without completion", {"provider": provider.code}
                    )
                except ProviderTransientError as e:
                    if produced:
                        raise
                    if attempt >= max_retries:
                        raise self._exhausted(e, provider, attempt + 1) from e
                    await self._backoff(e, provider, attempt)
                    attempt += 1
                finally:
                    await events.aclose()


_model_gateway: ModelGateway | None = None


def get_model_gateway() -> ModelGateway:
    global _model_gateway  # noqa: PLW0603
    if _model_gateway is None:
        _model_gateway = ModelGateway()
    return _model_gateway
