"""
Provider-neutral request/response types and the backend capability interface.

A backend is anything satisfying ``ModelBackend``; backends are looked up by
provider code in ``agentu.providers.registry``.
"""

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import httpx

from ..core.exceptions import ProviderError, ProviderFatalError, ProviderTransientError
from ..models.records import ProviderRecord

# Upstream statuses worth retrying: timeouts, conflicts, rate limits and server errors
TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429})


@dataclass
class ChatRequest:
    """A provider-neutral completion request."""

    model: str
    messages: list[dict[str, str]]
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None

    def sampling_params(self) -> dict[str, Any]:
        params = {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            "frequency_penalty": self.frequency_penalty,
            "presence_penalty": self.presence_penalty,
        }
        return {k: v for k, v in params.items() if v is not None}


@dataclass
class ChatResponse:
    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: str | None = None
    model: str | None = None
    attempts: int = 1

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class StreamEvent:
    """One streaming event: a content delta, or the final usage summary."""

    type: Literal["delta", "final"]
    content: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class BackendContext:
    """Everything a backend needs for one call besides the request itself."""

    provider: ProviderRecord
    api_key: str | None
    client: httpx.AsyncClient | None
    timeout: float


class ModelBackend(Protocol):
    async def complete(self, request: ChatRequest, ctx: BackendContext) -> ChatResponse: ...

    def stream(self, request: ChatRequest, ctx: BackendContext) -> AsyncIterator[StreamEvent]: ...


def _error_details(exc: httpx.HTTPStatusError) -> dict[str, Any]:
    response = exc.response
    details: dict[str, Any] = {"upstream_status": response.status_code}
    request_id = response.headers.get("x-request-id")
    if request_id:
        details["request_id"] = request_id
    retry_after = response.headers.get("retry-after")
    if retry_after:
        try:
            details["retry_after"] = float(retry_after)
        except ValueError:
            pass
    try:
        body = response.json()
    except (ValueError, httpx.ResponseNotRead):
        body = None
    if isinstance(body, dict):
        error_section = body.get("error")
        if isinstance(error_section, dict):
            details["provider_message"] = error_section.get("message") or error_section.get("type")
        elif isinstance(error_section, str):
            details["provider_message"] = error_section
    return details


def classify_http_error(exc: Exception, provider_code: str) -> ProviderError:
    """Map an httpx failure onto the transient/fatal split."""
    if isinstance(exc, httpx.HTTPStatusError):
        details = _error_details(exc)
        details["provider"] = provider_code
        status = exc.response.status_code
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            return ProviderTransientError(f"{provider_code} returned HTTP {status}", details)
        if status in (401, 403):
            return ProviderFatalError(f"{provider_code} rejected the credentials (HTTP {status})", details)
        return ProviderFatalError(f"{provider_code} rejected the request (HTTP {status})", details)
    if isinstance(exc, httpx.TimeoutException):
        return ProviderTransientError(f"{provider_code} timed out", {"provider": provider_code, "error_type": type(exc).__name__})
    if isinstance(exc, httpx.TransportError):
        return ProviderTransientError(
            f"{provider_code} connection failed: {exc}", {"provider": provider_code, "error_type": type(exc).__name__}
        )
    return ProviderFatalError(f"{provider_code} call failed: {exc}", {"provider": provider_code, "error_type": type(exc).__name__})
