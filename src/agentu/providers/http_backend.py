"""
HTTP chat backend.

``HttpChatBackend`` owns the transport: POST for buffered completions, SSE
over ``aiter_lines`` for streaming, and error classification. The wire
format of each provider lives in a dialect object it is composed with.
"""

import json
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

from ..core.exceptions import ProviderFatalError
from ..core.http_client import get_http_client
from ..core.logging import get_logger
from .base import BackendContext, ChatRequest, ChatResponse, StreamEvent, classify_http_error

logger = get_logger(__name__)


class StreamState:
    """Accumulates usage and finish reason across stream events."""

    def __init__(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0
        self.finish_reason: str | None = None


class ChatDialect(Protocol):
    """Wire format of one provider family."""

    name: str
    default_base_url: str

    def endpoint(self, request: ChatRequest, stream: bool) -> str: ...

    def headers(self, ctx: BackendContext) -> dict[str, str]: ...

    def build_payload(self, request: ChatRequest, stream: bool) -> dict[str, Any]: ...

    def parse_completion(self, data: dict[str, Any]) -> ChatResponse: ...

    def parse_stream_event(self, data: dict[str, Any], state: StreamState) -> str | None: ...


def _sse_payloads(line: str) -> str | None:
    raw = line.strip()
    if not raw or raw.startswith((":", "event:", "id:", "retry:")):
        return None
    if raw.startswith("data:"):
        raw = raw[5:].lstrip()
    return raw


class HttpChatBackend:
    """A ModelBackend speaking HTTP in a given dialect."""

    def __init__(self, dialect: ChatDialect) -> None:
        self.dialect = dialect

    def _url(self, ctx: BackendContext, request: ChatRequest, stream: bool) -> str:
        base_url = (ctx.provider.base_url or self.dialect.default_base_url).rstrip("/")
        return base_url + self.dialect.endpoint(request, stream)

    def _headers(self, ctx: BackendContext) -> dict[str, str]:
        if not ctx.api_key:
            raise ProviderFatalError(
                f"no API key available for provider '{ctx.provider.code}'", {"provider": ctx.provider.code}
            )
        headers = dict(ctx.provider.default_headers or {})
        headers.update(self.dialect.headers(ctx))
        return headers

    async def complete(self, request: ChatRequest, ctx: BackendContext) -> ChatResponse:
        client = ctx.client or await get_http_client()
        url = self._url(ctx, request, stream=False)
        headers = self._headers(ctx)
        payload = self.dialect.build_payload(request, stream=False)
        logger.debug("Provider request", extra={"provider": ctx.provider.code, "url": url, "model": request.model})

        try:
            response = await client.post(url, json=payload, headers=headers, timeout=ctx.timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise classify_http_error(e, ctx.provider.code) from e
        except ValueError as e:
            raise ProviderFatalError("provider returned a non-JSON body", {"provider": ctx.provider.code}) from e

        try:
            result = self.dialect.parse_completion(data)
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderFatalError("malformed provider response", {"provider": ctx.provider.code}) from e
        result.model = result.model or request.model
        return result

    async def stream(self, request: ChatRequest, ctx: BackendContext) -> AsyncIterator[StreamEvent]:
        client = ctx.client or await get_http_client()
        url = self._url(ctx, request, stream=True)
        headers = self._headers(ctx)
        payload = self.dialect.build_payload(request, stream=True)
        state = StreamState()

        try:
            async with client.stream("POST", url, json=payload, headers=headers, timeout=ctx.timeout) as response:
                if response.is_error:
                    await response.aread()
                response.raise_for_status()
                async for line in response.aiter_lines():
                    data = _sse_payloads(line)
                    if data is None:
                        continue
                    if data in ("[DONE]", "DONE"):
                        break
                    if not data.startswith(("{", "[")):
                        continue
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping unparsable stream line", extra={"provider": ctx.provider.code})
                        continue
                    if not isinstance(chunk, dict):
                        continue
                    delta = self.dialect.parse_stream_event(chunk, state)
                    if delta:
                        yield StreamEvent(type="delta", content=delta)
        except httpx.HTTPError as e:
            raise classify_http_error(e, ctx.provider.code) from e

        yield StreamEvent(
            type="final",
            input_tokens=state.input_tokens,
            output_tokens=state.output_tokens,
            finish_reason=state.finish_reason,
        )
