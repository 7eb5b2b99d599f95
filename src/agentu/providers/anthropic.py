"""Anthropic Messages API wire format."""

from typing import Any

from .base import BackendContext, ChatRequest, ChatResponse
from .http_backend import StreamState

DEFAULT_API_VERSION = "2023-06-01"
# Messages API requires max_tokens on every request
FALLBACK_MAX_TOKENS = 1024


class AnthropicDialect:
    name = "anthropic"
    default_base_url = "https://api.anthropic.com/v1"

    def endpoint(self, request: ChatRequest, stream: bool) -> str:
        return "/messages"

    def headers(self, ctx: BackendContext) -> dict[str, str]:
        return {
            "x-api-key": ctx.api_key or "",
            "anthropic-version": ctx.provider.api_version or DEFAULT_API_VERSION,
        }

    def build_payload(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        system_parts = [m["content"] for m in request.messages if m["role"] == "system"]
        messages = [
            {"role": "assistant" if m["role"] == "assistant" else "user", "content": m["content"]}
            for m in request.messages
            if m["role"] != "system"
        ]
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or FALLBACK_MAX_TOKENS,
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if request.temperature is not None:
            # Anthropic accepts 0..1
            payload["temperature"] = min(1.0, request.temperature)
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        return payload

    def parse_completion(self, data: dict[str, Any]) -> ChatResponse:
        text = "".join(block.get("text", "") for block in data["content"] if block.get("type") == "text")
        usage = data.get("usage") or {}
        return ChatResponse(
            content=text,
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            finish_reason=data.get("stop_reason"),
            model=data.get("model"),
        )

    def parse_stream_event(self, data: dict[str, Any], state: StreamState) -> str | None:
        event_type = data.get("type")
        if event_type == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            state.input_tokens = int(usage.get("input_tokens") or 0)
        elif event_type == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta":
                return delta.get("text")
        elif event_type == "message_delta":
            usage = data.get("usage") or {}
            state.output_tokens = int(usage.get("output_tokens") or state.output_tokens)
            state.finish_reason = (data.get("delta") or {}).get("stop_reason") or state.finish_reason
        return None


anthropic_dialect = AnthropicDialect()
