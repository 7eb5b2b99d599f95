"""Google Gemini ``generateContent`` wire format."""

from typing import Any

from .base import BackendContext, ChatRequest, ChatResponse
from .http_backend import StreamState


class GeminiDialect:
    name = "google"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def endpoint(self, request: ChatRequest, stream: bool) -> str:
        if stream:
            return f"/models/{request.model}:streamGenerateContent?alt=sse"
        return f"/models/{request.model}:generateContent"

    def headers(self, ctx: BackendContext) -> dict[str, str]:
        return {"x-goog-api-key": ctx.api_key or ""}

    def build_payload(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        system_parts = [{"text": m["content"]} for m in request.messages if m["role"] == "system"]
        contents = [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
            for m in request.messages
            if m["role"] != "system"
        ]
        generation_config = {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_tokens,
            "topP": request.top_p,
            "frequencyPenalty": request.frequency_penalty,
            "presencePenalty": request.presence_penalty,
        }
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {k: v for k, v in generation_config.items() if v is not None},
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        return payload

    @staticmethod
    def _text(data: dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    def parse_completion(self, data: dict[str, Any]) -> ChatResponse:
        if "candidates" not in data:
            raise KeyError("candidates")
        usage = data.get("usageMetadata") or {}
        candidates = data["candidates"]
        return ChatResponse(
            content=self._text(data),
            input_tokens=int(usage.get("promptTokenCount") or 0),
            output_tokens=int(usage.get("candidatesTokenCount") or 0),
            finish_reason=candidates[0].get("finishReason") if candidates else None,
            model=data.get("modelVersion"),
        )

    def parse_stream_event(self, data: dict[str, Any], state: StreamState) -> str | None:
        usage = data.get("usageMetadata")
        if usage:
            state.input_tokens = int(usage.get("promptTokenCount") or state.input_tokens)
            state.output_tokens = int(usage.get("candidatesTokenCount") or state.output_tokens)
        candidates = data.get("candidates") or []
        if candidates and candidates[0].get("finishReason"):
            state.finish_reason = candidates[0]["finishReason"]
        return self._text(data) or None


gemini_dialect = GeminiDialect()
