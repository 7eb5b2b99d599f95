"""OpenAI chat completions wire format (also spoken by Zhipu's v4 API)."""

from typing import Any

from .base import BackendContext, ChatRequest, ChatResponse
from .http_backend import StreamState


class OpenAIDialect:
    def __init__(self, name: str = "openai", default_base_url: str = "https://api.openai.com/v1") -> None:
        self.name = name
        self.default_base_url = default_base_url

    def endpoint(self, request: ChatRequest, stream: bool) -> str:
        return "/chat/completions"

    def headers(self, ctx: BackendContext) -> dict[str, str]:
        return {"Authorization": f"Bearer {ctx.api_key}"}

    def build_payload(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": request.model, "messages": request.messages, "stream": stream}
        payload.update(request.sampling_params())
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def parse_completion(self, data: dict[str, Any]) -> ChatResponse:
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return ChatResponse(
            content=choice["message"].get("content") or "",
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            finish_reason=choice.get("finish_reason"),
            model=data.get("model"),
        )

    def parse_stream_event(self, data: dict[str, Any], state: StreamState) -> str | None:
        usage = data.get("usage")
        if usage:
            state.input_tokens = int(usage.get("prompt_tokens") or 0)
            state.output_tokens = int(usage.get("completion_tokens") or 0)
        choices = data.get("choices") or []
        if not choices:
            return None
        choice = choices[0]
        if choice.get("finish_reason"):
            state.finish_reason = choice["finish_reason"]
        return (choice.get("delta") or {}).get("content")


openai_dialect = OpenAIDialect()
zhipu_dialect = OpenAIDialect(name="zhipu", default_base_url="https://open.bigmodel.cn/api/paas/v4")
