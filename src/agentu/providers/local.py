"""
Local echo backend.

Answers without any network call, for development setups and tests. The
reply echoes the last user message; usage is estimated with the tokenizer.
"""

from collections.abc import AsyncIterator

from ..utils.tokenization import estimate_message_tokens, estimate_tokens
from .base import BackendContext, ChatRequest, ChatResponse, StreamEvent


class LocalEchoBackend:
    def __init__(self, prefix: str = "Echo: ") -> None:
        self.prefix = prefix

    def _reply(self, request: ChatRequest) -> str:
        last_user = next((m["content"] for m in reversed(request.messages) if m["role"] == "user"), "")
        reply = f"{self.prefix}{last_user}"
        if request.max_tokens:
            # rough cap, ~4 characters per token
            reply = reply[: request.max_tokens * 4]
        return reply

    async def complete(self, request: ChatRequest, ctx: BackendContext) -> ChatResponse:
        reply = self._reply(request)
        return ChatResponse(
            content=reply,
            input_tokens=estimate_message_tokens(request.messages),
            output_tokens=estimate_tokens(reply),
            finish_reason="stop",
            model=request.model,
        )

    async def stream(self, request: ChatRequest, ctx: BackendContext) -> AsyncIterator[StreamEvent]:
        reply = self._reply(request)
        for word in reply.split(" "):
            yield StreamEvent(type="delta", content=word + " ")
        yield StreamEvent(
            type="final",
            input_tokens=estimate_message_tokens(request.messages),
            output_tokens=estimate_tokens(reply),
            finish_reason="stop",
        )
