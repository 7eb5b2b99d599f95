"""
Tests for the HTTP chat backend, its dialects, and backend lookup.

Upstream APIs are simulated with ``httpx.MockTransport``.
"""

import json

import httpx
import pytest

from agentu.core.exceptions import ProviderFatalError, ProviderTransientError
from agentu.models.records import ProviderRecord
from agentu.providers import BackendContext, ChatRequest, classify_http_error, lookup_backend
from agentu.providers.anthropic import anthropic_dialect
from agentu.providers.google import gemini_dialect
from agentu.providers.http_backend import HttpChatBackend, StreamState
from agentu.providers.local import LocalEchoBackend
from agentu.providers.openai import openai_dialect

REQUEST = ChatRequest(
    model="gpt-test",
    messages=[
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Hello?"},
    ],
    temperature=1.5,
    max_tokens=64,
)


def context(client: httpx.AsyncClient, code: str = "openai", api_key: str | None = "sk-test", **provider_fields):
    provider = ProviderRecord(code=code, base_url="https://llm.example.com/v1", **provider_fields)
    return BackendContext(provider=provider, api_key=api_key, client=client, timeout=5.0)


def sse(*events) -> bytes:
    lines = [f"data: {json.dumps(e) if not isinstance(e, str) else e}\n\n" for e in events]
    return "".join(lines).encode()


class TestOpenAIBackend:
    @pytest.mark.asyncio
    async def test_complete(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["custom"] = request.headers.get("x-team")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "model": "gpt-test-0613",
                    "choices": [{"message": {"role": "assistant", "content": "Hi!"}, "finish_reason": "stop"}],
                    "usage": {"prompt_tokens": 12, "completion_tokens": 3},
                },
            )

        backend = HttpChatBackend(openai_dialect)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            response = await backend.complete(REQUEST, context(client, default_headers={"x-team": "core"}))

        assert response.content == "Hi!"
        assert (response.input_tokens, response.output_tokens) == (12, 3)
        assert response.finish_reason == "stop"
        assert response.model == "gpt-test-0613"
        assert seen["url"] == "https://llm.example.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["custom"] == "core"
        assert seen["body"]["temperature"] == 1.5
        assert seen["body"]["stream"] is False
        assert "top_p" not in seen["body"]

    @pytest.mark.asyncio
    async def test_stream(self):
        body = sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 2}},
            "[DONE]",
        )
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        backend = HttpChatBackend(openai_dialect)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            events = [e async for e in backend.stream(REQUEST, context(client))]

        assert [e.content for e in events if e.type == "delta"] == ["Hel", "lo"]
        final = events[-1]
        assert final.type == "final"
        assert (final.input_tokens, final.output_tokens, final.finish_reason) == (9, 2, "stop")
        assert requests[0]["stream"] is True
        assert requests[0]["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error": {"message": "overloaded"}}, headers={"retry-after": "2"})

        backend = HttpChatBackend(openai_dialect)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProviderTransientError) as exc_info:
                await backend.complete(REQUEST, context(client))

        details = exc_info.value.details
        assert details["upstream_status"] == 503
        assert details["retry_after"] == 2.0
        assert details["provider_message"] == "overloaded"

    @pytest.mark.asyncio
    async def test_stream_rate_limit_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": {"message": "slow down"}})

        backend = HttpChatBackend(openai_dialect)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProviderTransientError):
                async for _ in backend.stream(REQUEST, context(client)):
                    pass

    @pytest.mark.asyncio
    async def test_auth_error_is_fatal(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "invalid key"}})

        backend = HttpChatBackend(openai_dialect)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProviderFatalError, match="credentials"):
                await backend.complete(REQUEST, context(client))

    @pytest.mark.asyncio
    async def test_missing_api_key_is_fatal_without_a_request(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        backend = HttpChatBackend(openai_dialect)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProviderFatalError):
                await backend.complete(REQUEST, context(client, api_key=None))
        assert calls == []

    @pytest.mark.asyncio
    async def test_malformed_body_is_fatal(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": []})

        backend = HttpChatBackend(openai_dialect)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProviderFatalError, match="malformed"):
                await backend.complete(REQUEST, context(client))


class TestAnthropicDialect:
    def test_payload_moves_system_prompt_and_caps_temperature(self):
        payload = anthropic_dialect.build_payload(REQUEST, stream=False)

        assert payload["system"] == "Be brief."
        assert payload["messages"] == [{"role": "user", "content": "Hello?"}]
        assert payload["temperature"] == 1.0
        assert payload["max_tokens"] == 64

    def test_max_tokens_is_always_sent(self):
        request = ChatRequest(model="claude", messages=[{"role": "user", "content": "x"}])
        assert anthropic_dialect.build_payload(request, stream=True)["max_tokens"] > 0

    def test_parse_completion(self):
        response = anthropic_dialect.parse_completion(
            {
                "content": [{"type": "text", "text": "Hi"}, {"type": "text", "text": " there"}],
                "usage": {"input_tokens": 7, "output_tokens": 2},
                "stop_reason": "end_turn",
            }
        )
        assert response.content == "Hi there"
        assert (response.input_tokens, response.output_tokens) == (7, 2)

    def test_stream_events(self):
        state = StreamState()
        deltas = [
            anthropic_dialect.parse_stream_event(event, state)
            for event in [
                {"type": "message_start", "message": {"usage": {"input_tokens": 11}}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
                {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 4}},
            ]
        ]
        assert deltas == [None, "Hi", None]
        assert (state.input_tokens, state.output_tokens, state.finish_reason) == (11, 4, "end_turn")

    def test_headers(self):
        ctx = BackendContext(provider=ProviderRecord(code="anthropic"), api_key="key", client=None, timeout=1.0)
        headers = anthropic_dialect.headers(ctx)
        assert headers["x-api-key"] == "key"
        assert headers["anthropic-version"]


class TestGeminiDialect:
    def test_endpoint_and_payload(self):
        assert gemini_dialect.endpoint(REQUEST, stream=False) == "/models/gpt-test:generateContent"
        assert gemini_dialect.endpoint(REQUEST, stream=True).endswith(":streamGenerateContent?alt=sse")

        payload = gemini_dialect.build_payload(REQUEST, stream=False)
        assert payload["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert payload["contents"] == [{"role": "user", "parts": [{"text": "Hello?"}]}]
        assert payload["generationConfig"] == {"temperature": 1.5, "maxOutputTokens": 64}

    def test_parse_completion(self):
        response = gemini_dialect.parse_completion(
            {
                "candidates": [{"content": {"parts": [{"text": "Bonjour"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 1},
            }
        )
        assert response.content == "Bonjour"
        assert response.finish_reason == "STOP"
        assert (response.input_tokens, response.output_tokens) == (5, 1)

    def test_parse_completion_without_candidates(self):
        with pytest.raises(KeyError):
            gemini_dialect.parse_completion({"promptFeedback": {"blockReason": "SAFETY"}})


class TestClassifyHttpError:
    def _status_error(self, status: int) -> httpx.HTTPStatusError:
        request = httpx.Request("POST", "https://llm.example.com")
        response = httpx.Response(status, request=request, json={"error": "nope"})
        return httpx.HTTPStatusError("error", request=request, response=response)

    @pytest.mark.parametrize("status", [408, 409, 425, 429, 500, 502, 503])
    def test_transient_statuses(self, status):
        assert isinstance(classify_http_error(self._status_error(status), "openai"), ProviderTransientError)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_fatal_statuses(self, status):
        error = classify_http_error(self._status_error(status), "openai")
        assert isinstance(error, ProviderFatalError)
        assert error.details["provider_message"] == "nope"

    def test_transport_errors_are_transient(self):
        request = httpx.Request("POST", "https://llm.example.com")
        assert isinstance(classify_http_error(httpx.ConnectTimeout("slow", request=request), "x"), ProviderTransientError)
        assert isinstance(classify_http_error(httpx.ConnectError("refused", request=request), "x"), ProviderTransientError)


class TestRegistry:
    @pytest.mark.parametrize(
        "code,expected",
        [("openai", "openai"), ("openai-official", "openai"), ("ANTHROPIC-official", "anthropic"), ("zhipu", "zhipu")],
    )
    def test_prefix_lookup(self, code, expected):
        assert lookup_backend(code) is lookup_backend(expected)

    def test_unknown_code(self):
        assert lookup_backend("mystery-ai") is None
        assert lookup_backend("") is None


class TestLocalEchoBackend:
    @pytest.mark.asyncio
    async def test_complete_echoes_last_user_message(self):
        ctx = BackendContext(provider=ProviderRecord(code="local"), api_key=None, client=None, timeout=1.0)
        response = await LocalEchoBackend().complete(REQUEST, ctx)
        assert response.content == "Echo: Hello?"
        assert response.input_tokens > 0

    @pytest.mark.asyncio
    async def test_stream(self):
        ctx = BackendContext(provider=ProviderRecord(code="local"), api_key=None, client=None, timeout=1.0)
        events = [e async for e in LocalEchoBackend(prefix="").stream(REQUEST, ctx)]
        assert "".join(e.content for e in events if e.type == "delta").strip() == "Hello?"
        assert events[-1].type == "final"
