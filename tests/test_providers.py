"""Tests for the Claude, OpenAI and Gemini adapters."""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Callable, cast

import httpx
import pytest
from openai import AsyncOpenAI

from storyforge.ai.ai_types import Provider, ProviderRequest, StreamDelta
from storyforge.ai.errors import TransportError
from storyforge.ai.providers import AdapterOptions, ClaudeAdapter, GeminiAdapter, OpenAIAdapter, normalize_http_error

CLAUDE_SSE = "\n".join(
    [
        "event: message_start",
        'data: {"type":"message_start","message":{"usage":{"input_tokens":12,"output_tokens":1,"cache_read_input_tokens":8}}}',
        "",
        "event: content_block_delta",
        'data: {"type":"content_block_delta","delta":{"type":"text_delta","text":"Hel"}}',
        "",
        ": keep-alive",
        "",
        "event: content_block_delta",
        'data: {"type":"content_block_delta","delta":{"type":"text_delta","text":"lo"}}',
        "",
        "event: message_delta",
        'data: {"type":"message_delta","delta":{"stop_reason":"end_turn"},"usage":{"output_tokens":5}}',
        "",
        "event: message_stop",
        'data: {"type":"message_stop"}',
        "",
    ]
)

GEMINI_SSE = "\n".join(
    [
        'data: {"candidates":[{"content":{"parts":[{"text":"Hi"}]}}]}',
        "",
        'data: {"candidates":[{"content":{"parts":[{"text":" there"}]},"finishReason":"STOP"}],'
        '"usageMetadata":{"promptTokenCount":7,"candidatesTokenCount":2}}',
        "",
    ]
)


def _options(base_url: str, **overrides: Any) -> AdapterOptions:
    values: dict[str, Any] = {"max_retries": 3, "retry_min_seconds": 0.0, "retry_max_seconds": 0.0}
    values.update(overrides)
    return AdapterOptions(base_url=base_url, **values)


def _request(model: str, **overrides: Any) -> ProviderRequest:
    values: dict[str, Any] = {
        "model": model,
        "api_key": "test-key",
        "system": "You are a co-writer.",
        "history": (),
        "user_message": "Hello",
    }
    values.update(overrides)
    return ProviderRequest(**values)


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _collect(adapter: Any, request: ProviderRequest) -> list[StreamDelta]:
    return [delta async for delta in adapter.stream(request)]


# =============================================================================
# Claude
# =============================================================================


class TestClaudeAdapter:
    @pytest.mark.asyncio
    async def test_stream_normalizes_sse_events(self) -> None:
        seen: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            assert request.headers["x-api-key"] == "test-key"
            return httpx.Response(200, text=CLAUDE_SSE, headers={"content-type": "text/event-stream"})

        adapter = ClaudeAdapter(_options("https://api.anthropic.com"), http_client=_client(handler))
        deltas = await _collect(adapter, _request("claude-sonnet-4-20250514", prompt_cache=True))

        assert [d.text for d in deltas if d.type == "text"] == ["Hel", "lo"]
        assert deltas[-1].type == "done"
        assert deltas[-1].stop_reason == "end_turn"
        assert deltas[-1].usage is not None
        assert deltas[-1].usage.input_tokens == 12
        assert deltas[-1].usage.output_tokens == 5
        assert deltas[-1].usage.cache_read_tokens == 8
        assert seen[0]["stream"] is True
        assert seen[0]["system"][0]["cache_control"] == {"type": "ephemeral"}

    @pytest.mark.asyncio
    async def test_retries_rate_limit_before_first_byte(self) -> None:
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] == 1:
                return httpx.Response(429, json={"error": {"message": "slow down"}})
            return httpx.Response(
                200,
                json={
                    "model": "claude-sonnet-4-20250514",
                    "content": [{"type": "text", "text": "Done"}],
                    "usage": {"input_tokens": 3, "output_tokens": 1},
                    "stop_reason": "end_turn",
                },
            )

        adapter = ClaudeAdapter(_options("https://api.anthropic.com"), http_client=_client(handler))
        response = await adapter.send(_request("claude-sonnet-4-20250514"))

        assert calls["count"] == 2
        assert response.content == "Done"
        assert response.usage.input_tokens == 3

    @pytest.mark.asyncio
    async def test_auth_errors_are_not_retried(self) -> None:
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            return httpx.Response(401, json={"error": {"type": "authentication_error", "message": "bad key"}})

        adapter = ClaudeAdapter(_options("https://api.anthropic.com"), http_client=_client(handler))
        with pytest.raises(TransportError) as excinfo:
            await adapter.send(_request("claude-sonnet-4-20250514"))

        assert excinfo.value.kind == "auth"
        assert "bad key" in str(excinfo.value)
        assert calls["count"] == 1

    @pytest.mark.asyncio
    async def test_rejected_cache_control_is_replayed_without_cache(self) -> None:
        payloads: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            payload = json.loads(request.content)
            payloads.append(payload)
            if isinstance(payload.get("system"), list):
                return httpx.Response(400, json={"error": {"message": "cache_control not supported"}})
            return httpx.Response(200, json={"content": [{"type": "text", "text": "ok"}], "usage": {}})

        adapter = ClaudeAdapter(_options("https://api.anthropic.com"), http_client=_client(handler))
        response = await adapter.send(_request("claude-sonnet-4-20250514", prompt_cache=True))

        assert response.content == "ok"
        assert len(payloads) == 2
        assert payloads[1]["system"] == "You are a co-writer."

    @pytest.mark.asyncio
    async def test_stream_without_message_stop_is_a_network_error(self) -> None:
        body = 'event: content_block_delta\ndata: {"type":"content_block_delta","delta":{"type":"text_delta","text":"Hi"}}\n\n'

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=body)

        adapter = ClaudeAdapter(_options("https://api.anthropic.com"), http_client=_client(handler))
        received: list[StreamDelta] = []
        with pytest.raises(TransportError) as excinfo:
            async for delta in adapter.stream(_request("claude-sonnet-4-20250514")):
                received.append(delta)

        assert [d.text for d in received] == ["Hi"]
        assert excinfo.value.kind == "network"


# =============================================================================
# Gemini
# =============================================================================


class TestGeminiAdapter:
    @pytest.mark.asyncio
    async def test_stream_reports_text_usage_and_done(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=GEMINI_SSE)

        adapter = GeminiAdapter(
            _options("https://generativelanguage.googleapis.com/v1beta"), http_client=_client(handler)
        )
        deltas = await _collect(adapter, _request("gemini-2.0-flash"))

        assert [d.text for d in deltas if d.type == "text"] == ["Hi", " there"]
        assert deltas[-1].type == "done"
        assert deltas[-1].stop_reason == "STOP"
        assert deltas[-1].usage is not None and deltas[-1].usage.input_tokens == 7
        assert "models/gemini-2.0-flash:streamGenerateContent" in str(seen[0].url)
        assert seen[0].url.params["alt"] == "sse"
        body = json.loads(seen[0].content)
        assert body["systemInstruction"]["parts"][0]["text"] == "You are a co-writer."

    @pytest.mark.asyncio
    async def test_rejected_cached_content_streams_uncached(self) -> None:
        bodies: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            if "cachedContent" in body:
                return httpx.Response(404, json={"error": {"message": "cache not found"}})
            return httpx.Response(200, text=GEMINI_SSE)

        adapter = GeminiAdapter(
            _options("https://generativelanguage.googleapis.com/v1beta"), http_client=_client(handler)
        )
        deltas = await _collect(adapter, _request("gemini-2.0-flash", cached_content="cachedContents/abc"))

        assert deltas[0].type == "cache_rejected"
        assert "".join(d.text for d in deltas) == "Hi there"
        assert bodies[0]["cachedContent"] == "cachedContents/abc"
        assert "systemInstruction" not in bodies[0]
        assert "systemInstruction" in bodies[1]

    @pytest.mark.asyncio
    async def test_blocked_prompt_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

        adapter = GeminiAdapter(
            _options("https://generativelanguage.googleapis.com/v1beta"), http_client=_client(handler)
        )
        with pytest.raises(TransportError, match="SAFETY"):
            await adapter.send(_request("gemini-1.5-flash"))


# =============================================================================
# OpenAI
# =============================================================================


class _FakeStream:
    def __init__(self, chunks: list[Any]) -> None:
        self._chunks = list(chunks)
        self.closed = False

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def close(self) -> None:
        self.closed = True


def _chunk(text: str | None = None, finish: str | None = None, usage: Any = None) -> SimpleNamespace:
    choices = [] if text is None and finish is None else [
        SimpleNamespace(delta=SimpleNamespace(content=text), finish_reason=finish)
    ]
    return SimpleNamespace(choices=choices, usage=usage)


class TestOpenAIAdapter:
    @pytest.mark.asyncio
    async def test_stream_uses_sdk_and_closes_it(self) -> None:
        payloads: list[dict[str, Any]] = []
        stream = _FakeStream(
            [
                _chunk("Hel"),
                _chunk("lo", finish="stop"),
                _chunk(usage=SimpleNamespace(prompt_tokens=5, completion_tokens=3, prompt_tokens_details=None)),
            ]
        )

        async def create(**payload: Any) -> Any:
            payloads.append(payload)
            return stream

        fake = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        adapter = OpenAIAdapter(_options("https://api.openai.com/v1"), client=cast(AsyncOpenAI, fake))
        deltas = await _collect(adapter, _request("gpt-5-mini"))

        assert "".join(d.text for d in deltas) == "Hello"
        assert deltas[-1].type == "done"
        assert deltas[-1].stop_reason == "stop"
        assert deltas[-1].usage is not None and deltas[-1].usage.output_tokens == 3
        assert stream.closed is True
        assert payloads[0]["messages"][0] == {"role": "system", "content": "You are a co-writer."}
        assert payloads[0]["max_completion_tokens"] == 4096
        assert "temperature" not in payloads[0]
        assert payloads[0]["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_send_maps_non_reasoning_payload(self) -> None:
        payloads: list[dict[str, Any]] = []

        async def create(**payload: Any) -> Any:
            payloads.append(payload)
            return SimpleNamespace(
                model="gpt-4o",
                choices=[SimpleNamespace(message=SimpleNamespace(content="Sure"), finish_reason="stop")],
                usage=SimpleNamespace(
                    prompt_tokens=10,
                    completion_tokens=2,
                    prompt_tokens_details=SimpleNamespace(cached_tokens=4),
                ),
            )

        fake = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        adapter = OpenAIAdapter(_options("https://api.openai.com/v1"), client=cast(AsyncOpenAI, fake))
        response = await adapter.send(_request("gpt-4o", temperature=0.3))

        assert response.content == "Sure"
        assert response.usage.cache_read_tokens == 4
        assert payloads[0]["max_tokens"] == 4096
        assert payloads[0]["temperature"] == 0.3


# =============================================================================
# Error normalization
# =============================================================================


@pytest.mark.parametrize(
    ("status", "kind", "retryable"),
    [(401, "auth", False), (403, "auth", False), (429, "rate_limit", True), (400, "bad_request", False), (503, "server", True)],
)
def test_normalize_http_error(status: int, kind: str, retryable: bool) -> None:
    response = httpx.Response(status, json={"error": {"message": "nope"}}, headers={"retry-after": "2"})

    error = normalize_http_error(Provider.OPENAI, response)

    assert error.kind == kind
    assert error.retryable is retryable
    assert error.status_code == status
    assert "nope" in str(error)
    if status == 429:
        assert error.retry_after == 2.0
