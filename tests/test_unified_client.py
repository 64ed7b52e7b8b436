"""Tests for UnifiedClient dispatch, credentials and cache invalidation."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from storyforge.ai.ai_types import CacheInfo, Provider, StreamDelta, Usage
from storyforge.ai.client import AIConfig, ClientContext, UnifiedClient
from storyforge.ai.errors import ConfigurationError, MissingCredentialError, TransportError
from storyforge.chat.models import ChatMessage, MessageStatus

from conftest import API_KEYS, CLAUDE_MODEL, GEMINI_MODEL, FakeAdapter, text_deltas


class RecordingInvalidator:
    def __init__(self) -> None:
        self.forgotten: list[CacheInfo] = []

    def forget(self, info: CacheInfo) -> None:
        self.forgotten.append(info)


def _cache(model: str = GEMINI_MODEL) -> CacheInfo:
    return CacheInfo(
        cache_id="cachedContents/abc",
        project_id="p1",
        provider=Provider.GOOGLE,
        model=model,
        fingerprint="f",
        created_at=0.0,
        expires_at=9e12,
    )


class TestSend:
    @pytest.mark.asyncio
    async def test_returns_complete_assistant_message(self, make_client: Callable[..., Any]) -> None:
        client, adapter = make_client(scripts=[text_deltas("Hello", " there", usage=Usage(10, 2))])

        message = await client.send(
            [ChatMessage(id="m1", role="user", content="Hi")],
            system="persona",
        )

        assert message.role == "assistant"
        assert message.status is MessageStatus.COMPLETE
        assert message.content == "Hello there"
        assert message.usage == Usage(10, 2)
        assert message.model == CLAUDE_MODEL
        request = adapter.requests[0]
        assert request.system == "persona"
        assert request.user_message == "Hi"
        assert request.prompt_cache is True

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_request(self, make_client: Callable[..., Any]) -> None:
        client, adapter = make_client(with_keys=False)

        with pytest.raises(MissingCredentialError):
            await client.send([{"role": "user", "content": "Hi"}])

        assert adapter.requests == []

    @pytest.mark.asyncio
    async def test_history_must_end_with_user_turn(self, make_client: Callable[..., Any]) -> None:
        client, _ = make_client()

        with pytest.raises(ConfigurationError):
            await client.send([{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Yo"}])

    @pytest.mark.asyncio
    async def test_provider_follows_per_call_model(self, make_client: Callable[..., Any]) -> None:
        client, _ = make_client()

        with pytest.raises(ConfigurationError):
            await client.send([{"role": "user", "content": "Hi"}], AIConfig(model="unknown-model"))


class TestSendStream:
    @pytest.mark.asyncio
    async def test_missing_key_raises_on_first_iteration(self, make_client: Callable[..., Any]) -> None:
        client, adapter = make_client(with_keys=False)
        stream = client.send_stream([{"role": "user", "content": "Hi"}])

        with pytest.raises(MissingCredentialError):
            await stream.__anext__()
        assert adapter.requests == []

    @pytest.mark.asyncio
    async def test_cache_rejection_is_hidden_and_invalidated(self) -> None:
        adapter = FakeAdapter(
            Provider.GOOGLE,
            [[StreamDelta(type="cache_rejected"), *text_deltas("Hi")]],
        )
        invalidator = RecordingInvalidator()
        client = UnifiedClient(
            ClientContext(config=AIConfig(model=GEMINI_MODEL), api_keys=dict(API_KEYS)),
            adapters={Provider.GOOGLE: adapter},
            cache_invalidator=invalidator,
        )
        cache = _cache()

        deltas = [delta async for delta in client.send_stream([{"role": "user", "content": "Hi"}], cache=cache)]

        assert [delta.type for delta in deltas] == ["text", "usage", "done"]
        assert invalidator.forgotten == [cache]
        assert adapter.requests[0].cached_content == "cachedContents/abc"

    @pytest.mark.asyncio
    async def test_cache_for_other_model_is_not_sent(self) -> None:
        adapter = FakeAdapter(Provider.GOOGLE)
        client = UnifiedClient(
            ClientContext(config=AIConfig(model=GEMINI_MODEL), api_keys=dict(API_KEYS)),
            adapters={Provider.GOOGLE: adapter},
        )

        _ = [delta async for delta in client.send_stream([{"role": "user", "content": "Hi"}], cache=_cache("gemini-1.5-pro"))]

        assert adapter.requests[0].cached_content is None


class TestConnectionAndCost:
    @pytest.mark.asyncio
    async def test_malformed_key_is_rejected_without_network(self, make_client: Callable[..., Any]) -> None:
        client, adapter = make_client()

        check = await client.test_connection(Provider.ANTHROPIC, "not-a-key")

        assert check.ok is False
        assert adapter.requests == []

    @pytest.mark.asyncio
    async def test_rejected_key(self, make_client: Callable[..., Any]) -> None:
        client, adapter = make_client(scripts=[TransportError("401", kind="auth", status_code=401)])

        check = await client.test_connection(Provider.ANTHROPIC, API_KEYS[Provider.ANTHROPIC])

        assert check.ok is False
        assert check.message == "API key was rejected"
        assert adapter.requests[0].system == ""
        assert adapter.requests[0].history == ()

    @pytest.mark.asyncio
    async def test_rate_limited_key_counts_as_valid(self, make_client: Callable[..., Any]) -> None:
        client, _ = make_client(scripts=[TransportError("429", kind="rate_limit", status_code=429)])

        check = await client.test_connection(Provider.ANTHROPIC, API_KEYS[Provider.ANTHROPIC])

        assert check.ok is True

    def test_calculate_cost(self, make_client: Callable[..., Any]) -> None:
        client, _ = make_client()

        assert client.calculate_cost(Usage(1000, 1000), CLAUDE_MODEL).format() == "$0.0180"
        assert client.calculate_cost(Usage(1000, 1000), "unknown").format() == "unknown"

    def test_count_tokens_uses_estimate_for_claude(self, make_client: Callable[..., Any]) -> None:
        client, _ = make_client()

        assert client.count_tokens("a" * 40) == 10
        assert client.count_tokens("") == 0
