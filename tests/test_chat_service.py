"""Tests for AIChatService turn orchestration."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from storyforge.ai.ai_types import StreamDelta, Usage
from storyforge.ai.cache import GeminiCacheManager
from storyforge.ai.context import ContextBudget, ContextBudgetManager
from storyforge.ai.errors import ConfigurationError, MissingCredentialError, SessionBusyError, TransportError
from storyforge.ai.streaming import StreamOptions, StreamSessionManager
from storyforge.chat.events import (
    Event,
    EventBus,
    NoticePosted,
    PartialResponseAvailable,
    TurnCanceled,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
    TurnStreamChunk,
    UpdatesApplied,
)
from storyforge.chat.models import MessageStatus, SessionType
from storyforge.chat.service import AIChatService
from storyforge.domain import InMemoryProjectStore
from storyforge.services.partial_responses import PartialResponseStore
from storyforge.services.settings import Settings
from storyforge.utils.logging import set_debug_logging

from conftest import CLAUDE_MODEL, GEMINI_MODEL, CacheApi, FakeAdapter, text_deltas

HANGING_REPLY = [StreamDelta(type="text", text="Partial reply text")]


def _record(bus: EventBus, *event_types: type[Event]) -> list[Event]:
    received: list[Event] = []
    for event_type in event_types:
        bus.subscribe(event_type, received.append)
    return received


async def _wait_for_chunk(service: AIChatService) -> None:
    seen = asyncio.Event()
    service.events.subscribe(TurnStreamChunk, lambda event: seen.set())
    await asyncio.wait_for(seen.wait(), timeout=2.0)


@pytest.fixture
def build_service(
    make_client: Callable[..., Any], project_store: InMemoryProjectStore
) -> Callable[..., tuple[AIChatService, FakeAdapter]]:
    """Factory wiring the service to a scripted Claude adapter."""

    def factory(
        scripts: Any = (),
        *,
        gate: asyncio.Event | None = None,
        with_keys: bool = True,
        with_mutator: bool = True,
        partial_store: PartialResponseStore | None = None,
        budget: ContextBudget | None = None,
    ) -> tuple[AIChatService, FakeAdapter]:
        client, adapter = make_client(scripts=scripts, gate=gate, with_keys=with_keys)
        service = AIChatService(
            client,
            project_store,
            project_store if with_mutator else None,
            context_manager=ContextBudgetManager(project_store, budget=budget) if budget else None,
            stream_manager=StreamSessionManager(StreamOptions(chunk_buffer_size=1), partial_store=partial_store),
            partial_store=partial_store,
        )
        return service, adapter

    return factory


# =============================================================================
# Chat turns
# =============================================================================


class TestChatTurns:
    @pytest.mark.asyncio
    async def test_completed_turn(self, build_service: Callable[..., Any]) -> None:
        service, adapter = build_service([text_deltas("Hello", " world", usage=Usage(100, 20))])
        events = _record(service.events, TurnStarted, TurnStreamChunk, TurnCompleted)

        task = service.send_message("Who is Ren?", "p1")
        assert service.is_generating is True
        message = await task

        assert message.status is MessageStatus.COMPLETE
        assert message.content == "Hello world"
        assert message.usage == Usage(100, 20)
        assert message.token_count == 20
        assert message.model == CLAUDE_MODEL
        assert service.is_generating is False
        assert [type(event) for event in events] == [TurnStarted, TurnStreamChunk, TurnStreamChunk, TurnCompleted]
        assert [event.content for event in events[1:3]] == ["Hello", "Hello world"]
        completed = events[-1]
        assert isinstance(completed, TurnCompleted)
        assert completed.cost.startswith("$")
        request = adapter.requests[0]
        assert request.user_message == "Who is Ren?"
        assert request.history == ()
        assert "The Glass Tower" in request.system
        session = service.sessions.current_session("p1")
        assert session is not None
        assert [message.role for message in session.messages] == ["user", "assistant"]
        ledger = service.usage_ledger.events(project_id="p1")
        assert len(ledger) == 1
        assert ledger[0].output_tokens == 20

    def test_missing_credential_creates_no_state(self, build_service: Callable[..., Any]) -> None:
        service, adapter = build_service(with_keys=False)

        with pytest.raises(MissingCredentialError):
            service.send_message("Hello", "p1")

        assert service.sessions.current_session("p1") is None
        assert service.is_generating is False
        assert adapter.requests == []

    def test_blank_message_is_rejected(self, build_service: Callable[..., Any]) -> None:
        service, _ = build_service()

        with pytest.raises(ValueError):
            service.send_message("   ", "p1")

    @pytest.mark.asyncio
    async def test_second_send_while_generating_is_refused(self, build_service: Callable[..., Any]) -> None:
        service, _ = build_service([HANGING_REPLY], gate=asyncio.Event())
        task = service.send_message("First", "p1")

        with pytest.raises(SessionBusyError):
            service.send_message("Second", "p1")

        service.cancel_generation()
        await task
        session = service.sessions.current_session("p1")
        assert session is not None
        assert [message.role for message in session.messages] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_text(self, build_service: Callable[..., Any]) -> None:
        service, adapter = build_service([HANGING_REPLY], gate=asyncio.Event())
        canceled = _record(service.events, TurnCanceled)
        task = service.send_message("Describe the tower", "p1")
        await _wait_for_chunk(service)

        assert service.streaming_content == "Partial reply text"
        assert service.cancel_generation() == "Partial reply text"
        message = await task

        assert message.status is MessageStatus.CANCELLED
        assert message.content == "Partial reply text"
        assert message.error is not None and message.error.code == "STREAM_CANCELLED"
        assert len(canceled) == 1
        assert canceled[0].partial_content == "Partial reply text"
        assert adapter.closed_streams == 1
        assert service.cancel_generation() == ""

    @pytest.mark.asyncio
    async def test_stream_failure_is_reported_with_partial(self, build_service: Callable[..., Any]) -> None:
        script = [
            StreamDelta(type="text", text="Some partial text"),
            TransportError("upstream exploded", kind="server", status_code=500),
        ]
        service, _ = build_service([script])
        failed = _record(service.events, TurnFailed)

        message = await service.send_message("Hello", "p1")

        assert message.status is MessageStatus.ERROR
        assert message.content == "Some partial text"
        assert len(failed) == 1
        assert failed[0].code == "TRANSPORT_SERVER"
        assert failed[0].error == "upstream exploded"
        assert failed[0].partial_content == "Some partial text"

    @pytest.mark.asyncio
    async def test_context_overflow_fails_without_request(self, build_service: Callable[..., Any]) -> None:
        service, adapter = build_service(budget=ContextBudget(history=5))
        failed = _record(service.events, TurnFailed)

        message = await service.send_message("This message is far too long for the history budget", "p1")

        assert message.status is MessageStatus.ERROR
        assert message.error is not None
        assert message.error.code == "CONTEXT_OVERFLOW"
        assert message.error.retryable is False
        assert failed[0].code == "CONTEXT_OVERFLOW"
        assert adapter.requests == []

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_turn_and_frees_session(
        self,
        build_service: Callable[..., Any],
        project_store: InMemoryProjectStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        service, adapter = build_service([text_deltas("Recovered")])
        failed = _record(service.events, TurnFailed)

        async def locked_synopsis(project_id: str) -> str:
            raise RuntimeError("database is locked")

        monkeypatch.setattr(project_store, "get_synopsis", locked_synopsis)
        message = await service.send_message("Hello", "p1")

        assert message.status is MessageStatus.ERROR
        assert message.error is not None
        assert message.error.code == "AI_ERROR"
        assert "database is locked" in message.error.message
        assert [event.code for event in failed] == ["AI_ERROR"]
        assert service.is_generating is False
        assert adapter.requests == []

        monkeypatch.undo()
        retry = await service.send_message("Hello again", "p1")

        assert retry.status is MessageStatus.COMPLETE
        assert retry.content == "Recovered"

    @pytest.mark.asyncio
    async def test_vanished_stream_session_fails_turn(
        self,
        make_client: Callable[..., Any],
        project_store: InMemoryProjectStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        client, adapter = make_client()
        streams = StreamSessionManager()
        service = AIChatService(client, project_store, stream_manager=streams)
        monkeypatch.setattr(streams, "get", lambda session_id: None)

        message = await service.send_message("Hello", "p1")

        assert message.status is MessageStatus.ERROR
        assert message.error is not None
        assert "no longer registered" in message.error.message
        assert service.is_generating is False
        assert adapter.requests == []


# =============================================================================
# Agent turns
# =============================================================================


class TestAgentTurns:
    @pytest.mark.asyncio
    async def test_update_blocks_are_applied_and_hidden(
        self, build_service: Callable[..., Any], project_store: InMemoryProjectStore
    ) -> None:
        block = json.dumps({"type": "create_character", "data": {"name": "Kai", "role": "supporting"}})
        reply = f"I added Kai.\n\n```storyforge-update\n{block}\n```"
        service, adapter = build_service([text_deltas(reply)])
        events = _record(service.events, TurnStreamChunk, UpdatesApplied, NoticePosted)

        message = await service.send_agent_message("Add a rival named Kai", "p1")

        assert message.content == "I added Kai."
        assert [c.name for c in project_store.characters.values()].count("Kai") == 1
        assert "```storyforge-update" in adapter.requests[0].system
        chunk, applied, notice = events[0], events[2], events[1]
        assert isinstance(chunk, TurnStreamChunk) and chunk.content == "I added Kai."
        assert isinstance(notice, NoticePosted) and notice.message == "Created character 'Kai'"
        assert isinstance(applied, UpdatesApplied) and applied.summary == "1 of 1 changes applied"
        assert service.last_update_summary == "1 of 1 changes applied"

    def test_agent_mode_requires_mutator(self, build_service: Callable[..., Any]) -> None:
        service, _ = build_service(with_mutator=False)

        with pytest.raises(ConfigurationError):
            service.send_agent_message("Add a character", "p1")


# =============================================================================
# Gemini context cache
# =============================================================================


def _cached_text(request: httpx.Request) -> str:
    return json.loads(request.content)["systemInstruction"]["parts"][0]["text"]


class TestGeminiContextCache:
    @pytest.fixture
    def gemini_service(
        self, make_client: Callable[..., Any], project_store: InMemoryProjectStore
    ) -> tuple[AIChatService, FakeAdapter, CacheApi]:
        client, adapter = make_client(GEMINI_MODEL, scripts=[text_deltas("First"), text_deltas("Second")])
        api = CacheApi()
        caches = GeminiCacheManager(client.context, http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)))
        service = AIChatService(
            client,
            project_store,
            project_store,
            cache_manager=caches,
            stream_manager=StreamSessionManager(StreamOptions(chunk_buffer_size=1)),
        )
        return service, adapter, api

    @pytest.mark.asyncio
    async def test_edited_project_context_replaces_cache(
        self, gemini_service: tuple[AIChatService, FakeAdapter, CacheApi], project_store: InMemoryProjectStore
    ) -> None:
        service, adapter, api = gemini_service

        await service.send_message("Who is Ren?", "p1")
        await service.send_message("And his sister?", "p1")
        assert api.methods == ["POST"]

        project_store.synopses["p1"] = "Ren abandons the tower and sails west."
        await service.send_message("What changed?", "p1")

        assert [request.cached_content for request in adapter.requests] == [
            "cachedContents/c1",
            "cachedContents/c1",
            "cachedContents/c2",
        ]
        assert api.methods == ["POST", "DELETE", "POST"]
        assert "sails west" in _cached_text(api.requests[2])
        assert _cached_text(api.requests[2]) == adapter.requests[2].system

    @pytest.mark.asyncio
    async def test_refreshed_cache_keeps_session_focus(
        self, gemini_service: tuple[AIChatService, FakeAdapter, CacheApi]
    ) -> None:
        service, adapter, api = gemini_service
        service.sessions.create_session("p1", SessionType.PLOT_SETTING)

        info = await service.refresh_gemini_cache("p1")
        await service.send_message("Outline act one", "p1")

        assert api.methods == ["POST"]
        assert adapter.requests[0].cached_content == info.cache_id
        assert "Focus on plot structure" in _cached_text(api.requests[0])
        assert _cached_text(api.requests[0]) == adapter.requests[0].system


# =============================================================================
# Retry and lifecycle
# =============================================================================


class TestRetryAndLifecycle:
    @pytest.mark.asyncio
    async def test_retry_replaces_last_reply(self, build_service: Callable[..., Any]) -> None:
        service, adapter = build_service([text_deltas("First answer"), text_deltas("Second answer")])
        first = await service.send_message("Name the tower", "p1")

        second = await service.retry_last_message("p1")

        session = service.sessions.current_session("p1")
        assert session is not None
        assert [message.content for message in session.messages] == ["Name the tower", "Second answer"]
        assert second.id != first.id
        assert adapter.requests[1].user_message == "Name the tower"

    def test_retry_without_history(self, build_service: Callable[..., Any]) -> None:
        service, _ = build_service()

        with pytest.raises(ValueError):
            service.retry_last_message("p1")

    @pytest.mark.asyncio
    async def test_close_project_aborts_running_turn(self, build_service: Callable[..., Any]) -> None:
        service, _ = build_service([HANGING_REPLY], gate=asyncio.Event())
        task = service.send_message("Keep going", "p1")
        await _wait_for_chunk(service)

        await service.close_project("p1")

        assert task.done()
        assert task.result().status is MessageStatus.CANCELLED
        assert service.is_generating is False
        assert service.get_gemini_cache_info("p1") is None

    @pytest.mark.asyncio
    async def test_interrupted_reply_can_be_recovered(self, build_service: Callable[..., Any], tmp_path: Path) -> None:
        store = PartialResponseStore(tmp_path / "partial_responses.json")
        service, _ = build_service([HANGING_REPLY], gate=asyncio.Event(), partial_store=store)
        task = service.send_message("Tell me more", "p1")
        await _wait_for_chunk(service)
        service.cancel_generation()
        message = await task
        available = _record(service.events, PartialResponseAvailable)

        pending = await service.check_partial_responses("p1")

        assert [item.message_id for item in pending] == [message.id]
        assert len(available) == 1
        recovered = await service.recover_partial_response(message.id)
        assert recovered is not None
        assert recovered.content == "Partial reply text"
        assert store.get(message.id) is None
        assert await service.discard_partial_response(message.id) is False

    @pytest.mark.asyncio
    async def test_from_settings_wires_collaborators(
        self, project_store: InMemoryProjectStore, tmp_path: Path
    ) -> None:
        settings = Settings(model="gemini-2.0-flash", debug_logging=True)
        service = AIChatService.from_settings(settings, project_store, project_store, data_dir=tmp_path)
        try:
            assert logging.getLogger("storyforge").level == logging.DEBUG
            assert service.client.context.config.model == "gemini-2.0-flash"
            assert service.get_gemini_cache_info("p1") is None
            assert await service.check_partial_responses("p1") == []
        finally:
            await service.aclose()
            set_debug_logging(False)
