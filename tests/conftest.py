"""Shared pytest fixtures and provider fakes."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Iterable, Sequence

import httpx
import pytest

from storyforge.ai.ai_types import Provider, ProviderRequest, ProviderResponse, StreamDelta, Usage
from storyforge.ai.client import AIConfig, ClientContext, UnifiedClient
from storyforge.ai.providers.base import AdapterOptions, ProviderAdapter
from storyforge.domain import (
    ChapterRecord,
    CharacterRecord,
    InMemoryProjectStore,
    LocationRecord,
    ProjectInfo,
    SceneRecord,
)

CLAUDE_MODEL = "claude-sonnet-4-20250514"
GEMINI_MODEL = "gemini-2.0-flash"

API_KEYS = {
    Provider.ANTHROPIC: "sk-ant-REDACTED",
    Provider.OPENAI: "sk-test-key-0123456789abcdef",
    Provider.GOOGLE: "AIzaTestKey0123456789abcdefghijklmno",
}


def text_deltas(*chunks: str, usage: Usage | None = None) -> list[StreamDelta]:
    """Build a complete provider stream from text chunks."""

    deltas = [StreamDelta(type="text", text=chunk) for chunk in chunks]
    final = usage or Usage(input_tokens=120, output_tokens=len(chunks))
    deltas.append(StreamDelta(type="usage", usage=final))
    deltas.append(StreamDelta(type="done", usage=final, stop_reason="end_turn"))
    return deltas


class FakeAdapter(ProviderAdapter):
    """Scripted provider adapter.

    Each call consumes the next script: a list of deltas (items may be
    exceptions to raise mid-stream) or an exception to raise up front. A
    ``gate`` makes the stream block after its scripted items until set.
    """

    def __init__(
        self,
        provider: Provider = Provider.ANTHROPIC,
        scripts: Iterable[Sequence[Any] | BaseException] = (),
        *,
        gate: asyncio.Event | None = None,
    ) -> None:
        super().__init__(AdapterOptions(base_url="https://example.invalid"))
        self.provider = provider
        self.scripts: list[Sequence[Any] | BaseException] = list(scripts)
        self.gate = gate
        self.requests: list[ProviderRequest] = []
        self.closed_streams = 0

    def _next_script(self) -> Sequence[Any] | BaseException:
        if not self.scripts:
            return text_deltas("ok")
        if len(self.scripts) == 1:
            return self.scripts[0]
        return self.scripts.pop(0)

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        script = self._next_script()
        if isinstance(script, BaseException):
            raise script
        text = "".join(item.text for item in script if isinstance(item, StreamDelta) and item.type == "text")
        usage = Usage()
        for item in script:
            if isinstance(item, StreamDelta) and item.usage is not None:
                usage = usage.merge(item.usage)
        return ProviderResponse(provider=self.provider, model=request.model, content=text, usage=usage)

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamDelta]:
        self.requests.append(request)
        script = self._next_script()
        if isinstance(script, BaseException):
            raise script
        try:
            for item in script:
                await asyncio.sleep(0)
                if isinstance(item, BaseException):
                    raise item
                yield item
            if self.gate is not None:
                await self.gate.wait()
        finally:
            self.closed_streams += 1


class CacheApi:
    """Minimal ``cachedContents`` endpoint backed by httpx.MockTransport."""

    def __init__(self, *, create_status: int = 200, delete_status: int = 200) -> None:
        self.create_status = create_status
        self.delete_status = delete_status
        self.requests: list[httpx.Request] = []
        self._counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            if self.create_status >= 400:
                return httpx.Response(self.create_status, json={"error": {"message": "boom"}})
            self._counter += 1
            return httpx.Response(
                200,
                json={"name": f"cachedContents/c{self._counter}", "usageMetadata": {"totalTokenCount": 1000}},
            )
        if request.method == "DELETE":
            if self.delete_status >= 400:
                return httpx.Response(self.delete_status, json={"error": {"message": "not found"}})
            return httpx.Response(200, text="")
        return httpx.Response(405)

    @property
    def methods(self) -> list[str]:
        return [request.method for request in self.requests]


@pytest.fixture
def project_store() -> InMemoryProjectStore:
    store = InMemoryProjectStore()
    store.add_project(
        ProjectInfo(id="p1", title="The Glass Tower", description="A mage climbs a tower", genre=["fantasy"]),
        synopsis="Ren, a failed mage, climbs the Glass Tower to save his sister.",
    )
    store.add_characters(
        [
            CharacterRecord(id="char-2", project_id="p1", name="Vex", role="antagonist", personality="cold"),
            CharacterRecord(id="char-3", project_id="p1", name="Tam", role="minor"),
            CharacterRecord(id="char-1", project_id="p1", name="Ren", role="protagonist", age="19", occupation="mage"),
            CharacterRecord(id="char-4", project_id="p1", name="Lia", role="supporting"),
        ]
    )
    store.add_locations([LocationRecord(id="loc-1", project_id="p1", name="Glass Tower", description="A spire of glass")])
    store.add_chapters([ChapterRecord(id="ch-1", project_id="p1", title="The Gate", number=1, summary="Ren arrives.")])
    store.add_scenes(
        [
            SceneRecord(
                id="sc-1",
                project_id="p1",
                chapter_id="ch-1",
                title="Arrival",
                chapter_title="The Gate",
                plain_text="Ren looked up at the tower.",
                updated_at=100.0,
            ),
            SceneRecord(
                id="sc-2",
                project_id="p1",
                chapter_id="ch-1",
                title="The Guard",
                chapter_title="The Gate",
                plain_text="A guard blocked the door.",
                updated_at=200.0,
            ),
        ]
    )
    return store


@pytest.fixture
def make_client() -> Callable[..., tuple[UnifiedClient, FakeAdapter]]:
    """Factory returning a client wired to a single fake adapter."""

    def factory(
        model: str = CLAUDE_MODEL,
        scripts: Iterable[Sequence[Any] | BaseException] = (),
        *,
        gate: asyncio.Event | None = None,
        with_keys: bool = True,
    ) -> tuple[UnifiedClient, FakeAdapter]:
        context = ClientContext(config=AIConfig(model=model), api_keys=dict(API_KEYS) if with_keys else {})
        provider = context.config.provider
        adapter = FakeAdapter(provider, scripts, gate=gate)
        return UnifiedClient(context, adapters={provider: adapter}), adapter

    return factory
