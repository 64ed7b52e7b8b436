"""UI-facing chat service.

Runs one assistant turn at a time per chat session: builds the prompt from
project context, streams the reply through the stream session manager,
and for agent turns applies the structured updates found in the final text.
State changes reach the UI as events on the :class:`EventBus`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, List

from ..ai.ai_types import CacheInfo, Provider
from ..ai.cache import GeminiCacheManager, PromptCacheTracker
from ..ai.catalog import resolve_provider
from ..ai.client import ClientContext, UnifiedClient
from ..ai.context import AgentSessionState, ContextBudget, ContextBudgetManager
from ..ai.errors import (
    AIError,
    ConfigurationError,
    ContextOverflowError,
    MissingCredentialError,
    SessionBusyError,
    TransportError,
)
from ..ai.streaming import (
    StreamOptions,
    StreamSession,
    StreamSessionManager,
    StreamStatus,
    create_partial_message,
)
from ..ai.updates import (
    UpdateApplier,
    UpdateResult,
    parse_agent_response,
    strip_update_blocks,
    summarize_update_results,
)
from ..domain.protocols import Notifier, ProjectMutator, ProjectReader
from ..services.cache_metadata import CacheMetadataStore
from ..services.partial_responses import PartialResponse, PartialResponseStore
from ..services.telemetry import UsageLedger
from ..utils.logging import set_debug_logging
from .events import (
    CacheStateChanged,
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
from .models import ChatMessage, MessageError, MessageStatus, SessionType
from .session_store import ChatSessionStore

if TYPE_CHECKING:  # pragma: no cover
    import httpx
    from openai import AsyncOpenAI

    from ..services.settings import Settings

LOGGER = logging.getLogger(__name__)

_CHAT = "chat"
_AGENT = "agent"


@dataclass(slots=True)
class _ActiveTurn:
    project_id: str
    chat_session_id: str
    message_id: str
    stream_session_id: str
    mode: str
    prompt: str
    model: str


class AIChatService:
    """Single entry point the UI uses to talk to the assistant.

    Events Emitted:
        - TurnStarted / TurnStreamChunk while a reply is generated
        - TurnCompleted, TurnFailed or TurnCanceled when it resolves
        - UpdatesApplied after an agent reply's update blocks are applied
        - PartialResponseAvailable when an interrupted reply can be recovered
        - CacheStateChanged after a context cache refresh
    """

    def __init__(
        self,
        client: UnifiedClient,
        reader: ProjectReader,
        mutator: ProjectMutator | None = None,
        *,
        event_bus: EventBus | None = None,
        session_store: ChatSessionStore | None = None,
        context_manager: ContextBudgetManager | None = None,
        stream_manager: StreamSessionManager | None = None,
        cache_manager: GeminiCacheManager | None = None,
        partial_store: PartialResponseStore | None = None,
        usage_ledger: UsageLedger | None = None,
        prompt_cache_tracker: PromptCacheTracker | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._client = client
        self._reader = reader
        self._bus = event_bus or EventBus()
        self._sessions = session_store or ChatSessionStore()
        self._context = context_manager or ContextBudgetManager(reader, token_counter=client.get_token_counter())
        self._partials = partial_store
        self._streams = stream_manager or StreamSessionManager(partial_store=partial_store)
        self._caches = cache_manager
        self._ledger = usage_ledger or UsageLedger()
        self._prompt_cache = prompt_cache_tracker or PromptCacheTracker()
        self._applier = (
            UpdateApplier(mutator, notifier=notifier or self._post_notice) if mutator is not None else None
        )
        self._active: _ActiveTurn | None = None
        self._task: asyncio.Task[ChatMessage] | None = None
        self._streaming_content = ""
        self._last_update_summary: str | None = None
        self._current_project_id: str | None = None
        self._modes: dict[str, str] = {}
        if cache_manager is not None:
            client.attach_cache_invalidator(cache_manager)
            cache_manager.set_context_loader(self._cache_context)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        reader: ProjectReader,
        mutator: ProjectMutator | None = None,
        *,
        event_bus: EventBus | None = None,
        data_dir: Path | None = None,
        http_client: "httpx.AsyncClient | None" = None,
        openai_client: "AsyncOpenAI | None" = None,
    ) -> "AIChatService":
        """Wire every collaborator from persisted :class:`Settings`."""

        set_debug_logging(settings.debug_logging)
        context = ClientContext.from_settings(settings)
        client = UnifiedClient(context, http_client=http_client, openai_client=openai_client)
        partials = PartialResponseStore(
            data_dir / "partial_responses.json" if data_dir else None,
            retention_hours=settings.partial_retention_hours,
        )
        caches = GeminiCacheManager(
            context,
            http_client=http_client,
            metadata_store=CacheMetadataStore(data_dir / "cache_metadata.json" if data_dir else None),
            ttl_seconds=settings.gemini_cache_ttl_seconds,
        )
        return cls(
            client,
            reader,
            mutator,
            event_bus=event_bus,
            context_manager=ContextBudgetManager(
                reader,
                budget=ContextBudget.from_settings(settings.context_budget),
                token_counter=client.get_token_counter(),
            ),
            stream_manager=StreamSessionManager(StreamOptions.from_settings(settings.stream), partial_store=partials),
            cache_manager=caches,
            partial_store=partials,
        )

    # ------------------------------------------------------------------
    # UI state
    # ------------------------------------------------------------------

    @property
    def events(self) -> EventBus:
        return self._bus

    @property
    def sessions(self) -> ChatSessionStore:
        return self._sessions

    @property
    def client(self) -> UnifiedClient:
        return self._client

    @property
    def usage_ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def is_generating(self) -> bool:
        return self._active is not None

    @property
    def streaming_content(self) -> str:
        """Text streamed so far; agent replies are shown without their update blocks."""
        if self._active is not None and self._active.mode == _AGENT:
            return strip_update_blocks(self._streaming_content)
        return self._streaming_content

    @property
    def last_update_summary(self) -> str | None:
        return self._last_update_summary

    @property
    def current_task(self) -> asyncio.Task[ChatMessage] | None:
        return self._task

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def send_message(
        self, content: str, project_id: str, *, session_type: SessionType | None = None
    ) -> asyncio.Task[ChatMessage]:
        """Queue a chat-assist turn and return the task resolving to the assistant message.

        Raises:
            MissingCredentialError / ConfigurationError: before any state is created.
            SessionBusyError: while the session still has a reply in flight.
        """
        return self._start_turn(content, project_id, _CHAT, session_type)

    def send_agent_message(
        self, content: str, project_id: str, *, session_type: SessionType | None = None
    ) -> asyncio.Task[ChatMessage]:
        """Queue an agent turn whose reply may carry structured updates."""
        if self._applier is None:
            raise ConfigurationError("Agent mode requires a project mutator")
        return self._start_turn(content, project_id, _AGENT, session_type)

    def retry_last_message(self, project_id: str) -> asyncio.Task[ChatMessage]:
        """Regenerate the last assistant reply, replacing it in place."""

        session = self._sessions.current_session(project_id)
        if session is None or len(session.messages) < 2:
            raise ValueError("Nothing to retry")
        last = session.messages[-1]
        prompt_message = session.messages[-2]
        if last.role != "assistant" or prompt_message.role != "user":
            raise ValueError("The last message is not an assistant reply")
        if not last.status.is_terminal:
            raise SessionBusyError(session.id)
        model = self._check_credentials()
        mode = self._modes.get(last.id, _CHAT)
        message = ChatMessage(
            id=_new_message_id(),
            role="assistant",
            content="",
            status=MessageStatus.PENDING,
            model=model,
        )
        stream_session = self._streams.create_stream_session(session.id, message.id, project_id=project_id)
        self._sessions.replace_message(session.id, last.id, message)
        self._modes.pop(last.id, None)
        LOGGER.info("Retrying reply %s as %s", last.id, message.id)
        return self._launch(
            _ActiveTurn(
                project_id=project_id,
                chat_session_id=session.id,
                message_id=message.id,
                stream_session_id=stream_session.id,
                mode=mode,
                prompt=prompt_message.content,
                model=model,
            )
        )

    def cancel_generation(self) -> str:
        """Stop the active reply; text received so far stays on the message."""

        turn = self._active
        if turn is None:
            LOGGER.debug("cancel_generation: no active turn")
            return ""
        return self._streams.abort_stream_session(turn.stream_session_id)

    async def close_project(self, project_id: str) -> None:
        """Tear down every stream before the project goes away."""

        aborted = self._streams.abort_all_sessions()
        task = self._task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        self._prompt_cache.reset(project_id)
        if self._current_project_id == project_id:
            self._current_project_id = None
        LOGGER.info("Closed project %s (%d stream(s) aborted)", project_id, aborted)

    async def aclose(self) -> None:
        self._streams.abort_all_sessions()
        if self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)
        await self._client.aclose()
        if self._caches is not None:
            await self._caches.aclose()

    # ------------------------------------------------------------------
    # Context cache
    # ------------------------------------------------------------------

    async def refresh_gemini_cache(self, project_id: str) -> CacheInfo:
        if self._caches is None:
            raise ConfigurationError("Context caching is not configured")
        model = self._client.context.config.model
        info = await self._caches.refresh_cache(project_id, model if _is_google(model) else None)
        self._bus.publish(CacheStateChanged(project_id=project_id, cache_info=info.as_payload()))
        return info

    def get_gemini_cache_info(self, project_id: str | None = None) -> dict[str, Any] | None:
        """Cache handle, validity and advisory savings for the settings UI."""

        target = project_id or self._current_project_id
        if self._caches is None or target is None:
            return None
        info = self._caches.get_cache_info(target)
        if info is None:
            return None
        savings = self._caches.calculate_savings(info)
        payload = info.as_payload()
        payload["valid"] = self._caches.is_cache_valid(info)
        payload["saved_tokens"] = savings.saved_tokens
        payload["saved_amount"] = savings.saved_amount
        return payload

    # ------------------------------------------------------------------
    # Partial responses
    # ------------------------------------------------------------------

    async def check_partial_responses(self, project_id: str) -> List[PartialResponse]:
        """Drop stale snapshots and announce the ones that can still be recovered."""

        if self._partials is None:
            return []
        await asyncio.to_thread(self._partials.cleanup_stale)
        pending = self._partials.list(project_id=project_id)
        for item in pending:
            self._bus.publish(
                PartialResponseAvailable(
                    project_id=item.project_id,
                    chat_session_id=item.chat_session_id,
                    message_id=item.message_id,
                    content=item.content,
                )
            )
        return pending

    async def recover_partial_response(self, message_id: str) -> ChatMessage | None:
        if self._partials is None:
            return None
        snapshot = self._partials.get(message_id)
        if snapshot is None:
            return None
        recovered = create_partial_message(
            snapshot.content,
            message_id,
            cancelled=snapshot.status == StreamStatus.CANCELLED.value,
            error_message=snapshot.error_message,
        )
        found = self._sessions.find_message(message_id)
        if found is not None:
            session, message = found
            if message.status is not MessageStatus.COMPLETE and len(message.content) < len(recovered.content):
                recovered = self._sessions.update_message(
                    session.id, message_id, content=recovered.content, status=recovered.status, error=recovered.error
                )
            else:
                recovered = message
        await asyncio.to_thread(self._partials.clear, message_id)
        return recovered

    async def discard_partial_response(self, message_id: str) -> bool:
        if self._partials is None:
            return False
        return await asyncio.to_thread(self._partials.clear, message_id)

    # ------------------------------------------------------------------
    # Turn pipeline
    # ------------------------------------------------------------------

    def _start_turn(
        self, content: str, project_id: str, mode: str, session_type: SessionType | None
    ) -> asyncio.Task[ChatMessage]:
        text = (content or "").strip()
        if not text:
            raise ValueError("Message content is empty")
        model = self._check_credentials()
        session = self._sessions.ensure_session(project_id, session_type or SessionType.GENERAL)
        if self._active is not None:
            raise SessionBusyError(self._active.chat_session_id)

        reply = ChatMessage(id=_new_message_id(), role="assistant", content="", status=MessageStatus.PENDING, model=model)
        stream_session = self._streams.create_stream_session(session.id, reply.id, project_id=project_id)
        try:
            self._sessions.append_message(session.id, ChatMessage(id=_new_message_id(), role="user", content=text))
            self._sessions.append_message(session.id, reply)
        except SessionBusyError:
            self._streams.abort_stream_session(stream_session.id)
            self._streams.release(stream_session.id)
            raise
        self._current_project_id = project_id
        return self._launch(
            _ActiveTurn(
                project_id=project_id,
                chat_session_id=session.id,
                message_id=reply.id,
                stream_session_id=stream_session.id,
                mode=mode,
                prompt=text,
                model=model,
            )
        )

    def _launch(self, turn: _ActiveTurn) -> asyncio.Task[ChatMessage]:
        self._active = turn
        self._streaming_content = ""
        self._modes[turn.message_id] = turn.mode
        self._bus.publish(
            TurnStarted(chat_session_id=turn.chat_session_id, message_id=turn.message_id, prompt=turn.prompt, mode=turn.mode)
        )
        self._task = asyncio.create_task(self._run_turn(turn), name=f"storyforge-turn-{turn.message_id}")
        return self._task

    def _check_credentials(self) -> str:
        context = self._client.context
        model = context.config.model
        context.api_key_for(resolve_provider(model))
        return model

    async def _run_turn(self, turn: _ActiveTurn) -> ChatMessage:
        stream_session = self._streams.get(turn.stream_session_id)
        try:
            if stream_session is None:
                raise AIError(f"Stream session '{turn.stream_session_id}' is no longer registered")
            system, history = await self._build_prompt(turn)
            cache = await self._cache_for(turn, system)
            source = self._client.send_stream(history, system=system, cache=cache)
            async for update in self._streams.stream(stream_session, source):
                if update.done or not update.delta:
                    continue
                self._streaming_content = update.content
                self._sessions.update_message(
                    turn.chat_session_id, turn.message_id, status=MessageStatus.STREAMING, content=update.content
                )
                self._bus.publish(
                    TurnStreamChunk(
                        chat_session_id=turn.chat_session_id,
                        message_id=turn.message_id,
                        delta=update.delta,
                        content=self.streaming_content,
                    )
                )
            if stream_session.status is StreamStatus.COMPLETED:
                return await self._complete_turn(turn, stream_session, cache)
            return self._interrupt_turn(turn, stream_session)
        except asyncio.CancelledError:
            self._streams.abort_stream_session(turn.stream_session_id)
            if stream_session is not None:
                self._interrupt_turn(turn, stream_session)
            raise
        except AIError as exc:
            self._streams.abort_stream_session(turn.stream_session_id)
            return self._fail_turn(turn, exc)
        except Exception as exc:
            LOGGER.exception("Turn %s failed unexpectedly", turn.message_id)
            self._streams.abort_stream_session(turn.stream_session_id)
            return self._fail_turn(turn, AIError(f"Unexpected error: {exc}"))
        finally:
            self._streams.release(turn.stream_session_id)
            if self._active is turn:
                self._active = None
                self._streaming_content = ""

    async def _build_prompt(self, turn: _ActiveTurn) -> tuple[str, list[ChatMessage]]:
        session = self._sessions.get_session(turn.chat_session_id)
        if turn.mode == _AGENT:
            agent_context = await self._context.build_full_agent_context(turn.project_id)
            state = AgentSessionState(
                session_type=session.type.value,
                turn_count=sum(1 for message in session.messages if message.role == "user"),
                last_update_summary=self._last_update_summary,
            )
            system = self._context.format_agent_system_prompt(agent_context, state)
        else:
            project_context = await self._context.build_project_context(turn.project_id)
            system = self._context.format_context_as_system_prompt(project_context, session_type=session.type)

        budget = self._context.budget
        # The system prompt only eats into the history budget past its own allotment.
        overage = max(0, self._context.count_tokens(system) - budget.system)
        history = self._context.optimize_history_for_token_budget(
            session.messages[:-1], budget.history, reserved_tokens=overage
        )
        return system, history

    async def _cache_for(self, turn: _ActiveTurn, system: str) -> CacheInfo | None:
        # Agent prompts differ per turn, so only chat-assist prompts are cached.
        if self._caches is None or turn.mode != _CHAT or not _is_google(turn.model):
            return None
        return await self._caches.ensure_cache(turn.project_id, system, turn.model)

    async def _cache_context(self, project_id: str) -> str:
        # Must match the chat prompt _build_prompt produces so the next turn reuses it.
        session = self._sessions.current_session(project_id)
        context = await self._context.build_project_context(project_id)
        return self._context.format_context_as_system_prompt(
            context, session_type=session.type if session is not None else None
        )

    async def _complete_turn(
        self, turn: _ActiveTurn, stream_session: StreamSession, cache: CacheInfo | None
    ) -> ChatMessage:
        usage = stream_session.usage
        content = stream_session.content
        results: list[UpdateResult] = []
        if turn.mode == _AGENT and self._applier is not None:
            parsed = parse_agent_response(content)
            content = parsed.display_text
            if parsed.updates:
                results = await self._applier.apply_all(parsed.updates, turn.project_id)

        self._ledger.record(
            project_id=turn.project_id,
            chat_session_id=turn.chat_session_id,
            message_id=turn.message_id,
            model=turn.model,
            usage=usage,
            mode=turn.mode,
        )
        cost = self._client.calculate_cost(usage, turn.model)
        # Last fallible step; only event publication follows.
        message = self._sessions.update_message(
            turn.chat_session_id,
            turn.message_id,
            status=MessageStatus.COMPLETE,
            content=content,
            usage=usage,
            token_count=usage.output_tokens or None,
            model=turn.model,
            cache_info=self._cache_payload(turn, cache, stream_session),
        )
        self._bus.publish(
            TurnCompleted(
                chat_session_id=turn.chat_session_id,
                message_id=turn.message_id,
                content=content,
                cost=cost.format(),
                usage=usage,
            )
        )
        if results:
            summary = summarize_update_results(results)
            self._last_update_summary = summary.message
            self._bus.publish(
                UpdatesApplied(
                    chat_session_id=turn.chat_session_id,
                    message_id=turn.message_id,
                    summary=summary.message,
                    results=results,
                )
            )
        return message

    def _cache_payload(
        self, turn: _ActiveTurn, cache: CacheInfo | None, stream_session: StreamSession
    ) -> dict[str, Any] | None:
        if cache is not None and self._caches is not None:
            current = self._caches.get_cache_info(turn.project_id)
            if current is not None and current.cache_id == cache.cache_id:
                return cache.as_payload()
            return None
        if resolve_provider(turn.model) is Provider.ANTHROPIC:
            prompt_info = self._prompt_cache.record(turn.project_id, stream_session.usage)
            return prompt_info.as_payload() if prompt_info is not None else None
        return None

    def _interrupt_turn(self, turn: _ActiveTurn, stream_session: StreamSession) -> ChatMessage:
        cancelled = stream_session.status is StreamStatus.CANCELLED
        partial = create_partial_message(
            stream_session.content,
            turn.message_id,
            cancelled=cancelled,
            error_message=stream_session.error,
            model=turn.model,
        )
        message = self._sessions.update_message(
            turn.chat_session_id,
            turn.message_id,
            content=partial.content,
            status=partial.status,
            error=partial.error,
            usage=stream_session.usage,
        )
        if cancelled:
            self._bus.publish(
                TurnCanceled(
                    chat_session_id=turn.chat_session_id,
                    message_id=turn.message_id,
                    partial_content=message.content,
                )
            )
        else:
            self._bus.publish(
                TurnFailed(
                    chat_session_id=turn.chat_session_id,
                    message_id=turn.message_id,
                    error=stream_session.error or "Stream failed",
                    code=_stream_error_code(stream_session.error_kind),
                    partial_content=message.content,
                )
            )
        return message

    def _fail_turn(self, turn: _ActiveTurn, exc: AIError) -> ChatMessage:
        code = _error_code(exc)
        LOGGER.warning("Turn %s failed: %s", turn.message_id, exc)
        message = self._sessions.update_message(
            turn.chat_session_id,
            turn.message_id,
            status=MessageStatus.ERROR,
            error=MessageError(code=code, message=str(exc), retryable=not isinstance(exc, ContextOverflowError)),
        )
        self._bus.publish(
            TurnFailed(chat_session_id=turn.chat_session_id, message_id=turn.message_id, error=str(exc), code=code)
        )
        return message

    def _post_notice(self, level: str, message: str) -> None:
        self._bus.publish(NoticePosted(level=level, message=message))


def _is_google(model: str) -> bool:
    try:
        return resolve_provider(model) is Provider.GOOGLE
    except ConfigurationError:
        return False


def _error_code(exc: AIError) -> str:
    if isinstance(exc, MissingCredentialError):
        return "MISSING_CREDENTIAL"
    if isinstance(exc, ContextOverflowError):
        return "CONTEXT_OVERFLOW"
    if isinstance(exc, ConfigurationError):
        return "CONFIGURATION"
    if isinstance(exc, TransportError):
        return _stream_error_code(exc.kind)
    return "AI_ERROR"


def _stream_error_code(kind: str | None) -> str:
    if kind == "stalled":
        return "STREAM_STALLED"
    if kind in ("auth", "rate_limit", "bad_request", "server", "network", "malformed"):
        return f"TRANSPORT_{kind.upper()}"
    return "STREAM_ABORTED"


def _new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


__all__ = ["AIChatService"]
