"""Unified async client dispatching chat turns to the configured provider."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Mapping, Protocol, Sequence

import httpx
from openai import AsyncOpenAI

from ..chat.models import ChatMessage, MessageStatus
from .ai_types import (
    CacheInfo,
    ConversationTurn,
    PromptCacheInfo,
    Provider,
    ProviderRequest,
    ProviderResponse,
    StreamDelta,
    TokenCounterProtocol,
    Usage,
)
from .catalog import (
    CONNECTION_TEST_MODELS,
    DEFAULT_BASE_URLS,
    CostEstimate,
    estimate_cost,
    resolve_provider,
    validate_api_key_format,
)
from .errors import ConfigurationError, MissingCredentialError, TransportError
from .prompts import build_prompt_from_template
from .providers import AdapterOptions, ClaudeAdapter, GeminiAdapter, OpenAIAdapter, ProviderAdapter
from .utils.tokens import TokenCounterRegistry

if TYPE_CHECKING:  # pragma: no cover
    from ..services.settings import Settings

__all__ = [
    "AIConfig",
    "ClientContext",
    "ConnectionCheck",
    "UnifiedClient",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AIConfig:
    """Per-turn generation settings; the provider always follows the model."""

    model: str
    temperature: float | None = 0.7
    max_tokens: int = 4_096
    enable_prompt_cache: bool = True

    @property
    def provider(self) -> Provider:
        return resolve_provider(self.model)


@dataclass(slots=True)
class ClientContext:
    """Active configuration and credentials owned by one running app session."""

    config: AIConfig
    api_keys: Dict[Provider, str] = field(default_factory=dict)
    base_urls: Dict[Provider, str] = field(default_factory=dict)
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ClientContext":
        return cls(
            config=AIConfig(
                model=settings.model,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
                enable_prompt_cache=settings.enable_prompt_cache,
            ),
            api_keys=_coerce_provider_map(settings.api_keys),
            base_urls=_coerce_provider_map(settings.base_urls),
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            debug_logging=settings.debug_logging,
        )

    def select_model(self, model: str) -> None:
        """Switch the active model; unknown ids raise before any state changes."""

        resolve_provider(model)
        self.config = replace(self.config, model=model)

    def set_api_key(self, provider: Provider, api_key: str | None) -> None:
        if api_key:
            self.api_keys[provider] = api_key.strip()
        else:
            self.api_keys.pop(provider, None)

    def api_key_for(self, provider: Provider) -> str:
        key = self.api_keys.get(provider, "")
        if not key:
            raise MissingCredentialError(provider.value)
        return key

    def has_api_key(self, provider: Provider) -> bool:
        return bool(self.api_keys.get(provider))

    def base_url_for(self, provider: Provider) -> str:
        return self.base_urls.get(provider) or DEFAULT_BASE_URLS[provider]


@dataclass(slots=True)
class ConnectionCheck:
    ok: bool
    provider: Provider
    message: str


class CacheInvalidator(Protocol):
    def forget(self, info: CacheInfo) -> None:
        ...


class UnifiedClient:
    """Single ``send``/``send_stream``/``test_connection``/``calculate_cost`` surface."""

    def __init__(
        self,
        context: ClientContext,
        *,
        adapters: Mapping[Provider, ProviderAdapter] | None = None,
        http_client: httpx.AsyncClient | None = None,
        openai_client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
        cache_invalidator: CacheInvalidator | None = None,
    ) -> None:
        self._context = context
        self._adapters: Dict[Provider, ProviderAdapter] = dict(adapters or {})
        self._http_client = http_client
        self._openai_client = openai_client
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._cache_invalidator = cache_invalidator

    @property
    def context(self) -> ClientContext:
        return self._context

    def attach_cache_invalidator(self, invalidator: CacheInvalidator | None) -> None:
        self._cache_invalidator = invalidator

    # ------------------------------------------------------------------
    # Chat calls
    # ------------------------------------------------------------------

    async def send(
        self,
        history: Sequence[Any],
        config: AIConfig | None = None,
        *,
        system: str = "",
        cache: CacheInfo | None = None,
    ) -> ChatMessage:
        """Run one turn to completion and return the assistant message."""

        provider, request = self._prepare(history, config, system=system, cache=cache)
        response = await self._adapter(provider).send(request)
        if cache is not None and not response.cache_used:
            self._forget_cache(cache)
        LOGGER.debug(
            "Completed %s turn via %s (in=%s, out=%s)",
            provider.value,
            response.model,
            response.usage.input_tokens,
            response.usage.output_tokens,
        )
        return ChatMessage(
            id=_new_message_id(),
            role="assistant",
            content=response.content,
            status=MessageStatus.COMPLETE,
            timestamp=time.time(),
            model=request.model,
            token_count=response.usage.output_tokens or None,
            usage=response.usage,
            cache_info=_cache_info_payload(provider, response.usage, cache if response.cache_used else None),
        )

    async def complete(
        self,
        history: Sequence[Any],
        config: AIConfig | None = None,
        *,
        system: str = "",
        cache: CacheInfo | None = None,
    ) -> ProviderResponse:
        """Like :meth:`send` but returns the raw normalized provider response."""

        provider, request = self._prepare(history, config, system=system, cache=cache)
        response = await self._adapter(provider).send(request)
        if cache is not None and not response.cache_used:
            self._forget_cache(cache)
        return response

    async def send_template(
        self,
        template_id: str,
        variables: Mapping[str, object],
        config: AIConfig | None = None,
    ) -> ChatMessage:
        """Render a prompt template and send it as a single user turn.

        The template's suggested temperature replaces the configured one.
        """

        prompt = build_prompt_from_template(template_id, variables)
        active = replace(config or self._context.config, temperature=prompt.temperature)
        LOGGER.debug("Sending prompt template %s with %s", template_id, active.model)
        return await self.send(
            [ConversationTurn(role="user", content=prompt.user)],
            active,
            system=prompt.system,
        )

    async def send_stream(
        self,
        history: Sequence[Any],
        config: AIConfig | None = None,
        *,
        system: str = "",
        cache: CacheInfo | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream one turn; closing the iterator cancels the request.

        Credential and configuration problems raise on the first ``__anext__``
        call, before any request is issued.
        """

        provider, request = self._prepare(history, config, system=system, cache=cache)
        stream = self._adapter(provider).stream(request)
        try:
            async for delta in stream:
                if delta.type == "cache_rejected":
                    if cache is not None:
                        self._forget_cache(cache)
                    continue
                yield delta
        finally:
            await stream.aclose()

    async def test_connection(self, provider: Provider, api_key: str) -> ConnectionCheck:
        """Validate *api_key* with a minimal request that carries no project context."""

        if not validate_api_key_format(provider, api_key):
            return ConnectionCheck(False, provider, "API key format is invalid")
        request = ProviderRequest(
            model=CONNECTION_TEST_MODELS[provider],
            api_key=api_key.strip(),
            system="",
            history=(),
            user_message="ping",
            temperature=None,
            max_tokens=16,
        )
        try:
            await self._adapter(provider).send(request)
        except TransportError as exc:
            LOGGER.info("Connection test for %s failed: %s", provider.value, exc)
            if exc.kind == "auth":
                return ConnectionCheck(False, provider, "API key was rejected")
            if exc.kind == "rate_limit":
                # A throttled key is still a valid key.
                return ConnectionCheck(True, provider, "Connected (rate limited)")
            return ConnectionCheck(False, provider, str(exc))
        return ConnectionCheck(True, provider, "Connected")

    def calculate_cost(self, usage: Usage, model: str) -> CostEstimate:
        return estimate_cost(usage, model)

    # ------------------------------------------------------------------
    # Token counting
    # ------------------------------------------------------------------

    def get_token_counter(self, model: str | None = None) -> TokenCounterProtocol:
        model_name = model or self._context.config.model
        if not self._token_registry.has(model_name):
            try:
                provider = resolve_provider(model_name)
            except ConfigurationError:
                return self._token_registry.get(None)
            if provider is Provider.OPENAI:
                return self._token_registry.register_tiktoken(model_name)
        return self._token_registry.get(model_name)

    def count_tokens(self, text: str, *, model: str | None = None) -> int:
        if not text:
            return 0
        counter = self.get_token_counter(model)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover - counter bugs must not break prompts
            LOGGER.debug("count_tokens failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    async def aclose(self) -> None:
        """Close every adapter that was built by this client."""

        adapters = list(self._adapters.values())
        self._adapters.clear()
        for adapter in adapters:
            await adapter.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prepare(
        self,
        history: Sequence[Any],
        config: AIConfig | None,
        *,
        system: str,
        cache: CacheInfo | None,
    ) -> tuple[Provider, ProviderRequest]:
        active = config or self._context.config
        provider = resolve_provider(active.model)
        api_key = self._context.api_key_for(provider)
        turns = _coerce_turns(history)
        if not turns or turns[-1].role != "user":
            raise ConfigurationError("History must end with the user turn being answered")
        cached_content: str | None = None
        if cache is not None and provider is Provider.GOOGLE and cache.model == active.model:
            cached_content = cache.cache_id
        request = ProviderRequest(
            model=active.model,
            api_key=api_key,
            system=system,
            history=tuple(turns[:-1]),
            user_message=turns[-1].content,
            temperature=active.temperature,
            max_tokens=active.max_tokens,
            cached_content=cached_content,
            prompt_cache=active.enable_prompt_cache and provider is Provider.ANTHROPIC,
        )
        return provider, request

    def _adapter(self, provider: Provider) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            adapter = self._build_adapter(provider)
            self._adapters[provider] = adapter
        return adapter

    def _build_adapter(self, provider: Provider) -> ProviderAdapter:
        options = AdapterOptions(
            base_url=self._context.base_url_for(provider),
            request_timeout=self._context.request_timeout,
            max_retries=self._context.max_retries,
            retry_min_seconds=self._context.retry_min_seconds,
            retry_max_seconds=self._context.retry_max_seconds,
            debug_logging=self._context.debug_logging,
        )
        if provider is Provider.ANTHROPIC:
            return ClaudeAdapter(options, http_client=self._http_client)
        if provider is Provider.OPENAI:
            return OpenAIAdapter(options, client=self._openai_client)
        if provider is Provider.GOOGLE:
            return GeminiAdapter(options, http_client=self._http_client)
        raise ConfigurationError(f"Unsupported provider '{provider}'")

    def _forget_cache(self, cache: CacheInfo) -> None:
        if self._cache_invalidator is not None:
            self._cache_invalidator.forget(cache)


def _coerce_turns(history: Sequence[Any]) -> list[ConversationTurn]:
    turns: list[ConversationTurn] = []
    for item in history:
        if isinstance(item, ConversationTurn):
            turns.append(item)
            continue
        if isinstance(item, Mapping):
            role, content = item.get("role"), item.get("content")
        else:
            role, content = getattr(item, "role", None), getattr(item, "content", None)
        if role not in ("user", "assistant"):
            raise ConfigurationError(f"Unsupported history role {role!r}")
        turns.append(ConversationTurn(role=role, content=str(content or "")))
    return turns


def _coerce_provider_map(values: Mapping[str, str] | None) -> Dict[Provider, str]:
    result: Dict[Provider, str] = {}
    for key, value in (values or {}).items():
        if not value:
            continue
        try:
            result[Provider(key)] = value
        except ValueError:
            LOGGER.warning("Ignoring setting for unknown provider %r", key)
    return result


def _cache_info_payload(provider: Provider, usage: Usage, cache: CacheInfo | None) -> dict[str, Any] | None:
    if cache is not None:
        return cache.as_payload()
    if provider is Provider.ANTHROPIC and (usage.cache_read_tokens or usage.cache_creation_tokens):
        return PromptCacheInfo(
            cache_read_tokens=usage.cache_read_tokens,
            cache_creation_tokens=usage.cache_creation_tokens,
        ).as_payload()
    return None


def _new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"
