"""Shared type definitions for the StoryForge AI layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol, Sequence


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class Provider(str, Enum):
    """Closed set of AI vendors the client can talk to."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"


Role = Literal["user", "assistant"]


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    """Provider-neutral history entry."""

    role: Role
    content: str


@dataclass(slots=True)
class Usage:
    """Token usage reported by a provider for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def merge(self, other: "Usage | None") -> "Usage":
        if other is None:
            return self
        return Usage(
            input_tokens=max(self.input_tokens, other.input_tokens),
            output_tokens=max(self.output_tokens, other.output_tokens),
            cache_read_tokens=max(self.cache_read_tokens, other.cache_read_tokens),
            cache_creation_tokens=max(self.cache_creation_tokens, other.cache_creation_tokens),
        )


@dataclass(slots=True)
class ProviderRequest:
    """Normalized ``{system, history, userMessage}`` request handed to an adapter."""

    model: str
    api_key: str
    system: str
    history: Sequence[ConversationTurn]
    user_message: str
    temperature: float | None = 0.7
    max_tokens: int = 4096
    cached_content: str | None = None
    prompt_cache: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def turns(self) -> list[ConversationTurn]:
        """History followed by the in-progress user turn."""

        items = list(self.history)
        if self.user_message:
            items.append(ConversationTurn(role="user", content=self.user_message))
        return items


@dataclass(slots=True)
class ProviderResponse:
    """Normalized completion returned by an adapter."""

    provider: Provider
    model: str
    content: str
    usage: Usage = field(default_factory=Usage)
    stop_reason: str | None = None
    cache_used: bool = False


@dataclass(slots=True)
class StreamDelta:
    """Normalized streaming event.

    ``type`` is ``"text"`` for content, ``"usage"`` for accounting updates and
    ``"done"`` once the provider signals the end of the message.
    ``"cache_rejected"`` reports that the provider refused a context cache
    handle and the request was replayed without it.
    """

    type: Literal["text", "usage", "done", "cache_rejected"]
    text: str = ""
    usage: Usage | None = None
    stop_reason: str | None = None


@dataclass(slots=True)
class CacheInfo:
    """Metadata for a provider-side context cache (Gemini ``cachedContents``)."""

    cache_id: str
    project_id: str
    provider: Provider
    model: str
    fingerprint: str
    created_at: float
    expires_at: float
    token_count: int = 0

    def as_payload(self) -> dict[str, Any]:
        return {
            "cache_id": self.cache_id,
            "project_id": self.project_id,
            "provider": self.provider.value,
            "model": self.model,
            "fingerprint": self.fingerprint,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "token_count": self.token_count,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CacheInfo":
        return cls(
            cache_id=str(payload["cache_id"]),
            project_id=str(payload["project_id"]),
            provider=Provider(payload.get("provider", Provider.GOOGLE.value)),
            model=str(payload.get("model", "")),
            fingerprint=str(payload.get("fingerprint", "")),
            created_at=float(payload.get("created_at", 0.0)),
            expires_at=float(payload.get("expires_at", 0.0)),
            token_count=int(payload.get("token_count", 0) or 0),
        )


@dataclass(slots=True)
class PromptCacheInfo:
    """Prompt-caching usage reported by Claude for one or more calls."""

    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def as_payload(self) -> dict[str, int]:
        return {
            "cache_read_tokens": self.cache_read_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
        }


__all__ = [
    "TokenCounterProtocol",
    "Provider",
    "Role",
    "ConversationTurn",
    "Usage",
    "ProviderRequest",
    "ProviderResponse",
    "StreamDelta",
    "CacheInfo",
    "PromptCacheInfo",
]
