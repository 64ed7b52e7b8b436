"""Error taxonomy for the AI orchestration layer."""

from __future__ import annotations

from typing import Literal, Sequence

TransportErrorKind = Literal[
    "auth",
    "rate_limit",
    "bad_request",
    "server",
    "network",
    "stalled",
    "malformed",
]

__all__ = [
    "AIError",
    "MissingCredentialError",
    "ConfigurationError",
    "ContextOverflowError",
    "TransportError",
    "TransportErrorKind",
    "ValidationError",
    "ApplyError",
    "SessionBusyError",
    "PromptTemplateError",
]


class AIError(RuntimeError):
    """Base class for every error raised by the StoryForge AI layer."""


class MissingCredentialError(AIError):
    """No API key is configured for the provider a model resolves to."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"No API key configured for provider '{provider}'")
        self.provider = provider


class ConfigurationError(AIError):
    """Unknown model/provider or an otherwise unusable configuration."""


class ContextOverflowError(AIError):
    """Even the minimal required prompt content does not fit the token budget."""

    def __init__(self, required_tokens: int, budget: int, message: str | None = None) -> None:
        detail = message or (
            f"Required content needs {required_tokens} tokens but only {budget} are available"
        )
        super().__init__(detail)
        self.required_tokens = required_tokens
        self.budget = budget


class TransportError(AIError):
    """Network, HTTP or stream failure talking to a provider."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        kind: TransportErrorKind = "network",
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.kind = kind
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind in ("network", "rate_limit", "server")


class ValidationError(AIError):
    """A structured update block failed its schema check."""

    def __init__(self, update_type: str, missing_fields: Sequence[str] = (), message: str | None = None) -> None:
        self.update_type = update_type
        self.missing_fields = tuple(missing_fields)
        if message is None:
            if self.missing_fields:
                message = f"{update_type}: missing required fields: {', '.join(self.missing_fields)}"
            else:
                message = f"{update_type}: invalid update payload"
        super().__init__(message)


class ApplyError(AIError):
    """The domain mutation behind a structured update raised."""

    def __init__(self, update_type: str, message: str) -> None:
        super().__init__(message)
        self.update_type = update_type


class SessionBusyError(AIError):
    """A stream is already pending or streaming for the chat session."""

    def __init__(self, chat_session_id: str) -> None:
        super().__init__(
            f"Chat session '{chat_session_id}' already has an active stream; cancel it first"
        )
        self.chat_session_id = chat_session_id


class PromptTemplateError(AIError):
    """Unknown prompt template, or required template variables left blank."""

    def __init__(self, template_id: str, missing_variables: Sequence[str] = (), message: str | None = None) -> None:
        self.template_id = template_id
        self.missing_variables = tuple(missing_variables)
        if message is None:
            message = f"{template_id}: missing required variables: {', '.join(self.missing_variables)}"
        super().__init__(message)
