"""Static model catalog, price table and credential format rules."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from .ai_types import Provider, Usage
from .errors import ConfigurationError

__all__ = [
    "ModelSpec",
    "ModelPrice",
    "CostEstimate",
    "MODEL_CATALOG",
    "MODEL_PRICES",
    "DEFAULT_BASE_URLS",
    "CONNECTION_TEST_MODELS",
    "resolve_provider",
    "get_model",
    "list_models",
    "estimate_cost",
    "validate_api_key_format",
]


@dataclass(slots=True, frozen=True)
class ModelSpec:
    id: str
    name: str
    provider: Provider
    description: str = ""
    context_window: int = 128_000
    supports_context_cache: bool = False


@dataclass(slots=True, frozen=True)
class ModelPrice:
    """USD per 1K tokens."""

    input: float
    output: float


@dataclass(slots=True, frozen=True)
class CostEstimate:
    """Result of :func:`estimate_cost`; ``amount`` is ``None`` when the model has no price."""

    amount: float | None
    currency: str = "USD"
    known: bool = True

    @classmethod
    def unknown(cls) -> "CostEstimate":
        return cls(amount=None, known=False)

    def format(self) -> str:
        if not self.known or self.amount is None:
            return "unknown"
        return f"${self.amount:.4f}"


_MODELS: tuple[ModelSpec, ...] = (
    ModelSpec("claude-opus-4-5-20251101", "Claude Opus 4.5", Provider.ANTHROPIC, "Highest quality for complex work", 200_000),
    ModelSpec("claude-sonnet-4-20250514", "Claude Sonnet 4", Provider.ANTHROPIC, "Balanced quality and cost", 200_000),
    ModelSpec("claude-3-5-haiku-20241022", "Claude Haiku 3.5", Provider.ANTHROPIC, "Fast answers for simple tasks", 200_000),
    ModelSpec("gpt-5", "GPT-5", Provider.OPENAI, "Flagship reasoning model", 400_000),
    ModelSpec("gpt-5-mini", "GPT-5 Mini", Provider.OPENAI, "Smaller, cheaper GPT-5", 400_000),
    ModelSpec("gpt-5-nano", "GPT-5 Nano", Provider.OPENAI, "Cheapest GPT-5 tier", 400_000),
    ModelSpec("gpt-4o", "GPT-4o", Provider.OPENAI, "Multimodal model", 128_000),
    ModelSpec("gpt-4o-mini", "GPT-4o Mini", Provider.OPENAI, "Fast, low-cost small model", 128_000),
    ModelSpec("gpt-4-turbo", "GPT-4 Turbo", Provider.OPENAI, "Previous generation flagship", 128_000),
    ModelSpec("gpt-3.5-turbo", "GPT-3.5 Turbo", Provider.OPENAI, "Legacy general-purpose model", 16_385),
    ModelSpec("gemini-2.0-flash", "Gemini 2.0 Flash", Provider.GOOGLE, "Latest fast model", 1_000_000, True),
    ModelSpec("gemini-1.5-pro", "Gemini 1.5 Pro", Provider.GOOGLE, "Large model with long context", 2_000_000, True),
    ModelSpec("gemini-1.5-flash", "Gemini 1.5 Flash", Provider.GOOGLE, "Fast and efficient", 1_000_000, True),
)

MODEL_CATALOG: Mapping[str, ModelSpec] = {model.id: model for model in _MODELS}

MODEL_PRICES: Mapping[str, ModelPrice] = {
    "claude-opus-4-5-20251101": ModelPrice(0.015, 0.075),
    "claude-sonnet-4-20250514": ModelPrice(0.003, 0.015),
    "claude-3-5-haiku-20241022": ModelPrice(0.0008, 0.004),
    "gpt-5": ModelPrice(0.00125, 0.01),
    "gpt-5-mini": ModelPrice(0.00025, 0.002),
    "gpt-5-nano": ModelPrice(0.00005, 0.0004),
    "gpt-4o": ModelPrice(0.0025, 0.01),
    "gpt-4o-mini": ModelPrice(0.00015, 0.0006),
    "gpt-4-turbo": ModelPrice(0.01, 0.03),
    "gpt-3.5-turbo": ModelPrice(0.0005, 0.0015),
    "gemini-2.0-flash": ModelPrice(0.0001, 0.0004),
    "gemini-1.5-pro": ModelPrice(0.00125, 0.005),
    "gemini-1.5-flash": ModelPrice(0.000075, 0.0003),
}

# Cached-input billing relative to the normal input price.
CACHE_READ_MULTIPLIER: Mapping[Provider, float] = {
    Provider.ANTHROPIC: 0.1,
    Provider.OPENAI: 0.5,
    Provider.GOOGLE: 0.25,
}
CACHE_WRITE_MULTIPLIER: Mapping[Provider, float] = {
    Provider.ANTHROPIC: 1.25,
    Provider.OPENAI: 1.0,
    Provider.GOOGLE: 1.0,
}

DEFAULT_BASE_URLS: Mapping[Provider, str] = {
    Provider.ANTHROPIC: "https://api.anthropic.com",
    Provider.OPENAI: "https://api.openai.com/v1",
    Provider.GOOGLE: "https://generativelanguage.googleapis.com/v1beta",
}

CONNECTION_TEST_MODELS: Mapping[Provider, str] = {
    Provider.ANTHROPIC: "claude-3-5-haiku-20241022",
    Provider.OPENAI: "gpt-5-nano",
    Provider.GOOGLE: "gemini-1.5-flash",
}

_KEY_RULES: Mapping[Provider, tuple[str, int]] = {
    Provider.ANTHROPIC: ("sk-ant-", 20),
    Provider.OPENAI: ("sk-", 20),
    Provider.GOOGLE: ("AIza", 30),
}


def get_model(model_id: str) -> ModelSpec:
    try:
        return MODEL_CATALOG[model_id]
    except KeyError:
        raise ConfigurationError(f"Unknown model '{model_id}'") from None


def resolve_provider(model_id: str) -> Provider:
    """Return the provider that serves *model_id*; unknown ids raise ``ConfigurationError``."""

    return get_model(model_id).provider


def list_models(provider: Provider | None = None) -> list[ModelSpec]:
    return [model for model in _MODELS if provider is None or model.provider is provider]


def estimate_cost(usage: Usage, model_id: str) -> CostEstimate:
    """Price *usage* for *model_id*; returns :meth:`CostEstimate.unknown` instead of guessing."""

    price = MODEL_PRICES.get(model_id)
    entry = MODEL_CATALOG.get(model_id)
    if price is None or entry is None:
        return CostEstimate.unknown()
    read_rate = price.input * CACHE_READ_MULTIPLIER[entry.provider]
    write_rate = price.input * CACHE_WRITE_MULTIPLIER[entry.provider]
    if entry.provider is Provider.ANTHROPIC:
        # Claude reports cached tokens separately from input_tokens.
        uncached_input = usage.input_tokens
    else:
        uncached_input = max(0, usage.input_tokens - usage.cache_read_tokens)
    amount = (
        uncached_input * price.input
        + usage.cache_read_tokens * read_rate
        + usage.cache_creation_tokens * write_rate
        + usage.output_tokens * price.output
    ) / 1000.0
    return CostEstimate(amount=round(amount, 6))


def validate_api_key_format(provider: Provider, api_key: str) -> bool:
    prefix, min_length = _KEY_RULES[provider]
    key = (api_key or "").strip()
    return key.startswith(prefix) and len(key) > min_length
