"""Token counting helpers shared by the context and cost code paths."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, cast

import tiktoken

from ..ai_types import TokenCounterProtocol

__all__ = [
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "estimate_tokens",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic counter that estimates tokens via UTF-8 byte length.

    Hangul syllables are three bytes in UTF-8, so Korean prose lands at roughly
    0.75 tokens per character, close to what the vendors bill.
    """

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text))
        except Exception:  # pragma: no cover - encoder edge cases
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        token_module = cast(Any, tiktoken)
        if encoding_name:
            return token_module.get_encoding(encoding_name)
        try:
            return token_module.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("No tiktoken mapping for %s; using o200k_base", model_name)
            return token_module.get_encoding("o200k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def unregister(self, model_name: str) -> None:
        self._counters.pop(self._normalize_key(model_name), None)

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        counter = self.get(model_name)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover - counter bugs must not break prompts
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def register_tiktoken(self, model_name: str) -> TokenCounterProtocol:
        """Register an exact tiktoken counter, keeping the estimate when encodings are unavailable."""

        if self.has(model_name):
            return self.get(model_name)
        try:
            counter: TokenCounterProtocol = TiktokenCounter(model_name)
        except Exception as exc:
            # Encodings are downloaded on first use and may be unreachable offline.
            LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
            counter = ApproxByteCounter(model_name=model_name)
        self.register(model_name, counter)
        return counter

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


def estimate_tokens(text: str) -> int:
    """Estimate tokens for *text* with the shared registry's fallback counter."""

    return TokenCounterRegistry.global_instance().estimate(text)
