"""Provider adapters, one per supported AI vendor."""

from .base import AdapterOptions, HttpProviderAdapter, ProviderAdapter, normalize_http_error
from .claude import ClaudeAdapter
from .gemini import GeminiAdapter
from .openai_adapter import OpenAIAdapter

__all__ = [
    "AdapterOptions",
    "ProviderAdapter",
    "HttpProviderAdapter",
    "ClaudeAdapter",
    "OpenAIAdapter",
    "GeminiAdapter",
    "normalize_http_error",
]
