"""Provider clients, context building, caching, streaming and structured updates."""

from .client import AIConfig, ClientContext, ConnectionCheck, UnifiedClient
from .utils.tokens import ApproxByteCounter, TokenCounterRegistry

__all__ = [
    "AIConfig",
    "ClientContext",
    "ConnectionCheck",
    "UnifiedClient",
    "TokenCounterRegistry",
    "ApproxByteCounter",
]
