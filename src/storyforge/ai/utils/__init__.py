"""Utility helpers for the AI layer."""

from .tokens import ApproxByteCounter, TiktokenCounter, TokenCounterRegistry, estimate_tokens

__all__ = ["ApproxByteCounter", "TiktokenCounter", "TokenCounterRegistry", "estimate_tokens"]
