"""Anthropic Messages API adapter."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Mapping

from ..ai_types import Provider, ProviderRequest, ProviderResponse, StreamDelta, Usage
from ..errors import TransportError
from .base import HttpProviderAdapter, iter_sse_events, load_frame

__all__ = ["ClaudeAdapter", "ANTHROPIC_VERSION"]

LOGGER = logging.getLogger(__name__)
ANTHROPIC_VERSION = "2023-06-01"


class ClaudeAdapter(HttpProviderAdapter):
    """Talks to ``/v1/messages`` with optional ephemeral prompt caching."""

    provider = Provider.ANTHROPIC

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        url = self._url("v1/messages")
        headers = self._headers(request.api_key)
        payload = self._build_payload(request, stream=False, cache=request.prompt_cache)
        try:
            data = await self._post_json(url, payload, headers=headers)
        except TransportError as exc:
            if not (request.prompt_cache and _cache_rejected(exc)):
                raise
            LOGGER.warning("Claude rejected cache_control (%s); retrying without prompt cache", exc.status_code)
            payload = self._build_payload(request, stream=False, cache=False)
            data = await self._post_json(url, payload, headers=headers)

        content = "".join(
            str(block.get("text", ""))
            for block in data.get("content") or []
            if isinstance(block, Mapping) and block.get("type") == "text"
        )
        usage = _parse_usage(data.get("usage"))
        return ProviderResponse(
            provider=self.provider,
            model=str(data.get("model") or request.model),
            content=content,
            usage=usage,
            stop_reason=data.get("stop_reason"),
            cache_used=usage.cache_read_tokens > 0,
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamDelta]:
        url = self._url("v1/messages")
        headers = self._headers(request.api_key)
        payload = self._build_payload(request, stream=True, cache=request.prompt_cache)
        try:
            response = await self._open_stream(url, payload, headers=headers)
        except TransportError as exc:
            if not (request.prompt_cache and _cache_rejected(exc)):
                raise
            LOGGER.warning("Claude rejected cache_control (%s); streaming without prompt cache", exc.status_code)
            payload = self._build_payload(request, stream=True, cache=False)
            response = await self._open_stream(url, payload, headers=headers)

        usage = Usage()
        stop_reason: str | None = None
        try:
            async for event, data in iter_sse_events(response):
                frame = load_frame(self.provider, data)
                frame_type = frame.get("type") or event
                if frame_type == "message_start":
                    message = frame.get("message") or {}
                    usage = usage.merge(_parse_usage(message.get("usage")))
                    yield StreamDelta(type="usage", usage=usage)
                elif frame_type == "content_block_delta":
                    delta = frame.get("delta") or {}
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield StreamDelta(type="text", text=str(delta["text"]))
                elif frame_type == "message_delta":
                    delta = frame.get("delta") or {}
                    stop_reason = delta.get("stop_reason") or stop_reason
                    usage = usage.merge(_parse_usage(frame.get("usage")))
                    yield StreamDelta(type="usage", usage=usage)
                elif frame_type == "message_stop":
                    yield StreamDelta(type="done", usage=usage, stop_reason=stop_reason)
                    return
                elif frame_type == "error":
                    error = frame.get("error") or {}
                    raise TransportError(
                        f"Claude stream error: {error.get('message') or error.get('type') or 'unknown'}",
                        provider=self.provider.value,
                        kind="server",
                    )
            raise TransportError(
                "Claude stream ended before message_stop",
                provider=self.provider.value,
                kind="network",
            )
        finally:
            await response.aclose()

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _build_payload(self, request: ProviderRequest, *, stream: bool, cache: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": [
                {"role": turn.role, "content": turn.content}
                for turn in request.turns()
                if turn.content
            ],
        }
        if request.system:
            if cache:
                payload["system"] = [
                    {
                        "type": "text",
                        "text": request.system,
                        "cache_control": {"type": "ephemeral"},
                    }
                ]
            else:
                payload["system"] = request.system
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if stream:
            payload["stream"] = True
        return payload


def _parse_usage(raw: Any) -> Usage:
    if not isinstance(raw, Mapping):
        return Usage()
    return Usage(
        input_tokens=int(raw.get("input_tokens") or 0),
        output_tokens=int(raw.get("output_tokens") or 0),
        cache_read_tokens=int(raw.get("cache_read_input_tokens") or 0),
        cache_creation_tokens=int(raw.get("cache_creation_input_tokens") or 0),
    )


def _cache_rejected(exc: TransportError) -> bool:
    return exc.kind == "bad_request" and exc.status_code in (400, 422)
