"""Google Gemini ``generateContent`` adapter."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Mapping

from ..ai_types import Provider, ProviderRequest, ProviderResponse, StreamDelta, Usage
from ..errors import TransportError
from .base import HttpProviderAdapter, iter_sse_events, load_frame

__all__ = ["GeminiAdapter"]

LOGGER = logging.getLogger(__name__)


class GeminiAdapter(HttpProviderAdapter):
    """Talks to the Generative Language REST API, optionally through a cached context."""

    provider = Provider.GOOGLE

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        url = self._url(f"models/{request.model}:generateContent")
        params = {"key": request.api_key}
        cache_used = bool(request.cached_content)
        payload = self._build_payload(request, use_cache=cache_used)
        try:
            data = await self._post_json(url, payload, params=params)
        except TransportError as exc:
            if not (cache_used and _cache_rejected(exc)):
                raise
            LOGGER.warning(
                "Gemini rejected cachedContent %s (%s); retrying uncached",
                request.cached_content,
                exc.status_code,
            )
            cache_used = False
            payload = self._build_payload(request, use_cache=False)
            data = await self._post_json(url, payload, params=params)

        _raise_for_block(data)
        candidate = _first_candidate(data)
        return ProviderResponse(
            provider=self.provider,
            model=request.model,
            content=_candidate_text(candidate),
            usage=_parse_usage(data.get("usageMetadata")),
            stop_reason=candidate.get("finishReason") if candidate else None,
            cache_used=cache_used,
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamDelta]:
        url = self._url(f"models/{request.model}:streamGenerateContent")
        params = {"alt": "sse", "key": request.api_key}
        use_cache = bool(request.cached_content)
        payload = self._build_payload(request, use_cache=use_cache)
        rejected = False
        try:
            response = await self._open_stream(url, payload, params=params)
        except TransportError as exc:
            if not (use_cache and _cache_rejected(exc)):
                raise
            LOGGER.warning(
                "Gemini rejected cachedContent %s (%s); streaming uncached",
                request.cached_content,
                exc.status_code,
            )
            rejected = True
            payload = self._build_payload(request, use_cache=False)
            response = await self._open_stream(url, payload, params=params)

        if rejected:
            yield StreamDelta(type="cache_rejected")

        usage = Usage()
        stop_reason: str | None = None
        try:
            async for _event, data in iter_sse_events(response):
                frame = load_frame(self.provider, data)
                _raise_for_block(frame)
                candidate = _first_candidate(frame)
                text = _candidate_text(candidate)
                if text:
                    yield StreamDelta(type="text", text=text)
                if candidate and candidate.get("finishReason"):
                    stop_reason = str(candidate["finishReason"])
                if "usageMetadata" in frame:
                    usage = usage.merge(_parse_usage(frame["usageMetadata"]))
                    yield StreamDelta(type="usage", usage=usage)
            yield StreamDelta(type="done", usage=usage, stop_reason=stop_reason)
        finally:
            await response.aclose()

    def _build_payload(self, request: ProviderRequest, *, use_cache: bool) -> dict[str, Any]:
        contents = [
            {
                "role": "model" if turn.role == "assistant" else "user",
                "parts": [{"text": turn.content}],
            }
            for turn in request.turns()
            if turn.content
        ]
        generation: dict[str, Any] = {"maxOutputTokens": request.max_tokens}
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        payload: dict[str, Any] = {"contents": contents, "generationConfig": generation}
        if use_cache and request.cached_content:
            # The cached context already carries the system instruction.
            payload["cachedContent"] = request.cached_content
        elif request.system:
            payload["systemInstruction"] = {"parts": [{"text": request.system}]}
        return payload


def _first_candidate(data: Mapping[str, Any]) -> Mapping[str, Any] | None:
    candidates = data.get("candidates") or []
    if candidates and isinstance(candidates[0], Mapping):
        return candidates[0]
    return None


def _candidate_text(candidate: Mapping[str, Any] | None) -> str:
    if not candidate:
        return ""
    content = candidate.get("content") or {}
    parts = content.get("parts") or []
    return "".join(str(part.get("text", "")) for part in parts if isinstance(part, Mapping))


def _raise_for_block(data: Mapping[str, Any]) -> None:
    feedback = data.get("promptFeedback")
    if isinstance(feedback, Mapping) and feedback.get("blockReason"):
        raise TransportError(
            f"Gemini blocked the prompt: {feedback['blockReason']}",
            provider=Provider.GOOGLE.value,
            kind="bad_request",
        )


def _parse_usage(raw: Any) -> Usage:
    if not isinstance(raw, Mapping):
        return Usage()
    return Usage(
        input_tokens=int(raw.get("promptTokenCount") or 0),
        output_tokens=int(raw.get("candidatesTokenCount") or 0),
        cache_read_tokens=int(raw.get("cachedContentTokenCount") or 0),
    )


def _cache_rejected(exc: TransportError) -> bool:
    return exc.kind in ("bad_request", "auth") and exc.status_code in (400, 403, 404)
