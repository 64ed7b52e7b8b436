"""OpenAI Chat Completions adapter built on the official async SDK."""

from __future__ import annotations

import inspect
import logging
from typing import Any, AsyncIterator, Dict, List

from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    AsyncOpenAI,
    RateLimitError,
)

from ..ai_types import Provider, ProviderRequest, ProviderResponse, StreamDelta, Usage
from ..errors import TransportError
from .base import AdapterOptions, ProviderAdapter

__all__ = ["OpenAIAdapter"]

LOGGER = logging.getLogger(__name__)


class OpenAIAdapter(ProviderAdapter):
    """Chat Completions via ``AsyncOpenAI``; SDK retries are off so tenacity owns them."""

    provider = Provider.OPENAI

    def __init__(self, options: AdapterOptions, *, client: AsyncOpenAI | None = None) -> None:
        super().__init__(options)
        self._injected = client
        self._clients: Dict[str, AsyncOpenAI] = {}

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        payload = self._build_payload(request, stream=False)
        self._log_payload(payload)
        client = self._client_for(request.api_key)
        completion: Any = None
        async for attempt in self._retrying():
            with attempt:
                try:
                    completion = await client.chat.completions.create(**payload)
                except APIError as exc:
                    raise _map_openai_error(exc) from exc

        choices = getattr(completion, "choices", None) or []
        first = choices[0] if choices else None
        message = getattr(first, "message", None)
        return ProviderResponse(
            provider=self.provider,
            model=str(getattr(completion, "model", None) or request.model),
            content=str(getattr(message, "content", None) or ""),
            usage=_parse_usage(getattr(completion, "usage", None)),
            stop_reason=getattr(first, "finish_reason", None),
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamDelta]:
        payload = self._build_payload(request, stream=True)
        self._log_payload(payload)
        client = self._client_for(request.api_key)
        stream: Any = None
        async for attempt in self._retrying():
            with attempt:
                try:
                    stream = await client.chat.completions.create(**payload)
                except APIError as exc:
                    raise _map_openai_error(exc) from exc

        usage = Usage()
        stop_reason: str | None = None
        try:
            try:
                async for chunk in stream:
                    for choice in getattr(chunk, "choices", None) or []:
                        delta = getattr(choice, "delta", None)
                        text = getattr(delta, "content", None)
                        if text:
                            yield StreamDelta(type="text", text=str(text))
                        if getattr(choice, "finish_reason", None):
                            stop_reason = str(choice.finish_reason)
                    chunk_usage = getattr(chunk, "usage", None)
                    if chunk_usage is not None:
                        usage = usage.merge(_parse_usage(chunk_usage))
                        yield StreamDelta(type="usage", usage=usage)
            except APIError as exc:
                raise _map_openai_error(exc) from exc
            yield StreamDelta(type="done", usage=usage, stop_reason=stop_reason)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                result = close()
                if inspect.isawaitable(result):
                    await result

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                result = close()
            except Exception as exc:  # pragma: no cover - shutdown best effort
                LOGGER.debug("OpenAI client close failed to start: %s", exc)
                continue
            if inspect.isawaitable(result):
                await result

    def _client_for(self, api_key: str) -> AsyncOpenAI:
        if self._injected is not None:
            return self._injected
        client = self._clients.get(api_key)
        if client is None:
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=self._options.base_url,
                timeout=self._options.request_timeout,
                max_retries=0,
            )
            self._clients[api_key] = client
        return client

    def _build_payload(self, request: ProviderRequest, *, stream: bool) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend(
            {"role": turn.role, "content": turn.content}
            for turn in request.turns()
            if turn.content
        )
        payload: Dict[str, Any] = {"model": request.model, "messages": messages}
        reasoning_model = request.model.startswith("gpt-5")
        if reasoning_model:
            payload["max_completion_tokens"] = request.max_tokens
        else:
            payload["max_tokens"] = request.max_tokens
            if request.temperature is not None:
                payload["temperature"] = request.temperature
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload


def _parse_usage(raw: Any) -> Usage:
    if raw is None:
        return Usage()
    details = getattr(raw, "prompt_tokens_details", None)
    return Usage(
        input_tokens=int(getattr(raw, "prompt_tokens", 0) or 0),
        output_tokens=int(getattr(raw, "completion_tokens", 0) or 0),
        cache_read_tokens=int(getattr(details, "cached_tokens", 0) or 0),
    )


def _map_openai_error(exc: APIError) -> TransportError:
    provider = Provider.OPENAI.value
    if isinstance(exc, RateLimitError):
        retry_after = None
        header = exc.response.headers.get("retry-after") if exc.response is not None else None
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return TransportError(str(exc), provider=provider, kind="rate_limit", status_code=429, retry_after=retry_after)
    if isinstance(exc, APIStatusError):
        status = exc.status_code
        if status in (401, 403):
            kind = "auth"
        elif status >= 500:
            kind = "server"
        else:
            kind = "bad_request"
        return TransportError(str(exc), provider=provider, kind=kind, status_code=status)  # type: ignore[arg-type]
    if isinstance(exc, APIConnectionError):
        return TransportError(str(exc), provider=provider, kind="network")
    return TransportError(str(exc), provider=provider, kind="malformed")
