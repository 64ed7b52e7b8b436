"""Provider adapter base classes and HTTP helpers."""

from __future__ import annotations

import inspect
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..ai_types import Provider, ProviderRequest, ProviderResponse, StreamDelta
from ..errors import TransportError

__all__ = [
    "AdapterOptions",
    "ProviderAdapter",
    "HttpProviderAdapter",
    "normalize_http_error",
    "iter_sse_events",
    "load_frame",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AdapterOptions:
    """Transport settings shared by every adapter."""

    base_url: str
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    debug_logging: bool = False


class ProviderAdapter(ABC):
    """One vendor's translation of the normalized request/response contract."""

    provider: Provider

    def __init__(self, options: AdapterOptions) -> None:
        self._options = options

    @property
    def options(self) -> AdapterOptions:
        return self._options

    @abstractmethod
    async def send(self, request: ProviderRequest) -> ProviderResponse:
        """Run the request to completion."""

    @abstractmethod
    def stream(self, request: ProviderRequest) -> AsyncIterator[StreamDelta]:
        """Yield normalized deltas; closing the iterator closes the transport."""

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""

    def _retrying(self) -> AsyncRetrying:
        # Only the request handshake runs inside this loop; streamed bodies are never replayed.
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._options.max_retries)),
            wait=wait_exponential(
                multiplier=self._options.retry_min_seconds,
                max=self._options.retry_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
        )

    def _log_payload(self, payload: Mapping[str, Any]) -> None:
        if not self._options.debug_logging:
            return
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("%s payload (unserializable): %s", self.provider.value, payload)
        else:
            LOGGER.debug("%s payload:\n%s", self.provider.value, serialized)


class HttpProviderAdapter(ProviderAdapter):
    """Adapter speaking a vendor REST API through ``httpx``."""

    def __init__(self, options: AdapterOptions, *, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(options)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=options.request_timeout)

    async def aclose(self) -> None:
        if not self._owns_client:
            return
        close = getattr(self._http, "aclose", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    def _url(self, path: str) -> str:
        return f"{self._options.base_url.rstrip('/')}/{path.lstrip('/')}"

    async def _post_json(
        self,
        url: str,
        payload: Mapping[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        self._log_payload(payload)
        async for attempt in self._retrying():
            with attempt:
                try:
                    response = await self._http.post(url, json=payload, headers=headers, params=params)
                except httpx.HTTPError as exc:
                    raise _network_error(self.provider, exc) from exc
                if response.status_code >= 400:
                    raise normalize_http_error(self.provider, response)
                return load_frame(self.provider, response.text)
        raise TransportError("Request retries exhausted", provider=self.provider.value)

    async def _open_stream(
        self,
        url: str,
        payload: Mapping[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        self._log_payload(payload)
        async for attempt in self._retrying():
            with attempt:
                request = self._http.build_request("POST", url, json=payload, headers=headers, params=params)
                try:
                    response = await self._http.send(request, stream=True)
                except httpx.HTTPError as exc:
                    raise _network_error(self.provider, exc) from exc
                if response.status_code >= 400:
                    await response.aread()
                    await response.aclose()
                    raise normalize_http_error(self.provider, response)
                return response
        raise TransportError("Stream retries exhausted", provider=self.provider.value)


def normalize_http_error(provider: Provider, response: httpx.Response) -> TransportError:
    """Map an HTTP error response onto :class:`TransportError`."""

    status = response.status_code
    message = _extract_error_message(response) or f"HTTP {status}"
    retry_after: float | None = None
    if status in (401, 403):
        kind = "auth"
    elif status == 429:
        kind = "rate_limit"
        header = response.headers.get("retry-after")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
    elif status >= 500:
        kind = "server"
    else:
        kind = "bad_request"
    return TransportError(
        f"{provider.value} request failed ({status}): {message}",
        provider=provider.value,
        kind=kind,  # type: ignore[arg-type]
        status_code=status,
        retry_after=retry_after,
    )


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[tuple[str | None, str]]:
    """Yield ``(event, data)`` pairs from a server-sent events body."""

    event: str | None = None
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        if not line:
            if data_lines:
                yield event, "\n".join(data_lines)
            event = None
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)
    if data_lines:
        yield event, "\n".join(data_lines)


def load_frame(provider: Provider, raw: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise TransportError(
            f"{provider.value} returned malformed JSON",
            provider=provider.value,
            kind="malformed",
        ) from exc
    if not isinstance(data, dict):
        raise TransportError(
            f"{provider.value} returned an unexpected payload",
            provider=provider.value,
            kind="malformed",
        )
    return data


def _extract_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, Mapping):
        error = body.get("error")
        if isinstance(error, Mapping):
            return str(error.get("message") or error.get("type") or "")
        if isinstance(error, str):
            return error
        return str(body.get("message") or "")
    return ""


def _network_error(provider: Provider, exc: httpx.HTTPError) -> TransportError:
    return TransportError(
        f"{provider.value} connection failed: {exc}",
        provider=provider.value,
        kind="network",
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransportError) and exc.retryable
