"""Provider-side context caching (Gemini) and prompt-cache accounting (Claude)."""

from __future__ import annotations

import hashlib
import inspect
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Dict

import httpx

from .ai_types import CacheInfo, PromptCacheInfo, Provider, Usage
from .catalog import CACHE_READ_MULTIPLIER, MODEL_CATALOG, MODEL_PRICES
from .errors import AIError, ConfigurationError, TransportError
from .providers.base import load_frame, normalize_http_error

if TYPE_CHECKING:  # pragma: no cover
    from ..services.cache_metadata import CacheMetadataStore
    from .client import ClientContext

__all__ = [
    "CacheSavings",
    "ContextLoader",
    "GeminiCacheManager",
    "PromptCacheTracker",
    "fingerprint_context",
]

LOGGER = logging.getLogger(__name__)

ContextLoader = Callable[[str], Awaitable[str]]
"""Rebuilds the serialized project context for a project id."""

_DEFAULT_TTL_SECONDS = 3600


def fingerprint_context(context_text: str, model: str) -> str:
    digest = hashlib.sha256()
    digest.update(model.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(context_text.encode("utf-8"))
    return digest.hexdigest()


@dataclass(slots=True)
class CacheSavings:
    """Advisory estimate of what reusing a cache saves; never gates a request."""

    saved_tokens: int
    saved_amount: float | None
    reuse_count: int = 1
    currency: str = "USD"


class GeminiCacheManager:
    """Owns the ``cachedContents`` handle for each project.

    One cache per project; a missing or expired handle is recreated on the
    next :meth:`ensure_cache`, and :meth:`refresh_cache` replaces it outright.
    """

    provider = Provider.GOOGLE

    def __init__(
        self,
        context: "ClientContext",
        *,
        http_client: httpx.AsyncClient | None = None,
        metadata_store: "CacheMetadataStore | None" = None,
        context_loader: ContextLoader | None = None,
        ttl_seconds: int = _DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._context = context
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=context.request_timeout)
        self._store = metadata_store
        self._loader = context_loader
        self._ttl = max(60, int(ttl_seconds))
        self._clock = clock
        self._caches: Dict[str, CacheInfo] = {}

    def set_context_loader(self, loader: ContextLoader | None) -> None:
        self._loader = loader

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_cache(self, project_id: str, context_text: str, model: str | None = None) -> CacheInfo:
        target = model or self._context.config.model
        entry = MODEL_CATALOG.get(target)
        if entry is None or entry.provider is not Provider.GOOGLE:
            raise ConfigurationError(f"Model '{target}' is not a Gemini model")
        if not entry.supports_context_cache:
            raise ConfigurationError(f"Model '{target}' does not support context caching")

        payload = {
            "model": f"models/{target}",
            "displayName": f"storyforge-{project_id}",
            "systemInstruction": {"parts": [{"text": context_text}]},
            "ttl": f"{self._ttl}s",
        }
        data = await self._request("POST", "cachedContents", json=payload)
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise TransportError(
                "Gemini cache response did not include a cache name",
                provider=self.provider.value,
                kind="malformed",
            )
        usage = data.get("usageMetadata") or {}
        now = self._clock()
        info = CacheInfo(
            cache_id=name,
            project_id=project_id,
            provider=self.provider,
            model=target,
            fingerprint=fingerprint_context(context_text, target),
            created_at=now,
            expires_at=now + self._ttl,
            token_count=int(usage.get("totalTokenCount", 0) or 0),
        )
        self._remember(info)
        LOGGER.info("Created Gemini cache %s for %s (%d tokens)", name, project_id, info.token_count)
        return info

    async def refresh_cache(self, project_id: str, model: str | None = None) -> CacheInfo:
        """Rebuild the context and replace the project's cache."""

        if self._loader is None:
            raise ConfigurationError("No context loader configured for cache refresh")
        context_text = await self._loader(project_id)
        existing = self.get_cache_info(project_id)
        if existing is not None:
            await self.delete_cache(existing.cache_id)
            self._drop(project_id)
        return await self.create_cache(project_id, context_text, model or (existing.model if existing else None))

    async def delete_cache(self, cache_id: str) -> None:
        try:
            await self._request("DELETE", cache_id)
        except TransportError as exc:
            if exc.status_code != 404:
                raise
            LOGGER.debug("Gemini cache %s was already gone", cache_id)
        for project_id, info in list(self._caches.items()):
            if info.cache_id == cache_id:
                self._drop(project_id)

    def is_cache_valid(self, info: CacheInfo | None, now: float | None = None) -> bool:
        if info is None:
            return False
        current = self._clock() if now is None else now
        return current < info.expires_at

    def get_cache_info(self, project_id: str) -> CacheInfo | None:
        info = self._caches.get(project_id)
        if info is None and self._store is not None:
            info = self._store.get(project_id, self.provider)
            if info is not None:
                self._caches[project_id] = info
        return info

    async def ensure_cache(self, project_id: str, context_text: str, model: str) -> CacheInfo | None:
        """Return a usable cache for *model* holding exactly *context_text*.

        A missing or expired cache, one for another model, or one whose fingerprint
        differs from *context_text* is replaced. Failures are logged and reported as
        ``None`` so the caller sends uncached.
        """

        entry = MODEL_CATALOG.get(model)
        if entry is None or entry.provider is not Provider.GOOGLE or not entry.supports_context_cache:
            return None
        fingerprint = fingerprint_context(context_text, model)
        existing = self.get_cache_info(project_id)
        if existing is not None and existing.fingerprint == fingerprint and self.is_cache_valid(existing):
            return existing
        if existing is not None:
            await self._discard(existing)
        try:
            return await self.create_cache(project_id, context_text, model)
        except AIError as exc:
            LOGGER.warning("Gemini cache creation failed for %s; sending uncached: %s", project_id, exc)
            return None

    def forget(self, info: CacheInfo) -> None:
        """Drop a handle the provider rejected so the next turn recreates it."""

        current = self._caches.get(info.project_id)
        if current is None or current.cache_id == info.cache_id:
            self._drop(info.project_id)

    def calculate_savings(self, info: CacheInfo, model: str | None = None, reuse_count: int = 1) -> CacheSavings:
        saved_tokens = max(0, info.token_count) * max(0, reuse_count)
        price = MODEL_PRICES.get(model or info.model)
        if price is None:
            return CacheSavings(saved_tokens=saved_tokens, saved_amount=None, reuse_count=reuse_count)
        discount = 1.0 - CACHE_READ_MULTIPLIER[Provider.GOOGLE]
        amount = round(saved_tokens / 1000 * price.input * discount, 6)
        return CacheSavings(saved_tokens=saved_tokens, saved_amount=amount, reuse_count=reuse_count)

    async def aclose(self) -> None:
        if not self._owns_client:
            return
        result = self._http.aclose()
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _remember(self, info: CacheInfo) -> None:
        self._caches[info.project_id] = info
        if self._store is not None:
            self._store.put(info)

    def _drop(self, project_id: str) -> None:
        self._caches.pop(project_id, None)
        if self._store is not None:
            self._store.remove(project_id, self.provider)

    async def _discard(self, info: CacheInfo) -> None:
        if self.is_cache_valid(info):
            LOGGER.debug("Gemini cache %s for %s holds outdated context; replacing", info.cache_id, info.project_id)
            try:
                await self.delete_cache(info.cache_id)
            except AIError as exc:
                LOGGER.warning("Could not delete outdated Gemini cache %s: %s", info.cache_id, exc)
        else:
            LOGGER.debug("Gemini cache %s for %s expired; recreating", info.cache_id, info.project_id)
        self._drop(info.project_id)

    async def _request(self, method: str, path: str, *, json: dict | None = None) -> dict:
        api_key = self._context.api_key_for(self.provider)
        url = f"{self._context.base_url_for(self.provider).rstrip('/')}/{path.lstrip('/')}"
        try:
            response = await self._http.request(method, url, json=json, params={"key": api_key})
        except httpx.HTTPError as exc:
            raise TransportError(
                f"google cache request failed: {exc}", provider=self.provider.value, kind="network"
            ) from exc
        if response.status_code >= 400:
            raise normalize_http_error(self.provider, response)
        if not response.text.strip():
            return {}
        return load_frame(self.provider, response.text)


class PromptCacheTracker:
    """Accumulates Claude prompt-cache token counts per project."""

    def __init__(self) -> None:
        self._totals: Dict[str, PromptCacheInfo] = {}

    def record(self, project_id: str, usage: Usage) -> PromptCacheInfo | None:
        if not (usage.cache_read_tokens or usage.cache_creation_tokens):
            return None
        turn = PromptCacheInfo(
            cache_read_tokens=usage.cache_read_tokens,
            cache_creation_tokens=usage.cache_creation_tokens,
        )
        total = self._totals.setdefault(project_id, PromptCacheInfo())
        total.cache_read_tokens += turn.cache_read_tokens
        total.cache_creation_tokens += turn.cache_creation_tokens
        return turn

    def info_for(self, project_id: str) -> PromptCacheInfo:
        total = self._totals.get(project_id)
        if total is None:
            return PromptCacheInfo()
        return PromptCacheInfo(total.cache_read_tokens, total.cache_creation_tokens)

    def reset(self, project_id: str | None = None) -> None:
        if project_id is None:
            self._totals.clear()
        else:
            self._totals.pop(project_id, None)
