"""Persisted provider-cache handles, one per project and provider."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from ..ai.ai_types import CacheInfo, Provider
from .settings import _SETTINGS_DIR

__all__ = ["CacheMetadataStore"]

LOGGER = logging.getLogger(__name__)
_STORE_FILENAME = "cache_metadata.json"
_STORE_VERSION = 1


def _key(project_id: str, provider: Provider | str) -> str:
    return f"{project_id}:{getattr(provider, 'value', provider)}"


class CacheMetadataStore:
    """JSON file of :class:`CacheInfo` records keyed ``project_id:provider``."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or (_SETTINGS_DIR / _STORE_FILENAME)
        self._entries: dict[str, CacheInfo] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def get(self, project_id: str, provider: Provider | str = Provider.GOOGLE) -> CacheInfo | None:
        return self._load().get(_key(project_id, provider))

    def put(self, info: CacheInfo) -> None:
        entries = self._load()
        entries[_key(info.project_id, info.provider)] = info
        self._write(entries)

    def remove(self, project_id: str, provider: Provider | str = Provider.GOOGLE) -> CacheInfo | None:
        entries = self._load()
        removed = entries.pop(_key(project_id, provider), None)
        if removed is not None:
            self._write(entries)
        return removed

    def all(self) -> list[CacheInfo]:
        return list(self._load().values())

    def _load(self) -> dict[str, CacheInfo]:
        if self._entries is None:
            self._entries = {}
            for key, payload in self._read_payload().get("entries", {}).items():
                if not isinstance(payload, Mapping):
                    continue
                try:
                    self._entries[key] = CacheInfo.from_payload(dict(payload))
                except (KeyError, TypeError, ValueError):
                    LOGGER.debug("Ignoring malformed cache metadata entry %s", key)
        return self._entries

    def _write(self, entries: Mapping[str, CacheInfo]) -> None:
        payload = {
            "version": _STORE_VERSION,
            "entries": {key: info.as_payload() for key, info in entries.items()},
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)

    def _read_payload(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("Cache metadata %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(data, Mapping) or not isinstance(data.get("entries"), Mapping):
            return {}
        return dict(data)
