"""Persistence for interrupted assistant replies awaiting recovery."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from .settings import _SETTINGS_DIR

__all__ = ["PartialResponse", "PartialResponseStore", "MIN_PARTIAL_LENGTH", "MAX_PARTIAL_ENTRIES"]

LOGGER = logging.getLogger(__name__)
_STORE_FILENAME = "partial_responses.json"
_STORE_VERSION = 1
MIN_PARTIAL_LENGTH = 10
MAX_PARTIAL_ENTRIES = 10


def _default_store_path() -> Path:
    return _SETTINGS_DIR / _STORE_FILENAME


@dataclass(slots=True)
class PartialResponse:
    """Text a stream had produced before it was cancelled or failed."""

    message_id: str
    chat_session_id: str
    project_id: str
    content: str
    status: str
    saved_at: float
    error_message: str | None = None

    def age_hours(self, now: float | None = None) -> float:
        return max(0.0, ((now if now is not None else time.time()) - self.saved_at) / 3600.0)


class PartialResponseStore:
    """JSON-backed snapshot store keyed by message id.

    Holds at most ``max_entries`` snapshots (oldest evicted first) and drops
    entries older than ``retention_hours`` on :meth:`cleanup_stale`.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        max_entries: int = MAX_PARTIAL_ENTRIES,
        retention_hours: float = 24.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = path or _default_store_path()
        self._max_entries = max(1, max_entries)
        self._retention_hours = retention_hours
        self._clock = clock
        self._entries: dict[str, PartialResponse] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def save(self, snapshot: PartialResponse) -> bool:
        """Store *snapshot*; returns ``False`` when the text is too short to be worth recovering."""

        if len(snapshot.content.strip()) < MIN_PARTIAL_LENGTH:
            LOGGER.debug("Skipping partial snapshot for %s: content too short", snapshot.message_id)
            return False
        entries = self._load()
        entries[snapshot.message_id] = snapshot
        if len(entries) > self._max_entries:
            ordered = sorted(entries.values(), key=lambda item: item.saved_at, reverse=True)
            for stale in ordered[self._max_entries :]:
                entries.pop(stale.message_id, None)
        self._write(entries)
        return True

    def get(self, message_id: str) -> PartialResponse | None:
        return self._load().get(message_id)

    def list(self, *, project_id: str | None = None, chat_session_id: str | None = None) -> list[PartialResponse]:
        items = [
            entry
            for entry in self._load().values()
            if (project_id is None or entry.project_id == project_id)
            and (chat_session_id is None or entry.chat_session_id == chat_session_id)
        ]
        return sorted(items, key=lambda item: item.saved_at, reverse=True)

    def clear(self, message_id: str) -> bool:
        entries = self._load()
        if entries.pop(message_id, None) is None:
            return False
        self._write(entries)
        return True

    def cleanup_stale(self, now: float | None = None) -> int:
        current = self._clock() if now is None else now
        entries = self._load()
        stale = [key for key, entry in entries.items() if entry.age_hours(current) > self._retention_hours]
        for key in stale:
            entries.pop(key, None)
        if stale:
            LOGGER.info("Dropped %d stale partial response(s)", len(stale))
            self._write(entries)
        return len(stale)

    def _load(self) -> dict[str, PartialResponse]:
        if self._entries is None:
            self._entries = _coerce_entries(self._read_payload().get("entries"))
        return self._entries

    def _write(self, entries: Mapping[str, PartialResponse]) -> None:
        payload = {
            "version": _STORE_VERSION,
            "entries": {key: asdict(entry) for key, entry in entries.items()},
        }
        body = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)

    def _read_payload(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if isinstance(data, Mapping):
                return dict(data)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Partial response store %s is not valid JSON: %s", self._path, exc)
        return {}


def _coerce_entries(value: Any) -> dict[str, PartialResponse]:
    if not isinstance(value, Mapping):
        return {}
    result: dict[str, PartialResponse] = {}
    for key, entry in value.items():
        if not isinstance(key, str) or not isinstance(entry, Mapping):
            continue
        try:
            result[key] = PartialResponse(
                message_id=str(entry.get("message_id", key)),
                chat_session_id=str(entry["chat_session_id"]),
                project_id=str(entry["project_id"]),
                content=str(entry.get("content", "")),
                status=str(entry.get("status", "error")),
                saved_at=float(entry.get("saved_at", 0.0)),
                error_message=entry.get("error_message"),
            )
        except (KeyError, TypeError, ValueError):
            LOGGER.debug("Ignoring malformed partial response entry %s", key)
    return result
