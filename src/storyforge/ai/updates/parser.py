"""Extract ``storyforge-update`` blocks from agent replies."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List

from jsonschema import Draft7Validator

from .protocol import UPDATE_BLOCK_TAG, UPDATE_ENVELOPE_SCHEMA, StoryforgeUpdate, UpdateType

__all__ = [
    "RejectedBlock",
    "ParsedAgentResponse",
    "UpdateBlockParser",
    "parse_agent_response",
    "strip_update_blocks",
]

LOGGER = logging.getLogger(__name__)

_ENVELOPE_VALIDATOR = Draft7Validator(UPDATE_ENVELOPE_SCHEMA)
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


@dataclass(slots=True)
class RejectedBlock:
    index: int
    reason: str
    raw: str


@dataclass(slots=True)
class ParsedAgentResponse:
    display_text: str
    updates: List[StoryforgeUpdate] = field(default_factory=list)
    rejected: List[RejectedBlock] = field(default_factory=list)

    @property
    def has_updates(self) -> bool:
        return bool(self.updates)


class UpdateBlockParser:
    """Scans text for fenced update blocks.

    Each block is decoded independently; a block that fails to decode or fails
    the envelope check is recorded in ``rejected`` and never aborts its siblings.
    Every block, accepted or not, is removed from the display text.
    """

    def __init__(self, tag: str = UPDATE_BLOCK_TAG) -> None:
        fence = re.escape(tag)
        self._block = re.compile(rf"```{fence}\s*([\s\S]*?)```")
        self._open_tail = re.compile(rf"```{fence}[\s\S]*$")

    def parse(self, text: str) -> ParsedAgentResponse:
        updates: List[StoryforgeUpdate] = []
        rejected: List[RejectedBlock] = []
        for index, match in enumerate(self._block.finditer(text or "")):
            raw = match.group(1).strip()
            try:
                updates.append(self._decode(raw, index))
            except ValueError as exc:
                LOGGER.warning("Dropping update block #%d: %s", index, exc)
                rejected.append(RejectedBlock(index=index, reason=str(exc), raw=raw))
        display = self._block.sub("", text or "")
        return ParsedAgentResponse(display_text=_normalize(display), updates=updates, rejected=rejected)

    def strip(self, text: str) -> str:
        """Remove complete blocks and a trailing unterminated one (mid-stream text)."""

        without_blocks = self._block.sub("", text or "")
        return _normalize(self._open_tail.sub("", without_blocks))

    def _decode(self, raw: str, index: int) -> StoryforgeUpdate:
        if not raw:
            raise ValueError("empty block")
        try:
            payload: Any = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON ({exc.msg} at line {exc.lineno})") from exc
        errors = sorted(_ENVELOPE_VALIDATOR.iter_errors(payload), key=lambda item: [str(p) for p in item.path])
        if errors:
            raise ValueError(errors[0].message)
        return StoryforgeUpdate(type=UpdateType(payload["type"]), data=dict(payload["data"]), index=index)


_DEFAULT_PARSER = UpdateBlockParser()


def parse_agent_response(text: str) -> ParsedAgentResponse:
    return _DEFAULT_PARSER.parse(text)


def strip_update_blocks(text: str) -> str:
    return _DEFAULT_PARSER.strip(text)


def _normalize(text: str) -> str:
    return _EXCESS_BLANK_LINES.sub("\n\n", text).strip()
