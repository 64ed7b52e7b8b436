"""Chat message and session models."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:  # pragma: no cover
    from ..ai.ai_types import Usage

__all__ = [
    "MessageStatus",
    "SessionType",
    "MessageError",
    "ChatMessage",
    "ChatSession",
]


class MessageStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.COMPLETE, MessageStatus.ERROR, MessageStatus.CANCELLED)


class SessionType(str, Enum):
    GENERAL = "general"
    PLOT_SETTING = "plot_setting"
    CHARACTER_SETTING = "character_setting"
    WRITING_ASSIST = "writing_assist"
    WORLD_BUILDING = "world_building"


@dataclass(slots=True)
class MessageError:
    code: str
    message: str
    retryable: bool = True


@dataclass(slots=True)
class ChatMessage:
    """One chat turn; immutable once complete except for retry replacement."""

    id: str
    role: Literal["user", "assistant"]
    content: str
    status: MessageStatus = MessageStatus.COMPLETE
    timestamp: float = field(default_factory=time.time)
    model: str | None = None
    token_count: int | None = None
    usage: Usage | None = None
    cache_info: dict[str, Any] | None = None
    suggested_actions: list[str] = field(default_factory=list)
    error: MessageError | None = None


@dataclass(slots=True)
class ChatSession:
    id: str
    project_id: str
    type: SessionType = SessionType.GENERAL
    messages: list[ChatMessage] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    archived: bool = False

    @property
    def streaming_message(self) -> ChatMessage | None:
        if self.messages and self.messages[-1].status in (MessageStatus.PENDING, MessageStatus.STREAMING):
            return self.messages[-1]
        return None
