"""Chat sessions, UI events and the chat service."""

from .events import (
    CacheStateChanged,
    Event,
    EventBus,
    NoticePosted,
    PartialResponseAvailable,
    TurnCanceled,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
    TurnStreamChunk,
    UpdatesApplied,
)
from .models import ChatMessage, ChatSession, MessageError, MessageStatus, SessionType
from .session_store import ChatSessionStore

__all__ = [
    "CacheStateChanged",
    "Event",
    "EventBus",
    "NoticePosted",
    "PartialResponseAvailable",
    "TurnCanceled",
    "TurnCompleted",
    "TurnFailed",
    "TurnStarted",
    "TurnStreamChunk",
    "UpdatesApplied",
    "ChatMessage",
    "ChatSession",
    "MessageError",
    "MessageStatus",
    "SessionType",
    "ChatSessionStore",
]
