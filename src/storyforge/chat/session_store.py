"""Chat session store.

Holds every chat session per project and enforces the message-ordering
rules: sessions are append-only, a pending or streaming reply is always the
last message, completed messages are never edited (only replaced on retry),
and closed sessions are archived rather than deleted.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List

from ..ai.errors import SessionBusyError
from .models import ChatMessage, ChatSession, MessageStatus, SessionType

LOGGER = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {"content", "status", "model", "token_count", "usage", "cache_info", "suggested_actions", "error"}
)


class ChatSessionStore:
    """In-memory registry of chat sessions; one current session per project."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._sessions: Dict[str, ChatSession] = {}
        self._current: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def current_session(self, project_id: str) -> ChatSession | None:
        session_id = self._current.get(project_id)
        return self._sessions.get(session_id) if session_id else None

    def get_session(self, session_id: str) -> ChatSession:
        try:
            return self._sessions[session_id]
        except KeyError as exc:
            raise KeyError(f"Unknown chat session '{session_id}'") from exc

    def create_session(self, project_id: str, session_type: SessionType = SessionType.GENERAL) -> ChatSession:
        """Start a new current session, archiving the previous one."""

        previous = self.current_session(project_id)
        if previous is not None:
            self._archive(previous)
        now = self._clock()
        session = ChatSession(
            id=f"chat-{uuid.uuid4().hex[:12]}",
            project_id=project_id,
            type=SessionType(session_type),
            created_at=now,
            updated_at=now,
        )
        self._sessions[session.id] = session
        self._current[project_id] = session.id
        LOGGER.debug("Created chat session %s (%s) for %s", session.id, session.type.value, project_id)
        return session

    def ensure_session(self, project_id: str, session_type: SessionType = SessionType.GENERAL) -> ChatSession:
        return self.current_session(project_id) or self.create_session(project_id, session_type)

    def close_session(self, session_id: str) -> None:
        session = self.get_session(session_id)
        self._archive(session)
        if self._current.get(session.project_id) == session_id:
            del self._current[session.project_id]

    def archived_sessions(self, project_id: str) -> List[ChatSession]:
        archived = [s for s in self._sessions.values() if s.project_id == project_id and s.archived]
        return sorted(archived, key=lambda s: s.updated_at, reverse=True)

    def sessions(self, project_id: str) -> List[ChatSession]:
        return [s for s in self._sessions.values() if s.project_id == project_id]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def append_message(self, session_id: str, message: ChatMessage) -> ChatMessage:
        """Append *message*; refused while the session still has an unresolved reply."""

        session = self.get_session(session_id)
        if session.streaming_message is not None:
            raise SessionBusyError(session_id)
        session.messages.append(message)
        session.updated_at = self._clock()
        return message

    def update_message(self, session_id: str, message_id: str, **changes: Any) -> ChatMessage:
        """Edit an unresolved message in place (content, status, usage, ...).

        Completed messages are immutable; use :meth:`replace_message` to retry.
        """

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Cannot update message fields: {', '.join(sorted(unknown))}")
        session = self.get_session(session_id)
        index, message = self._find(session, message_id)
        if message.status is MessageStatus.COMPLETE:
            raise ValueError(f"Message '{message_id}' is complete and cannot be modified")
        status = changes.get("status")
        if status in (MessageStatus.PENDING, MessageStatus.STREAMING) and index != len(session.messages) - 1:
            raise ValueError("Only the last message in a session can be streaming")
        updated = replace(message, **changes)
        session.messages[index] = updated
        session.updated_at = self._clock()
        return updated

    def replace_message(self, session_id: str, message_id: str, new_message: ChatMessage) -> ChatMessage:
        """Swap an assistant reply for a retry; a pending replacement must be the last message."""

        session = self.get_session(session_id)
        index, message = self._find(session, message_id)
        if message.role != "assistant":
            raise ValueError("Only assistant messages can be replaced")
        if not new_message.status.is_terminal and index != len(session.messages) - 1:
            raise ValueError("Only the last message in a session can be streaming")
        session.messages[index] = new_message
        session.updated_at = self._clock()
        return new_message

    def remove_message(self, session_id: str, message_id: str) -> ChatMessage:
        """Drop a message that never produced content (e.g. a failed pending reply)."""

        session = self.get_session(session_id)
        index, message = self._find(session, message_id)
        if message.status is MessageStatus.COMPLETE or message.content:
            raise ValueError(f"Message '{message_id}' has content and cannot be removed")
        del session.messages[index]
        session.updated_at = self._clock()
        return message

    def find_message(self, message_id: str) -> tuple[ChatSession, ChatMessage] | None:
        for session in self._sessions.values():
            for message in session.messages:
                if message.id == message_id:
                    return session, message
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _archive(self, session: ChatSession) -> None:
        if session.archived:
            return
        session.archived = True
        session.updated_at = self._clock()
        LOGGER.debug("Archived chat session %s", session.id)

    @staticmethod
    def _find(session: ChatSession, message_id: str) -> tuple[int, ChatMessage]:
        for index, message in enumerate(session.messages):
            if message.id == message_id:
                return index, message
        raise KeyError(f"Unknown message '{message_id}' in session '{session.id}'")


__all__ = ["ChatSessionStore"]
