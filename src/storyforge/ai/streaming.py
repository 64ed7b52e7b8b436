"""Streaming session state machine, render throttling and stall detection."""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List

from ..chat.models import ChatMessage, MessageError, MessageStatus
from ..services.partial_responses import PartialResponse, PartialResponseStore
from .ai_types import StreamDelta, Usage
from .errors import SessionBusyError

if TYPE_CHECKING:  # pragma: no cover
    from ..services.settings import StreamSettings

__all__ = [
    "StreamStatus",
    "StreamOptions",
    "ChunkBuffer",
    "ConnectionMonitor",
    "StreamSession",
    "StreamUpdate",
    "StreamStats",
    "StreamSessionManager",
    "calculate_stream_stats",
    "create_partial_message",
]

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


class StreamStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.COMPLETED, StreamStatus.CANCELLED, StreamStatus.ERROR)


@dataclass(slots=True)
class StreamOptions:
    chunk_buffer_size: int = 5
    flush_interval: float = 0.05
    connection_timeout: float = 30.0
    chunk_timeout: float = 60.0

    @classmethod
    def from_settings(cls, settings: "StreamSettings | None") -> "StreamOptions":
        if settings is None:
            return cls()
        return cls(
            chunk_buffer_size=max(1, int(settings.chunk_buffer_size)),
            flush_interval=max(0.0, float(settings.flush_interval)),
            connection_timeout=max(0.001, float(settings.connection_timeout)),
            chunk_timeout=max(0.001, float(settings.chunk_timeout)),
        )


class ChunkBuffer:
    """Coalesces incremental chunks; delays delivery but never drops text."""

    def __init__(self, size: int = 5, flush_interval: float = 0.05, *, clock: Clock = time.monotonic) -> None:
        self._size = max(1, size)
        self._interval = max(0.0, flush_interval)
        self._clock = clock
        self._chunks: List[str] = []
        self._oldest: float | None = None

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def pending(self) -> str:
        return "".join(self._chunks)

    def push(self, chunk: str) -> bool:
        """Buffer *chunk*; returns ``True`` when the buffer should be flushed now."""

        if not chunk:
            return False
        if not self._chunks:
            self._oldest = self._clock()
        self._chunks.append(chunk)
        return len(self._chunks) >= self._size or self.due()

    def due(self, now: float | None = None) -> bool:
        remaining = self.time_until_due(now)
        return remaining is not None and remaining <= 0

    def time_until_due(self, now: float | None = None) -> float | None:
        if not self._chunks or self._oldest is None:
            return None
        current = self._clock() if now is None else now
        return self._interval - (current - self._oldest)

    def flush(self) -> str:
        text = "".join(self._chunks)
        self._chunks.clear()
        self._oldest = None
        return text


class ConnectionMonitor:
    """Tracks time since the request opened and since the last chunk."""

    def __init__(self, connection_timeout: float = 30.0, chunk_timeout: float = 60.0, *, clock: Clock = time.monotonic) -> None:
        self.connection_timeout = connection_timeout
        self.chunk_timeout = chunk_timeout
        self._clock = clock
        self._started: float | None = None
        self._last_chunk: float | None = None

    def start(self) -> None:
        self._started = self._clock()
        self._last_chunk = None

    def record_chunk(self) -> None:
        self._last_chunk = self._clock()

    def remaining(self, status: StreamStatus, now: float | None = None) -> float:
        current = self._clock() if now is None else now
        if status is StreamStatus.PENDING:
            started = self._started if self._started is not None else current
            return self.connection_timeout - (current - started)
        if status is StreamStatus.STREAMING:
            last = self._last_chunk if self._last_chunk is not None else current
            return self.chunk_timeout - (current - last)
        return math.inf

    def is_stalled(self, status: StreamStatus, now: float | None = None) -> bool:
        return self.remaining(status, now) <= 0


@dataclass(slots=True)
class StreamSession:
    id: str
    chat_session_id: str
    message_id: str
    project_id: str = ""
    status: StreamStatus = StreamStatus.PENDING
    content: str = ""
    chunk_count: int = 0
    usage: Usage = field(default_factory=Usage)
    stop_reason: str | None = None
    error: str | None = None
    error_kind: str | None = None
    started_at: float = field(default_factory=time.time)
    first_chunk_at: float | None = None
    last_chunk_at: float | None = None
    ended_at: float | None = None

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


@dataclass(slots=True)
class StreamUpdate:
    session_id: str
    delta: str
    content: str
    status: StreamStatus
    done: bool = False
    error: str | None = None
    usage: Usage | None = None


@dataclass(slots=True)
class StreamStats:
    duration: float
    chunk_count: int
    average_chunk_interval: float
    characters_per_second: float


_END = object()
_ABORTED = object()


class StreamSessionManager:
    """Process-wide registry of stream sessions, at most one active per chat session."""

    def __init__(
        self,
        options: StreamOptions | None = None,
        *,
        partial_store: PartialResponseStore | None = None,
        clock: Clock = time.monotonic,
        wall_clock: Clock = time.time,
    ) -> None:
        self._options = options or StreamOptions()
        self._partials = partial_store
        self._clock = clock
        self._wall_clock = wall_clock
        self._sessions: Dict[str, StreamSession] = {}
        self._pumps: Dict[str, tuple[asyncio.Task[None], asyncio.Queue[Any]]] = {}

    @property
    def options(self) -> StreamOptions:
        return self._options

    def create_stream_session(self, chat_session_id: str, message_id: str, *, project_id: str = "") -> StreamSession:
        active = self.active_for(chat_session_id)
        if active is not None:
            raise SessionBusyError(chat_session_id)
        session = StreamSession(
            id=f"stream-{uuid.uuid4().hex[:12]}",
            chat_session_id=chat_session_id,
            message_id=message_id,
            project_id=project_id,
            started_at=self._wall_clock(),
        )
        self._sessions[session.id] = session
        LOGGER.debug("Created stream session %s for chat session %s", session.id, chat_session_id)
        return session

    def get(self, session_id: str) -> StreamSession | None:
        return self._sessions.get(session_id)

    def active_for(self, chat_session_id: str) -> StreamSession | None:
        for session in self._sessions.values():
            if session.chat_session_id == chat_session_id and session.is_active:
                return session
        return None

    def active_sessions(self) -> List[StreamSession]:
        return [session for session in self._sessions.values() if session.is_active]

    def abort_stream_session(self, session_id: str) -> str:
        """Cancel the session and close its transport; returns the text received so far.

        Aborting an unknown or already terminal session is a no-op.
        """

        session = self._sessions.get(session_id)
        if session is None:
            return ""
        if session.status.is_terminal:
            return session.content
        self._finish(session, StreamStatus.CANCELLED)
        pump = self._pumps.get(session_id)
        if pump is not None:
            task, queue = pump
            task.cancel()
            queue.put_nowait(_ABORTED)
        LOGGER.info("Aborted stream session %s (%d chars kept)", session_id, len(session.content))
        return session.content

    def abort_all_sessions(self) -> int:
        active = [session.id for session in self.active_sessions()]
        for session_id in active:
            self.abort_stream_session(session_id)
        return len(active)

    def release(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None and session.status.is_terminal:
            self._sessions.pop(session_id, None)

    async def stream(self, session: StreamSession, source: AsyncIterator[StreamDelta]) -> AsyncIterator[StreamUpdate]:
        """Drive *session* from *source*, yielding throttled UI updates.

        The last update always has ``done=True`` and carries the terminal status.
        Closing this iterator early cancels the session.
        """

        options = self._options
        buffer = ChunkBuffer(options.chunk_buffer_size, options.flush_interval, clock=self._clock)
        monitor = ConnectionMonitor(options.connection_timeout, options.chunk_timeout, clock=self._clock)
        queue: asyncio.Queue[Any] = asyncio.Queue()
        delivered = ""

        if session.status.is_terminal:
            await _close_source(source)
            yield self._final_update(session, "")
            return

        pump = asyncio.create_task(_pump(source, queue))
        self._pumps[session.id] = (pump, queue)
        monitor.start()
        try:
            while not session.status.is_terminal:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=self._next_wait(session, buffer, monitor))
                except asyncio.TimeoutError:
                    if monitor.is_stalled(session.status):
                        self._stall(session, monitor)
                        break
                    if buffer.due():
                        delta = buffer.flush()
                        delivered += delta
                        yield StreamUpdate(session.id, delta, delivered, session.status)
                    continue

                if item is _ABORTED:
                    break
                if item is _END:
                    self._finish(session, StreamStatus.COMPLETED)
                    break
                if isinstance(item, BaseException):
                    self._fail(session, item)
                    break

                if item.type == "text" and item.text:
                    self._receive(session, item.text)
                    monitor.record_chunk()
                    if buffer.push(item.text):
                        delta = buffer.flush()
                        delivered += delta
                        yield StreamUpdate(session.id, delta, delivered, session.status)
                elif item.type == "usage":
                    session.usage = session.usage.merge(item.usage)
                elif item.type == "done":
                    session.usage = session.usage.merge(item.usage)
                    session.stop_reason = item.stop_reason or session.stop_reason
                    self._finish(session, StreamStatus.COMPLETED)

            yield self._final_update(session, buffer.flush())
        finally:
            if not session.status.is_terminal:
                self._finish(session, StreamStatus.CANCELLED)
            if not pump.done():
                pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            self._pumps.pop(session.id, None)
            await self._persist(session)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _next_wait(self, session: StreamSession, buffer: ChunkBuffer, monitor: ConnectionMonitor) -> float:
        wait = monitor.remaining(session.status)
        flush_in = buffer.time_until_due()
        if flush_in is not None:
            wait = min(wait, flush_in)
        return max(0.0, wait)

    def _receive(self, session: StreamSession, text: str) -> None:
        now = self._wall_clock()
        if session.status is StreamStatus.PENDING:
            session.status = StreamStatus.STREAMING
            session.first_chunk_at = now
        session.content += text
        session.chunk_count += 1
        session.last_chunk_at = now

    def _finish(self, session: StreamSession, status: StreamStatus) -> None:
        session.status = status
        session.ended_at = self._wall_clock()

    def _fail(self, session: StreamSession, exc: BaseException) -> None:
        session.error = str(exc) or type(exc).__name__
        session.error_kind = getattr(exc, "kind", "malformed")
        phase = "before the first chunk" if session.status is StreamStatus.PENDING else "mid-stream"
        LOGGER.warning("Stream session %s failed %s: %s", session.id, phase, session.error)
        self._finish(session, StreamStatus.ERROR)

    def _stall(self, session: StreamSession, monitor: ConnectionMonitor) -> None:
        if session.status is StreamStatus.PENDING:
            session.error = f"No response within {monitor.connection_timeout:g}s"
        else:
            session.error = f"No data received for {monitor.chunk_timeout:g}s"
        session.error_kind = "stalled"
        LOGGER.warning("Stream session %s stalled: %s", session.id, session.error)
        self._finish(session, StreamStatus.ERROR)

    def _final_update(self, session: StreamSession, delta: str) -> StreamUpdate:
        return StreamUpdate(
            session_id=session.id,
            delta=delta,
            content=session.content,
            status=session.status,
            done=True,
            error=session.error,
            usage=session.usage,
        )

    async def _persist(self, session: StreamSession) -> None:
        if self._partials is None:
            return
        try:
            if session.status is StreamStatus.COMPLETED:
                await asyncio.to_thread(self._partials.clear, session.message_id)
            elif session.status in (StreamStatus.CANCELLED, StreamStatus.ERROR):
                snapshot = PartialResponse(
                    message_id=session.message_id,
                    chat_session_id=session.chat_session_id,
                    project_id=session.project_id,
                    content=session.content,
                    status=session.status.value,
                    saved_at=self._wall_clock(),
                    error_message=session.error,
                )
                await asyncio.to_thread(self._partials.save, snapshot)
        except OSError:
            LOGGER.exception("Unable to persist partial response for %s", session.message_id)


async def _pump(source: AsyncIterator[StreamDelta], queue: asyncio.Queue[Any]) -> None:
    try:
        async for delta in source:
            queue.put_nowait(delta)
        queue.put_nowait(_END)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        queue.put_nowait(exc)
    finally:
        await _close_source(source)


async def _close_source(source: AsyncIterator[StreamDelta]) -> None:
    close = getattr(source, "aclose", None)
    if close is None:
        return
    try:
        await close()
    except RuntimeError as exc:
        LOGGER.debug("Stream source close failed: %s", exc)


def calculate_stream_stats(session: StreamSession, now: float | None = None) -> StreamStats:
    end = session.ended_at if session.ended_at is not None else (now if now is not None else time.time())
    duration = max(0.0, end - session.started_at)
    interval = duration / (session.chunk_count - 1) if session.chunk_count > 1 else 0.0
    rate = len(session.content) / duration if duration > 0 else 0.0
    return StreamStats(
        duration=duration,
        chunk_count=session.chunk_count,
        average_chunk_interval=interval,
        characters_per_second=rate,
    )


def create_partial_message(
    content: str,
    message_id: str,
    *,
    cancelled: bool = False,
    error_message: str | None = None,
    model: str | None = None,
) -> ChatMessage:
    """Assistant message holding interrupted text, marked so it can be retried."""

    if cancelled:
        error = MessageError(code="STREAM_CANCELLED", message=error_message or "Generation was cancelled")
        status = MessageStatus.CANCELLED
    else:
        error = MessageError(code="STREAM_ABORTED", message=error_message or "The response stream was interrupted")
        status = MessageStatus.ERROR
    return ChatMessage(
        id=message_id,
        role="assistant",
        content=content,
        status=status,
        model=model,
        error=error,
    )
