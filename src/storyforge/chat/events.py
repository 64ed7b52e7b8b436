"""Typed events published by the chat service for UI subscribers.

The UI never polls the service; it subscribes to these events on an
:class:`EventBus` and re-renders from their payloads.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, DefaultDict, Generic, TypeVar
from weakref import WeakMethod

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for chat events; subclasses are ``@dataclass(slots=True)``."""


# =============================================================================
# Turn events
# =============================================================================


@dataclass(slots=True)
class TurnStarted(Event):
    """A user turn was accepted and the assistant reply is pending.

    Attributes:
        chat_session_id: Session the turn belongs to.
        message_id: Id of the assistant message that will hold the reply.
        prompt: The user's text.
        mode: ``"chat"`` or ``"agent"``.
    """

    chat_session_id: str
    message_id: str
    prompt: str
    mode: str = "chat"


@dataclass(slots=True)
class TurnStreamChunk(Event):
    """A throttled batch of streamed text.

    Attributes:
        delta: Text added since the previous chunk event.
        content: Everything delivered so far for this message.
    """

    chat_session_id: str
    message_id: str
    delta: str
    content: str


@dataclass(slots=True)
class TurnCompleted(Event):
    chat_session_id: str
    message_id: str
    content: str
    cost: str = "unknown"
    usage: Any = None


@dataclass(slots=True)
class TurnFailed(Event):
    """The turn ended in error; ``partial_content`` keeps whatever had arrived."""

    chat_session_id: str
    message_id: str | None
    error: str
    code: str = "UNKNOWN"
    partial_content: str = ""


@dataclass(slots=True)
class TurnCanceled(Event):
    chat_session_id: str
    message_id: str
    partial_content: str = ""


@dataclass(slots=True)
class UpdatesApplied(Event):
    """Structured updates from an agent reply were applied.

    Attributes:
        summary: Human readable count, e.g. ``"2 of 3 changes applied"``.
        results: One ``UpdateResult`` per parsed block, in source order.
    """

    chat_session_id: str
    message_id: str
    summary: str
    results: list[Any] = field(default_factory=list)


# =============================================================================
# Session and notice events
# =============================================================================


@dataclass(slots=True)
class PartialResponseAvailable(Event):
    """An interrupted reply from an earlier run can be recovered or discarded."""

    project_id: str
    chat_session_id: str
    message_id: str
    content: str


@dataclass(slots=True)
class CacheStateChanged(Event):
    project_id: str
    cache_info: dict[str, Any] | None


@dataclass(slots=True)
class NoticePosted(Event):
    """Toast-style notification (``level`` is ``info``, ``success``, ``warning`` or ``error``)."""

    level: str
    message: str


# Streaming chunks are too frequent to log on every publish.
_QUIET_EVENT_TYPES: set[type] = {TurnStreamChunk}


class EventBus(Generic[E]):
    """Synchronous publish/subscribe dispatcher keyed by exact event type.

    Bound-method handlers are held weakly so a discarded view model stops
    receiving events without unsubscribing; plain functions are held strongly.
    A handler that raises is logged and does not affect the other handlers.

    Not thread-safe: publish and subscribe from the event-loop thread only.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register *handler* for *event_type*.

        Subscribing the same handler twice delivers each event twice.
        """
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug("Subscribed %s to %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of *handler*; unknown handlers are ignored."""
        refs = self._handlers.get(event_type)
        if not refs:
            return
        for index, handler_ref in enumerate(refs):
            if handler_ref.matches(handler):
                del refs[index]
                logger.debug("Unsubscribed %s from %s", _handler_name(handler), event_type.__name__)
                return

    def publish(self, event: E) -> None:
        """Invoke every live handler for ``type(event)`` in subscription order."""
        event_type = type(event)
        refs = self._handlers.get(event_type)
        quiet = event_type in _QUIET_EVENT_TYPES
        if not refs:
            if not quiet:
                logger.debug("No handlers for %s", event_type.__name__)
            return
        if not quiet:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(refs))

        live: list[_HandlerRef] = []
        for handler_ref in list(refs):
            handler = handler_ref.resolve()
            if handler is None:
                continue
            live.append(handler_ref)
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %s raised for %s", _handler_name(handler), event_type.__name__)
        if len(live) != len(refs):
            refs[:] = [item for item in refs if item.resolve() is not None]

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(refs) for refs in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_target", "_weak")

    def __init__(self, target: Any, weak: bool) -> None:
        self._target = target
        self._weak = weak

    @classmethod
    def create(cls, handler: Handler) -> "_HandlerRef":
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), weak=True)
            except TypeError:
                logger.debug("Handler %s cannot be weakly referenced", _handler_name(handler))
        return cls(handler, weak=False)

    def resolve(self) -> Handler | None:
        return self._target() if self._weak else self._target

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    owner = getattr(handler, "__self__", None)
    func = getattr(handler, "__func__", None)
    if owner is not None and func is not None:
        return f"{type(owner).__name__}.{func.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "TurnStarted",
    "TurnStreamChunk",
    "TurnCompleted",
    "TurnFailed",
    "TurnCanceled",
    "UpdatesApplied",
    "PartialResponseAvailable",
    "CacheStateChanged",
    "NoticePosted",
]
