"""Unit tests for :mod:`storyforge.chat.events`."""

from __future__ import annotations

import gc
import logging
from dataclasses import dataclass

import pytest

from storyforge.chat.events import (
    Event,
    EventBus,
    NoticePosted,
    TurnCompleted,
    TurnStarted,
    TurnStreamChunk,
)


@dataclass(slots=True)
class SampleEvent(Event):
    """A sample event for testing."""

    message: str
    value: int = 0


class Listener:
    """View-model stand-in subscribing a bound method."""

    def __init__(self) -> None:
        self.received: list[Event] = []

    def on_event(self, event: Event) -> None:
        self.received.append(event)


class TestEventTypes:
    """Tests for the chat event payloads."""

    def test_events_use_slots(self) -> None:
        """Chat events are slotted dataclasses."""
        event = TurnStarted(chat_session_id="chat-1", message_id="m1", prompt="Hi")
        assert hasattr(event, "__slots__")
        assert event.mode == "chat"

    def test_completed_defaults(self) -> None:
        """Cost defaults to ``unknown`` rather than zero."""
        event = TurnCompleted(chat_session_id="chat-1", message_id="m1", content="Done")
        assert event.cost == "unknown"
        assert event.usage is None


class TestEventBusSubscription:
    """Tests for subscribe and unsubscribe."""

    def test_subscribe_same_handler_twice(self) -> None:
        """Subscribing the same handler twice delivers the event twice."""
        bus: EventBus[Event] = EventBus()
        received: list[Event] = []

        def handler(event: Event) -> None:
            received.append(event)

        bus.subscribe(SampleEvent, handler)
        bus.subscribe(SampleEvent, handler)
        bus.publish(SampleEvent(message="x"))

        assert len(received) == 2
        assert bus.handler_count(SampleEvent) == 2

    def test_unsubscribe_removes_first_registration(self) -> None:
        """unsubscribe removes one registration and ignores unknown handlers."""
        bus: EventBus[Event] = EventBus()

        def handler(event: Event) -> None:
            pass

        bus.subscribe(SampleEvent, handler)
        bus.unsubscribe(NoticePosted, handler)
        bus.unsubscribe(SampleEvent, lambda event: None)
        assert bus.handler_count(SampleEvent) == 1

        bus.unsubscribe(SampleEvent, handler)
        assert bus.handler_count(SampleEvent) == 0

    def test_clear(self) -> None:
        """clear drops every handler."""
        bus: EventBus[Event] = EventBus()
        bus.subscribe(SampleEvent, lambda event: None)
        bus.subscribe(NoticePosted, lambda event: None)

        bus.clear()

        assert bus.handler_count() == 0


class TestEventBusPublish:
    """Tests for event delivery."""

    def test_dispatch_is_keyed_by_exact_type(self) -> None:
        """Handlers only receive events of the type they subscribed to."""
        bus: EventBus[Event] = EventBus()
        notices: list[Event] = []
        bus.subscribe(NoticePosted, notices.append)

        bus.publish(SampleEvent(message="ignored"))
        bus.publish(NoticePosted(level="info", message="saved"))

        assert notices == [NoticePosted(level="info", message="saved")]

    def test_handlers_run_in_subscription_order(self) -> None:
        """Handlers are invoked in the order they subscribed."""
        bus: EventBus[Event] = EventBus()
        order: list[str] = []
        bus.subscribe(SampleEvent, lambda event: order.append("first"))
        bus.subscribe(SampleEvent, lambda event: order.append("second"))

        bus.publish(SampleEvent(message="go"))

        assert order == ["first", "second"]

    def test_failing_handler_does_not_block_others(self, caplog: pytest.LogCaptureFixture) -> None:
        """A handler that raises is logged; later handlers still run."""
        bus: EventBus[Event] = EventBus()
        received: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("boom")

        bus.subscribe(SampleEvent, broken)
        bus.subscribe(SampleEvent, received.append)

        with caplog.at_level(logging.ERROR, logger="storyforge.chat.events"):
            bus.publish(SampleEvent(message="x"))

        assert len(received) == 1
        assert "Handler broken raised for SampleEvent" in caplog.text

    def test_publish_without_handlers_is_noop(self) -> None:
        """Publishing with no subscribers does nothing."""
        bus: EventBus[Event] = EventBus()
        bus.publish(TurnStreamChunk(chat_session_id="chat-1", message_id="m1", delta="a", content="a"))
        assert bus.handler_count() == 0


class TestWeakHandlers:
    """Bound-method handlers are held weakly."""

    def test_bound_method_dies_with_owner(self) -> None:
        """A discarded listener stops receiving events and is pruned."""
        bus: EventBus[Event] = EventBus()
        listener = Listener()
        bus.subscribe(SampleEvent, listener.on_event)

        bus.publish(SampleEvent(message="one"))
        assert len(listener.received) == 1

        del listener
        gc.collect()
        bus.publish(SampleEvent(message="two"))

        assert bus.handler_count(SampleEvent) == 0

    def test_live_bound_method_can_unsubscribe(self) -> None:
        """unsubscribe matches bound methods by equality."""
        bus: EventBus[Event] = EventBus()
        listener = Listener()
        bus.subscribe(SampleEvent, listener.on_event)

        bus.unsubscribe(SampleEvent, listener.on_event)
        bus.publish(SampleEvent(message="x"))

        assert listener.received == []
