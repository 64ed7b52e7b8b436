"""Per-turn usage and cost ledger."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime
from threading import Lock
from typing import Iterable, Protocol

from ..ai.ai_types import Usage
from ..ai.catalog import estimate_cost

__all__ = [
    "UsageEvent",
    "UsageSink",
    "InMemoryUsageSink",
    "UsageTotals",
    "UsageLedger",
    "summarize_usage",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class UsageEvent:
    """Token usage and priced cost of one finished turn."""

    project_id: str
    chat_session_id: str
    message_id: str
    model: str
    mode: str
    status: str
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    cache_creation_tokens: int
    cost: float | None
    timestamp: float

    @property
    def day(self) -> date:
        return datetime.fromtimestamp(self.timestamp).date()


class UsageSink(Protocol):
    def record(self, event: UsageEvent) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryUsageSink:
    """Ring buffer of recent usage events."""

    def __init__(self, capacity: int = 500) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[UsageEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: UsageEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[UsageEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


@dataclass(slots=True)
class UsageTotals:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    unpriced_events: int = 0
    event_count: int = 0

    def as_status_text(self) -> str:
        parts = [f"In {self.input_tokens:,}", f"Out {self.output_tokens:,}", f"${self.cost:.4f}"]
        if self.unpriced_events:
            parts.append(f"{self.unpriced_events} unpriced")
        return " · ".join(parts)


def summarize_usage(events: Iterable[UsageEvent]) -> UsageTotals:
    totals = UsageTotals()
    for event in events:
        totals.event_count += 1
        totals.input_tokens += max(0, event.input_tokens)
        totals.output_tokens += max(0, event.output_tokens)
        if event.cost is None:
            totals.unpriced_events += 1
        else:
            totals.cost += event.cost
    totals.cost = round(totals.cost, 6)
    return totals


class UsageLedger:
    """Prices each turn through the model catalog and forwards it to a sink."""

    def __init__(self, sink: InMemoryUsageSink | None = None) -> None:
        self._sink = sink if sink is not None else InMemoryUsageSink()

    @property
    def sink(self) -> InMemoryUsageSink:
        return self._sink

    def record(
        self,
        *,
        project_id: str,
        chat_session_id: str,
        message_id: str,
        model: str,
        usage: Usage | None,
        mode: str = "chat",
        status: str = "complete",
        timestamp: float | None = None,
    ) -> UsageEvent:
        usage = usage or Usage()
        estimate = estimate_cost(usage, model)
        event = UsageEvent(
            project_id=project_id,
            chat_session_id=chat_session_id,
            message_id=message_id,
            model=model,
            mode=mode,
            status=status,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            cache_creation_tokens=usage.cache_creation_tokens,
            cost=estimate.amount if estimate.known else None,
            timestamp=time.time() if timestamp is None else timestamp,
        )
        self._sink.record(event)
        LOGGER.debug(
            "Usage %s/%s: in=%d out=%d cost=%s",
            project_id,
            model,
            event.input_tokens,
            event.output_tokens,
            estimate.format(),
        )
        return event

    def events(self, *, project_id: str | None = None) -> list[UsageEvent]:
        events = self._sink.tail()
        if project_id is None:
            return events
        return [event for event in events if event.project_id == project_id]

    def daily_totals(self, day: date | None = None) -> UsageTotals:
        target = day or date.today()
        return summarize_usage(event for event in self._sink.tail() if event.day == target)

    def project_totals(self, project_id: str) -> UsageTotals:
        return summarize_usage(self.events(project_id=project_id))
