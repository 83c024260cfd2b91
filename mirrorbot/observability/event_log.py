"""Append-only engine event stream.

This is the interface handed to whatever renders the bot: each entry is
a typed event the presentation layer can show without interpretation.
Entries are mirrored to structlog as they are appended.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from mirrorbot.models import Outcome, Side
from mirrorbot.observability.logger import get_logger

log = get_logger(__name__)


class EventKind(str, Enum):
    INFO = "INFO"
    PENDING = "PENDING"
    FRONTRUN = "FRONTRUN"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    RETRY = "RETRY"


@dataclass(frozen=True)
class EngineEvent:
    kind: EventKind
    message: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)
    tx_hash: str | None = None
    amount: float | None = None
    outcome: Outcome | None = None
    token_id: str | None = None
    side: Side | None = None


Subscriber = Callable[[EngineEvent], None]


class EventLog:
    """Ordered, append-only list of engine events."""

    def __init__(self, max_events: int | None = None):
        self._events: list[EngineEvent] = []
        self._max_events = max_events
        self._subscribers: list[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> None:
        self._subscribers.append(fn)

    def append(self, kind: EventKind, message: str, **extra) -> EngineEvent:
        event = EngineEvent(kind=kind, message=message, **extra)
        self.add(event)
        return event

    def add(self, event: EngineEvent) -> None:
        self._events.append(event)
        if self._max_events and len(self._events) > self._max_events:
            self._events = self._events[-self._max_events:]

        level = "error" if event.kind is EventKind.ERROR else "info"
        getattr(log, level)(
            "engine.event",
            kind=event.kind.value,
            message=event.message,
            tx_hash=event.tx_hash,
        )
        for fn in self._subscribers:
            fn(event)

    def clear(self) -> None:
        self._events.clear()

    @property
    def events(self) -> list[EngineEvent]:
        return list(self._events)

    def of_kind(self, kind: EventKind) -> list[EngineEvent]:
        return [e for e in self._events if e.kind is kind]

    def __len__(self) -> int:
        return len(self._events)
