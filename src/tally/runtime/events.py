# src/tally/runtime/events.py
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List

from tally.runtime.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("tally.events")

Subscriber = Callable[["Event"], None]


@dataclass(frozen=True, slots=True)
class Event:
    name: str
    fields: Json = field(default_factory=dict)

    def to_json(self) -> Json:
        return {"event": self.name, **self.fields}


class EventBus:
    """Synchronous in-process event bus.

    Subscribers run inline, inside the emitter's atomic scope: a subscriber that
    raises aborts the mutation that emitted the event.
    """

    def __init__(self, *, history: int = 1_000) -> None:
        self._subscribers: List[Subscriber] = []
        self._recent: Deque[Event] = deque(maxlen=max(1, int(history)))

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        self._subscribers.append(fn)

        def _unsubscribe() -> None:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return _unsubscribe

    def emit(self, name: str, **fields: Any) -> Event:
        ev = Event(name=name, fields=dict(fields))
        for fn in list(self._subscribers):
            fn(ev)
        self._recent.append(ev)
        log_event(log, name, level=logging.DEBUG, **fields)
        return ev

    def recent(self, name: str | None = None) -> List[Event]:
        if name is None:
            return list(self._recent)
        return [e for e in self._recent if e.name == name]

    def discard(self, ev: Event) -> None:
        """Drop an event from history (used when the emitting mutation is rolled back)."""
        for i in range(len(self._recent) - 1, -1, -1):
            if self._recent[i] is ev:
                del self._recent[i]
                return
