"""Wire protocol — decouples session lifecycle from whoever displays it.

Events flow from the registry (and the focus tracker) to subscribers.
A renderer subscribes to the wire and consumes output/closed events; the
core never knows how they are displayed.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    OUTPUT = "output"
    CLOSED = "closed"
    FOCUS_CHANGED = "focus_changed"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def session_id(self) -> str | None:
        return self.data.get("session_id")


class Wire:
    """Async message bus: producer -> subscribers.

    Single-producer, multi-consumer broadcast. Each subscriber gets its own
    queue, so events reach a subscriber in the order they were sent.
    """

    def __init__(self) -> None:
        self._subscribers: dict[asyncio.Queue[WireEvent | None], frozenset[EventType]] = {}
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers interested in its type.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q, types in self._subscribers.items():
            if not types or event.type in types:
                q.put_nowait(event)

    def send_output(self, session_id: str, data: str) -> None:
        self.send(
            WireEvent(type=EventType.OUTPUT, data={"session_id": session_id, "data": data})
        )

    def send_closed(
        self,
        session_id: str,
        exit_code: int | None = None,
        signal: int | None = None,
    ) -> None:
        self.send(
            WireEvent(
                type=EventType.CLOSED,
                data={"session_id": session_id, "exit_code": exit_code, "signal": signal},
            )
        )

    def send_focus(self, focused: bool) -> None:
        self.send(WireEvent(type=EventType.FOCUS_CHANGED, data={"focused": focused}))

    def subscribe(self, *types: EventType) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from.

        With no arguments the queue receives every event type; otherwise only
        the listed ones. A ``None`` item means the wire was closed.
        """
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        if self._closed:
            q.put_nowait(None)
            return q
        self._subscribers[q] = frozenset(types)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        self._subscribers.pop(q, None)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
        self._subscribers.clear()
