"""Tests for shellmux.session.wire (Wire, WireEvent, EventType)."""

from __future__ import annotations

import asyncio

from shellmux.session.wire import EventType, Wire, WireEvent


# ---------------------------------------------------------------------------
# EventType
# ---------------------------------------------------------------------------


class TestEventType:
    def test_all_variants_exist(self) -> None:
        assert {e.name for e in EventType} == {"OUTPUT", "CLOSED", "FOCUS_CHANGED"}

    def test_values_are_lowercase(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower()


# ---------------------------------------------------------------------------
# WireEvent
# ---------------------------------------------------------------------------


class TestWireEvent:
    def test_defaults(self) -> None:
        event = WireEvent(type=EventType.OUTPUT)
        assert event.data == {}
        assert event.session_id is None

    def test_session_id(self) -> None:
        event = WireEvent(type=EventType.CLOSED, data={"session_id": "terminal-1-a"})
        assert event.session_id == "terminal-1-a"


# ---------------------------------------------------------------------------
# Wire: basic send/subscribe
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_subscriber(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_output("t1", "hi")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.OUTPUT
        assert event.data == {"session_id": "t1", "data": "hi"}

    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send_closed("t1", exit_code=0)
        assert q1.get_nowait().data["exit_code"] == 0
        assert q2.get_nowait().data["exit_code"] == 0

    def test_type_filter(self) -> None:
        wire = Wire()
        closed_only = wire.subscribe(EventType.CLOSED)
        wire.send_output("t1", "x")
        wire.send_closed("t1", signal=9)
        event = closed_only.get_nowait()
        assert event.type == EventType.CLOSED
        assert event.data["signal"] == 9
        assert closed_only.empty()

    def test_order_preserved(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        for i in range(5):
            wire.send_output("t1", str(i))
        wire.send_closed("t1")
        types = [q.get_nowait().type for _ in range(6)]
        assert types == [EventType.OUTPUT] * 5 + [EventType.CLOSED]

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send_focus(True)
        assert q.empty()

    def test_unsubscribe_unknown_is_noop(self) -> None:
        Wire().unsubscribe(asyncio.Queue())


# ---------------------------------------------------------------------------
# Wire: close
# ---------------------------------------------------------------------------


class TestWireClose:
    def test_close_sends_none(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        assert q.get_nowait() is None
        assert wire.closed

    def test_close_is_idempotent(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        wire.close()
        assert q.get_nowait() is None
        assert q.empty()

    def test_send_after_close_dropped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        q.get_nowait()
        wire.send_output("t1", "late")
        assert q.empty()

    def test_subscribe_after_close(self) -> None:
        wire = Wire()
        wire.close()
        assert wire.subscribe().get_nowait() is None

    async def test_consumer_loop_terminates(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        received: list[WireEvent] = []

        async def consume() -> None:
            while True:
                event = await q.get()
                if event is None:
                    break
                received.append(event)

        task = asyncio.create_task(consume())
        wire.send_output("t1", "a")
        wire.send_output("t1", "b")
        wire.close()
        await asyncio.wait_for(task, timeout=1.0)
        assert [e.data["data"] for e in received] == ["a", "b"]
