"""Tests for shellmux.focus (FocusTracker, ContextStore)."""

from __future__ import annotations

from shellmux.focus import ContextKey, ContextStore, FocusState, FocusTracker
from shellmux.session.wire import EventType


def _drain(q) -> list:
    events = []
    while not q.empty():
        events.append(q.get_nowait())
    return events


# ---------------------------------------------------------------------------
# FocusState
# ---------------------------------------------------------------------------


class TestFocusState:
    def test_defaults(self) -> None:
        state = FocusState()
        assert state.focused is False
        assert state.has_active_session is False
        assert state.can_split is False

    def test_can_split_bounds(self) -> None:
        assert FocusState(session_count=1).can_split is True
        assert FocusState(session_count=4).can_split is True
        assert FocusState(session_count=5).can_split is False

    def test_active_needs_sessions(self) -> None:
        assert FocusState(active_id="t", session_count=0).has_active_session is False
        assert FocusState(active_id="t", session_count=1).has_active_session is True


# ---------------------------------------------------------------------------
# Initial publish
# ---------------------------------------------------------------------------


class TestInitialState:
    def test_every_key_published(self, store: ContextStore, tracker: FocusTracker) -> None:
        assert {k.value for k in ContextKey} <= set(store.values)
        assert store.get(ContextKey.TERMINAL_FOCUS) is False
        assert store.get(ContextKey.TERMINAL_COUNT) == 0
        assert store.get(ContextKey.ACTIVE_TERMINAL_ID) is None

    def test_default_sink(self) -> None:
        tracker = FocusTracker()
        tracker.focus("t1")
        assert tracker.is_focused


# ---------------------------------------------------------------------------
# focus / blur
# ---------------------------------------------------------------------------


class TestFocusBlur:
    def test_focus_emits_on_edge_only(self, tracker: FocusTracker) -> None:
        q = tracker.subscribe()
        tracker.focus()
        tracker.focus()
        tracker.blur()
        tracker.blur()
        events = _drain(q)
        assert [e.type for e in events] == [EventType.FOCUS_CHANGED] * 2
        assert [e.data["focused"] for e in events] == [True, False]

    def test_refocus_on_another_session(self, tracker: FocusTracker) -> None:
        q = tracker.subscribe()
        tracker.set_session_count(2)
        tracker.focus("terminal-1-aaa")
        tracker.focus("terminal-2-bbb")
        events = _drain(q)
        assert len(events) == 1
        assert events[0].data["focused"] is True
        assert tracker.active_id == "terminal-2-bbb"

    def test_focus_with_id_sets_active(
        self, store: ContextStore, tracker: FocusTracker
    ) -> None:
        tracker.set_session_count(1)
        tracker.focus("terminal-1-abc")
        assert tracker.active_id == "terminal-1-abc"
        assert store.get(ContextKey.ACTIVE_TERMINAL_ID) == "terminal-1-abc"
        assert store.get(ContextKey.HAS_ACTIVE_TERMINAL) is True
        assert store.get(ContextKey.TERMINAL_WEBVIEW_FOCUS) is True

    def test_blur_clears_focus_keys(self, store: ContextStore, tracker: FocusTracker) -> None:
        tracker.focus()
        tracker.blur()
        assert store.get(ContextKey.TERMINAL_FOCUS) is False
        assert store.get(ContextKey.TERMINAL_WEBVIEW_FOCUS) is False


# ---------------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------------


class TestDerived:
    def test_count_drives_can_split(self, store: ContextStore, tracker: FocusTracker) -> None:
        tracker.set_session_count(3)
        assert store.get(ContextKey.CAN_SPLIT_TERMINAL) is True
        tracker.set_session_count(5)
        assert store.get(ContextKey.CAN_SPLIT_TERMINAL) is False
        assert store.get(ContextKey.TERMINAL_COUNT) == 5

    def test_clearing_active(self, store: ContextStore, tracker: FocusTracker) -> None:
        tracker.set_session_count(1)
        tracker.set_active("t1")
        assert store.get(ContextKey.HAS_ACTIVE_TERMINAL) is True
        tracker.set_active(None)
        assert store.get(ContextKey.HAS_ACTIVE_TERMINAL) is False

    def test_flags(self, store: ContextStore, tracker: FocusTracker) -> None:
        tracker.set_text_selected(True)
        tracker.set_interactive_process(True)
        tracker.set_sidebar_focus(True)
        assert store.get(ContextKey.TERMINAL_TEXT_SELECTED) is True
        assert store.get(ContextKey.IS_INTERACTIVE_CLI) is True
        assert store.get(ContextKey.TERMINAL_SIDEBAR_FOCUS) is True
        state = tracker.state
        assert state.text_selected and state.interactive_process and state.sidebar_focused


# ---------------------------------------------------------------------------
# Sink failures and dispose
# ---------------------------------------------------------------------------


class BrokenSink:
    def __init__(self) -> None:
        self.calls = 0

    def publish(self, key: str, value: object) -> None:
        self.calls += 1
        raise RuntimeError("sink down")


class TestDispose:
    def test_sink_errors_are_contained(self) -> None:
        sink = BrokenSink()
        tracker = FocusTracker(sink)
        tracker.focus("t1")
        assert tracker.is_focused
        assert sink.calls > 0

    def test_dispose_resets_and_closes(
        self, store: ContextStore, tracker: FocusTracker
    ) -> None:
        q = tracker.subscribe()
        tracker.set_session_count(2)
        tracker.focus("t1")
        tracker.dispose()
        assert store.get(ContextKey.TERMINAL_FOCUS) is False
        assert store.get(ContextKey.TERMINAL_COUNT) == 0
        assert store.get(ContextKey.ACTIVE_TERMINAL_ID) is None
        assert _drain(q)[-1] is None

    def test_noop_after_dispose(self, store: ContextStore, tracker: FocusTracker) -> None:
        tracker.dispose()
        published = len(store.history)
        tracker.focus("t1")
        tracker.set_session_count(3)
        tracker.dispose()
        assert len(store.history) == published
        assert tracker.is_focused is False
