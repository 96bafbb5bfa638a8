"""Focus tracking — mirror session state into a host-side context store.

The tracker derives UI-facing flags (focus, active session, session count,
selection, interactive process) and pushes every change to a
:class:`ContextSink`. It is never a source of truth: the registry owns
session state, the tracker only reflects it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from shellmux.config import MAX_SESSIONS
from shellmux.session.wire import EventType, Wire, WireEvent

logger = logging.getLogger(__name__)


class ContextKey(str, enum.Enum):
    TERMINAL_FOCUS = "shellmux.terminalFocus"
    TERMINAL_COUNT = "shellmux.terminalCount"
    ACTIVE_TERMINAL_ID = "shellmux.activeTerminalId"
    CAN_SPLIT_TERMINAL = "shellmux.canSplitTerminal"
    HAS_ACTIVE_TERMINAL = "shellmux.hasActiveTerminal"
    TERMINAL_WEBVIEW_FOCUS = "shellmux.terminalWebviewFocus"
    TERMINAL_SIDEBAR_FOCUS = "shellmux.terminalSidebarFocus"
    TERMINAL_TEXT_SELECTED = "shellmux.terminalTextSelected"
    IS_INTERACTIVE_CLI = "shellmux.isInteractiveCLI"


class ContextSink(Protocol):
    """Where derived flags go. The core does not care how they are stored."""

    def publish(self, key: str, value: Any) -> None: ...


class ContextStore:
    """In-memory context sink: latest value per key plus the publish history."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.history: list[tuple[str, Any]] = []

    def publish(self, key: str, value: Any) -> None:
        key = key.value if isinstance(key, ContextKey) else key
        self.values[key] = value
        self.history.append((key, value))

    def get(self, key: str | ContextKey, default: Any = None) -> Any:
        if isinstance(key, ContextKey):
            key = key.value
        return self.values.get(key, default)


@dataclass(frozen=True)
class FocusState:
    focused: bool = False
    active_id: str | None = None
    session_count: int = 0
    text_selected: bool = False
    interactive_process: bool = False
    sidebar_focused: bool = False

    @property
    def has_active_session(self) -> bool:
        return self.session_count > 0 and self.active_id is not None

    @property
    def can_split(self) -> bool:
        return 0 < self.session_count < MAX_SESSIONS


class FocusTracker:
    """Small state machine over focus/selection flags.

    ``focus()`` and ``blur()`` only emit FOCUS_CHANGED on an actual edge;
    every field update is pushed to the sink immediately.
    """

    def __init__(self, sink: ContextSink | None = None) -> None:
        self._sink: ContextSink = sink if sink is not None else ContextStore()
        self._wire = Wire()
        self._focused = False
        self._active_id: str | None = None
        self._session_count = 0
        self._text_selected = False
        self._interactive_process = False
        self._sidebar_focused = False
        self._disposed = False
        self._publish_all()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def focus(self, session_id: str | None = None) -> None:
        if self._disposed:
            return
        was_focused = self._focused
        self._focused = True
        if session_id is not None:
            self._active_id = session_id
            self._publish(ContextKey.ACTIVE_TERMINAL_ID, session_id)
            self._publish_derived()
        self._publish(ContextKey.TERMINAL_FOCUS, True)
        self._publish(ContextKey.TERMINAL_WEBVIEW_FOCUS, True)
        if not was_focused:
            self._wire.send_focus(True)

    def blur(self) -> None:
        if self._disposed:
            return
        was_focused = self._focused
        self._focused = False
        self._publish(ContextKey.TERMINAL_FOCUS, False)
        self._publish(ContextKey.TERMINAL_WEBVIEW_FOCUS, False)
        if was_focused:
            self._wire.send_focus(False)

    def set_active(self, session_id: str | None) -> None:
        if self._disposed:
            return
        self._active_id = session_id
        self._publish(ContextKey.ACTIVE_TERMINAL_ID, session_id)
        self._publish_derived()

    def set_session_count(self, count: int) -> None:
        if self._disposed:
            return
        self._session_count = count
        self._publish(ContextKey.TERMINAL_COUNT, count)
        self._publish_derived()

    def set_text_selected(self, selected: bool) -> None:
        if self._disposed:
            return
        self._text_selected = selected
        self._publish(ContextKey.TERMINAL_TEXT_SELECTED, selected)

    def set_interactive_process(self, interactive: bool) -> None:
        if self._disposed:
            return
        self._interactive_process = interactive
        self._publish(ContextKey.IS_INTERACTIVE_CLI, interactive)

    def set_sidebar_focus(self, focused: bool) -> None:
        if self._disposed:
            return
        self._sidebar_focused = focused
        self._publish(ContextKey.TERMINAL_SIDEBAR_FOCUS, focused)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> FocusState:
        return FocusState(
            focused=self._focused,
            active_id=self._active_id,
            session_count=self._session_count,
            text_selected=self._text_selected,
            interactive_process=self._interactive_process,
            sidebar_focused=self._sidebar_focused,
        )

    @property
    def is_focused(self) -> bool:
        return self._focused

    @property
    def active_id(self) -> str | None:
        return self._active_id

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Queue of FOCUS_CHANGED events; ``None`` once the tracker is disposed."""
        return self._wire.subscribe(EventType.FOCUS_CHANGED)

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._wire.unsubscribe(q)

    def dispose(self) -> None:
        """Reset every flag, push the reset, and close the focus channel."""
        if self._disposed:
            return
        self._focused = False
        self._active_id = None
        self._session_count = 0
        self._text_selected = False
        self._interactive_process = False
        self._sidebar_focused = False
        self._publish_all()
        self._disposed = True
        self._wire.close()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _publish_derived(self) -> None:
        state = self.state
        self._publish(ContextKey.HAS_ACTIVE_TERMINAL, state.has_active_session)
        self._publish(ContextKey.CAN_SPLIT_TERMINAL, state.can_split)

    def _publish_all(self) -> None:
        self._publish(ContextKey.TERMINAL_FOCUS, self._focused)
        self._publish(ContextKey.TERMINAL_WEBVIEW_FOCUS, self._focused)
        self._publish(ContextKey.TERMINAL_COUNT, self._session_count)
        self._publish(ContextKey.ACTIVE_TERMINAL_ID, self._active_id)
        self._publish(ContextKey.TERMINAL_SIDEBAR_FOCUS, self._sidebar_focused)
        self._publish(ContextKey.TERMINAL_TEXT_SELECTED, self._text_selected)
        self._publish(ContextKey.IS_INTERACTIVE_CLI, self._interactive_process)
        self._publish_derived()

    def _publish(self, key: ContextKey, value: Any) -> None:
        try:
            self._sink.publish(key.value, value)
        except Exception:
            logger.exception("Context sink rejected %s=%r", key.value, value)
