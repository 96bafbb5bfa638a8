"""Session registry: owns every live shell session."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid

from shellmux.config import MAX_SESSIONS, SessionConfig, ShellmuxConfig
from shellmux.focus import FocusTracker
from shellmux.pty.errors import CapacityExceeded, ShellmuxError
from shellmux.pty.provisioner import Provisioner
from shellmux.pty.session import Session
from shellmux.session.wire import EventType, Wire, WireEvent

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Manages the lifecycle of up to ``MAX_SESSIONS`` shell sessions.

    The registry ensures:
    - Sessions are tracked and can be addressed by id
    - The session cap is enforced (no queueing; callers retry after a close)
    - A session becomes visible only once its backend is attached; creates
      still in flight hold a slot but are never active
    - There is always an active session while any session is live
    - Output and closed events are republished on one wire, so a session's
      closed event never overtakes output already sent for it
    - Everything is terminated on dispose_all() (no orphan processes)

    All mutations happen on the event loop thread. Backend exit callbacks
    are folded in with ``call_soon_threadsafe`` rather than touching the map
    directly.
    """

    MAX_SESSIONS = MAX_SESSIONS

    def __init__(
        self,
        settings: ShellmuxConfig | None = None,
        *,
        provisioner: Provisioner | None = None,
        focus: FocusTracker | None = None,
    ) -> None:
        self._settings = settings if settings is not None else ShellmuxConfig()
        self._provisioner = (
            provisioner if provisioner is not None else Provisioner(self._settings)
        )
        self._focus = focus
        self._sessions: dict[str, Session] = {}
        # Sessions still waiting on their backend; they count against the cap
        # but are invisible to every accessor.
        self._pending: dict[str, Session] = {}
        self._active_id: str | None = None
        self._wire = Wire()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle commands
    # ------------------------------------------------------------------

    async def create(self, config: SessionConfig | None = None) -> str:
        """Start a new session and make it active.

        Args:
            config: Launch configuration. Defaults to the settings' session
                defaults.

        Returns:
            The new session id, once its backend is attached.

        Raises:
            CapacityExceeded: ``MAX_SESSIONS`` sessions are already live.
            ProvisioningFailure: The shell could not be started at all.
        """
        if self._disposed:
            raise ShellmuxError("Session registry has been disposed")
        if len(self._sessions) + len(self._pending) >= self.MAX_SESSIONS:
            logger.warning(
                "Rejecting new session: %d live, %d starting",
                len(self._sessions),
                len(self._pending),
            )
            raise CapacityExceeded(self.MAX_SESSIONS)

        self._loop = asyncio.get_running_loop()
        session_id = self._generate_id()
        session = Session(session_id, config or self._settings.session_defaults())
        self._pending[session_id] = session
        try:
            backend = await self._provisioner.provision(session.config)
        except BaseException:
            session.dispose()
            raise
        finally:
            self._pending.pop(session_id, None)

        if not session.attach_backend(backend):
            backend.terminate()
            raise ShellmuxError(f"Session {session_id} was disposed while starting")
        self._sessions[session_id] = session

        backend.on_output(lambda data: self._wire.send_output(session_id, data))
        backend.on_exit(lambda code, sig: self._schedule_exit(session_id, code, sig))

        self._set_active(session_id)
        self._sync_count()
        logger.info(
            "Session %s created: pid=%d backend=%s",
            session_id,
            backend.pid,
            backend.kind.value,
        )
        return session_id

    def close(self, session_id: str) -> bool:
        """Dispose and forget a session. Returns False for unknown ids."""
        return self._close(session_id)

    def _close(
        self,
        session_id: str,
        exit_code: int | None = None,
        signal: int | None = None,
    ) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.dispose()
        if self._active_id == session_id:
            self._set_active(next(reversed(self._sessions), None))
        self._wire.send_closed(session_id, exit_code=exit_code, signal=signal)
        self._sync_count()
        logger.info("Session %s closed", session_id)
        return True

    async def split_active(self) -> str | None:
        """Clone the active session's config into a new session.

        Returns the new id, or None when no session is active.
        """
        if self._active_id is None:
            return None
        source = self._sessions[self._active_id]
        return await self.create(source.config)

    def dispose_all(self) -> None:
        """Terminate everything and close the event wire. Not restartable."""
        if self._disposed:
            return
        self._disposed = True
        sessions = list(self._sessions.values())
        self._sessions.clear()
        # Pending creates see a disposed session and terminate their backend
        pending = list(self._pending.values())
        self._pending.clear()
        for session in pending:
            session.dispose()
        for session in sessions:
            session.dispose()
        self._set_active(None)
        self._sync_count()
        self._provisioner.dispose_all()
        self._wire.close()
        logger.info("All sessions disposed (%d)", len(sessions))

    # ------------------------------------------------------------------
    # Per-session commands
    # ------------------------------------------------------------------

    def clear(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.clear()
        return True

    def send_input(self, session_id: str, data: str | bytes) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.write(data)
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.resize(cols, rows)
        return True

    def set_active(self, session_id: str) -> None:
        if session_id in self._sessions:
            self._set_active(session_id)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def subscribe(self, *types: EventType) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to OUTPUT and/or CLOSED events (both when none given)."""
        return self._wire.subscribe(*types)

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._wire.unsubscribe(q)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    @property
    def ids(self) -> list[str]:
        return list(self._sessions)

    @property
    def active_id(self) -> str | None:
        return self._active_id

    @property
    def disposed(self) -> bool:
        return self._disposed

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule_exit(self, session_id: str, exit_code: int | None, sig: int | None) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._handle_exit, session_id, exit_code, sig)

    def _handle_exit(self, session_id: str, exit_code: int | None, sig: int | None) -> None:
        if session_id not in self._sessions:
            return
        logger.info("Session %s backend exited (code=%s signal=%s)", session_id, exit_code, sig)
        self._close(session_id, exit_code=exit_code, signal=sig)

    def _set_active(self, session_id: str | None) -> None:
        self._active_id = session_id
        if self._focus is not None:
            self._focus.set_active(session_id)

    def _sync_count(self) -> None:
        if self._focus is not None:
            self._focus.set_session_count(len(self._sessions))

    def _generate_id(self) -> str:
        while True:
            session_id = f"terminal-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
            if session_id not in self._sessions and session_id not in self._pending:
                return session_id
