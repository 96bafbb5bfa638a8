"""Session — one shell: a stable id, its launch config and its backend."""

from __future__ import annotations

import logging

from shellmux.config import CLEAR_SEQUENCE, SessionConfig
from shellmux.pty.backend import BackendHandle, BackendKind

logger = logging.getLogger(__name__)


class Session:
    """Routes commands to the backend handle it exclusively owns.

    Until a backend is attached, and forever after :meth:`dispose`, every
    command is a silent no-op.
    """

    def __init__(self, session_id: str, config: SessionConfig) -> None:
        self.id = session_id
        self.config = config
        self._backend: BackendHandle | None = None
        self._disposed = False

    def attach_backend(self, backend: BackendHandle) -> bool:
        """Attach the backend. Returns False if the session is already disposed."""
        if self._disposed:
            logger.debug("Session %s disposed before its backend arrived", self.id)
            return False
        self._backend = backend
        return True

    def write(self, data: str | bytes) -> None:
        if self._backend is not None and not self._disposed:
            self._backend.write(data)

    def clear(self) -> None:
        self.write(CLEAR_SEQUENCE)

    def resize(self, cols: int, rows: int) -> None:
        if self._backend is not None and not self._disposed:
            self._backend.resize(cols, rows)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._backend is None:
            return
        try:
            self._backend.terminate()
        except Exception as e:
            logger.warning("Error terminating session %s: %s", self.id, e)

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def attached(self) -> bool:
        return self._backend is not None

    @property
    def backend_kind(self) -> BackendKind | None:
        return self._backend.kind if self._backend else None

    @property
    def pid(self) -> int | None:
        return self._backend.pid if self._backend else None

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, pid={self.pid}, disposed={self._disposed})"
