"""Shared fakes: in-memory backends and spawners for provisioning tests."""

from __future__ import annotations

import asyncio
import signal

import pytest

from shellmux.config import ShellmuxConfig
from shellmux.focus import ContextStore, FocusTracker
from shellmux.pty.backend import BackendHandle, BackendKind, BackendStatus
from shellmux.pty.provisioner import Provisioner
from shellmux.pty.registry import SessionRegistry


class FakeBackend(BackendHandle):
    """Backend that records commands instead of running a process."""

    kind = BackendKind.NATIVE
    supports_resize = True

    _next_pid = 1000

    def __init__(
        self,
        command: list[str] | None = None,
        cwd: str = "",
        env: dict[str, str] | None = None,
        *,
        kind: BackendKind = BackendKind.NATIVE,
        cols: int = 80,
        rows: int = 30,
        **_: object,
    ) -> None:
        super().__init__(cols, rows)
        self.kind = kind  # type: ignore[misc]
        self.supports_resize = kind is BackendKind.NATIVE  # type: ignore[misc]
        self.command = command or []
        self.cwd = cwd
        self.env = env or {}
        self.writes: list[str | bytes] = []
        self.applied_sizes: list[tuple[int, int]] = []
        self.terminate_calls = 0
        self.fail_terminate = False
        FakeBackend._next_pid += 1
        self._pid = FakeBackend._next_pid

    @property
    def pid(self) -> int:
        return self._pid

    def write(self, data: str | bytes) -> None:
        if self.alive:
            self.writes.append(data)

    def _apply_size(self, cols: int, rows: int) -> None:
        self.applied_sizes.append((cols, rows))

    def terminate(self) -> None:
        self.terminate_calls += 1
        if self.fail_terminate:
            raise OSError("refused")
        if self._status != BackendStatus.RUNNING:
            return
        self._status = BackendStatus.KILLED
        self._notify_exit(None, signal.SIGHUP)

    # Test drivers

    def emit(self, text: str) -> None:
        self._emit_output(text)

    def exit(self, code: int | None = 0) -> None:
        self._notify_exit(code, None)


class Spawner:
    """Async backend factory that records what it spawned.

    ``failures`` makes the next N calls raise OSError. When ``gate`` is set,
    each call waits on it first, which keeps a create pending.
    """

    def __init__(self, kind: BackendKind, failures: int = 0) -> None:
        self.kind = kind
        self.failures = failures
        self.calls = 0
        self.spawned: list[FakeBackend] = []
        self.gate: asyncio.Event | None = None

    async def __call__(
        self, command: list[str], cwd: str, env: dict[str, str], **kwargs: object
    ) -> FakeBackend:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failures > 0:
            self.failures -= 1
            raise OSError("cannot spawn")
        backend = FakeBackend(command, cwd, env, kind=self.kind, **kwargs)
        self.spawned.append(backend)
        return backend


async def settle() -> None:
    """Let callbacks scheduled with call_soon run."""
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.fixture
def native_spawner() -> Spawner:
    return Spawner(BackendKind.NATIVE)


@pytest.fixture
def fallback_spawner() -> Spawner:
    return Spawner(BackendKind.FALLBACK)


@pytest.fixture
def provisioner(native_spawner: Spawner, fallback_spawner: Spawner) -> Provisioner:
    return Provisioner(
        ShellmuxConfig(),
        probe=lambda: True,
        native_factory=native_spawner,
        fallback_factory=fallback_spawner,
    )


@pytest.fixture
def store() -> ContextStore:
    return ContextStore()


@pytest.fixture
def tracker(store: ContextStore) -> FocusTracker:
    return FocusTracker(store)


@pytest.fixture
def registry(provisioner: Provisioner, tracker: FocusTracker):
    reg = SessionRegistry(ShellmuxConfig(), provisioner=provisioner, focus=tracker)
    yield reg
    reg.dispose_all()
