"""Process backends — the live OS process behind a shell session.

Two flavours share the :class:`BackendHandle` shape:

* :class:`NativePtyBackend` runs the shell on a real pseudo-terminal. Resize
  is honoured and stdout/stderr arrive merged, exactly as a terminal would
  show them.
* :class:`PipeBackend` is a plain child process with piped stdio, used when
  the platform cannot give us a pty. Resize is remembered but has no effect,
  and stdout/stderr are read separately and forwarded through the same
  output listeners.

All listener callbacks run on the event loop thread.
"""

from __future__ import annotations

import asyncio
import codecs
import enum
import logging
import os
import signal
import struct
import subprocess
import sys
from abc import ABC, abstractmethod
from contextlib import suppress
from typing import Callable, ClassVar

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096

OutputListener = Callable[[str], None]
ExitListener = Callable[[int | None, int | None], None]


class BackendKind(enum.Enum):
    NATIVE = "native"
    FALLBACK = "fallback"


class BackendStatus(enum.Enum):
    """Lifecycle states for a backend process."""

    RUNNING = "running"
    KILLING = "killing"  # terminate() in progress
    KILLED = "killed"  # Terminated by us
    EXITED = "exited"  # Process exited on its own


def _utf8_decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


def _split_returncode(returncode: int | None) -> tuple[int | None, int | None]:
    """Turn a Popen-style return code into (exit_code, signal)."""
    if returncode is None:
        return None, None
    if returncode < 0:
        return None, -returncode
    return returncode, None


def _to_bytes(data: str | bytes) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return data


class BackendHandle(ABC):
    """A running interactive process.

    Subclasses feed decoded output to :meth:`_emit_output` and report the
    end of the process exactly once through :meth:`_notify_exit`.
    """

    kind: ClassVar[BackendKind]
    supports_resize: ClassVar[bool]

    def __init__(self, cols: int = 80, rows: int = 30) -> None:
        self._cols = cols
        self._rows = rows
        self._status = BackendStatus.RUNNING
        self._output_listeners: list[OutputListener] = []
        self._exit_listeners: list[ExitListener] = []
        # Output produced before anyone listened; flushed to the first listener.
        self._backlog: list[str] = []
        self._exit_info: tuple[int | None, int | None] | None = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_output(self, listener: OutputListener) -> Callable[[], None]:
        """Subscribe to output chunks. Returns an unsubscribe callable."""
        self._output_listeners.append(listener)
        if self._backlog:
            pending, self._backlog = self._backlog, []
            for chunk in pending:
                self._call(listener, chunk)
        return lambda: self._discard(self._output_listeners, listener)

    def on_exit(self, listener: ExitListener) -> Callable[[], None]:
        """Subscribe to the single exit notification.

        A listener added after the process already exited is called
        immediately with the recorded exit code and signal.
        """
        if self._exit_info is not None:
            self._call(listener, *self._exit_info)
            return lambda: None
        self._exit_listeners.append(listener)
        return lambda: self._discard(self._exit_listeners, listener)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @abstractmethod
    def write(self, data: str | bytes) -> None:
        """Send input to the process."""

    def resize(self, cols: int, rows: int) -> None:
        """Record the new geometry and apply it where the backend can."""
        if cols < 1 or rows < 1:
            logger.debug("Ignoring invalid size %dx%d for pid %s", cols, rows, self.pid)
            return
        self._cols, self._rows = cols, rows
        if self.supports_resize and self.alive:
            self._apply_size(cols, rows)

    def _apply_size(self, cols: int, rows: int) -> None:
        pass

    @abstractmethod
    def terminate(self) -> None:
        """Stop the process. Safe to call any number of times."""

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def pid(self) -> int:
        ...

    @property
    def status(self) -> BackendStatus:
        return self._status

    @property
    def alive(self) -> bool:
        return self._status == BackendStatus.RUNNING

    @property
    def size(self) -> tuple[int, int]:
        """Last requested geometry as (cols, rows)."""
        return self._cols, self._rows

    @property
    def exit_code(self) -> int | None:
        return self._exit_info[0] if self._exit_info else None

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _emit_output(self, text: str) -> None:
        if not text:
            return
        if not self._output_listeners:
            self._backlog.append(text)
            return
        for listener in list(self._output_listeners):
            self._call(listener, text)

    def _notify_exit(self, exit_code: int | None, sig: int | None) -> None:
        if self._exit_info is not None:
            return
        self._exit_info = (exit_code, sig)
        if self._status == BackendStatus.RUNNING:
            self._status = BackendStatus.EXITED
        logger.info(
            "%s backend pid=%s exited (code=%s signal=%s)",
            self.kind.value,
            self.pid,
            exit_code,
            sig,
        )
        listeners, self._exit_listeners = self._exit_listeners, []
        for listener in listeners:
            self._call(listener, exit_code, sig)

    def _call(self, listener: Callable[..., None], *args: object) -> None:
        try:
            listener(*args)
        except Exception:
            logger.exception("Error in backend listener for pid %s", self.pid)

    @staticmethod
    def _discard(listeners: list, listener: object) -> None:
        if listener in listeners:
            listeners.remove(listener)


# ---------------------------------------------------------------------------
# Native pseudo-terminal
# ---------------------------------------------------------------------------


def probe_native_pty() -> bool:
    """Return True if this platform can allocate a pseudo-terminal."""
    if sys.platform == "win32":
        return False
    try:
        import fcntl  # noqa: F401
        import pty
        import termios  # noqa: F401

        master_fd, slave_fd = pty.openpty()
    except (ImportError, OSError) as e:
        logger.info("Native pty unavailable: %s", e)
        return False
    os.close(master_fd)
    os.close(slave_fd)
    return True


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    import fcntl
    import termios

    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): make the pty slave (fd 0) the
    # controlling terminal so job control and Ctrl+C reach the shell.
    import fcntl
    import termios

    with suppress(OSError):
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class NativePtyBackend(BackendHandle):
    """A shell attached to a real pseudo-terminal.

    The process runs in its own session/process group so the whole tree can
    be signalled on termination. Output is read from the master fd via
    ``loop.add_reader``, with no reader threads.
    """

    kind = BackendKind.NATIVE
    supports_resize = True

    def __init__(
        self,
        command: list[str],
        cwd: str,
        env: dict[str, str],
        cols: int = 80,
        rows: int = 30,
        kill_grace: float = 0.5,
    ) -> None:
        super().__init__(cols, rows)
        self.command = command
        self.cwd = cwd
        self._env = env
        self._kill_grace = kill_grace
        self._master_fd = -1
        self._proc: subprocess.Popen | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._decoder = _utf8_decoder()
        self._reap_task: asyncio.Task | None = None
        self._kill_timer: asyncio.TimerHandle | None = None

    @classmethod
    async def spawn(
        cls,
        command: list[str],
        cwd: str,
        env: dict[str, str],
        *,
        cols: int = 80,
        rows: int = 30,
        kill_grace: float = 0.5,
    ) -> NativePtyBackend:
        handle = cls(command, cwd, env, cols=cols, rows=rows, kill_grace=kill_grace)
        handle._start(asyncio.get_running_loop())
        return handle

    def _start(self, loop: asyncio.AbstractEventLoop) -> None:
        import pty

        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, self._cols, self._rows)
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                env=self._env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes the slave end
            os.close(slave_fd)

        self._master_fd = master_fd
        self._loop = loop
        loop.add_reader(master_fd, self._on_readable)
        logger.info(
            "Native pty started: pid=%d cmd=%s cwd=%s",
            self._proc.pid,
            " ".join(self.command),
            self.cwd,
        )

    @property
    def pid(self) -> int:
        return self._proc.pid if self._proc else 0

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, _READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave fd is closed, i.e. the process tree is gone
            data = b""
        if data:
            self._emit_output(self._decoder.decode(data))
            return
        self._emit_output(self._decoder.decode(b"", final=True))
        self._close_master()
        if self._loop is not None and self._reap_task is None:
            self._reap_task = self._loop.create_task(self._reap())

    async def _reap(self) -> None:
        if self._proc is None:
            return
        returncode = await asyncio.to_thread(self._proc.wait)
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None
        if self._status == BackendStatus.KILLING:
            self._status = BackendStatus.KILLED
        self._notify_exit(*_split_returncode(returncode))

    def write(self, data: str | bytes) -> None:
        if self._status != BackendStatus.RUNNING or self._master_fd < 0:
            return
        payload = memoryview(_to_bytes(data))
        try:
            while payload:
                written = os.write(self._master_fd, payload)
                payload = payload[written:]
        except OSError as e:
            logger.debug("Dropping input for pty pid=%s: %s", self.pid, e)

    def _apply_size(self, cols: int, rows: int) -> None:
        if self._master_fd < 0:
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
        except OSError as e:
            logger.debug("Resize failed for pty pid=%s: %s", self.pid, e)

    def terminate(self) -> None:
        if self._status != BackendStatus.RUNNING or self._proc is None:
            return
        self._status = BackendStatus.KILLING
        self._signal_group(signal.SIGHUP)
        self._close_master()

        loop = self._loop
        if loop is None or loop.is_closed():
            self._wait_blocking()
            return
        # Escalate if the group ignores SIGHUP; the reap task reports the exit
        self._kill_timer = loop.call_later(self._kill_grace, self._force_kill)
        if self._reap_task is None:
            self._reap_task = loop.create_task(self._reap())
        logger.info("Terminating native pty pid=%d", self._proc.pid)

    def _signal_group(self, sig: int) -> None:
        # start_new_session makes the child its own process group leader
        pgid = self._proc.pid
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", pgid)
        except OSError as e:
            logger.warning("Error signalling pty pid=%d: %s", pgid, e)

    def _force_kill(self) -> None:
        self._kill_timer = None
        if self._proc is not None and self._proc.returncode is None:
            logger.info("pty pid=%d ignored SIGHUP, sending SIGKILL", self._proc.pid)
            self._signal_group(signal.SIGKILL)

    def _wait_blocking(self) -> None:
        # No usable event loop left to reap from
        try:
            self._proc.wait(timeout=self._kill_grace)
        except subprocess.TimeoutExpired:
            self._signal_group(signal.SIGKILL)
            try:
                self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.warning("pty pid=%d did not die after SIGKILL", self._proc.pid)
        self._status = BackendStatus.KILLED
        self._notify_exit(*_split_returncode(self._proc.returncode))

    def _close_master(self) -> None:
        if self._master_fd < 0:
            return
        if self._loop is not None:
            with suppress(RuntimeError, ValueError):
                self._loop.remove_reader(self._master_fd)
        with suppress(OSError):
            os.close(self._master_fd)
        self._master_fd = -1


# ---------------------------------------------------------------------------
# Piped fallback
# ---------------------------------------------------------------------------


class PipeBackend(BackendHandle):
    """A shell running as a plain child process with piped stdio.

    Used when no pty is available. ``resize`` only records the geometry.
    """

    kind = BackendKind.FALLBACK
    supports_resize = False

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        cols: int = 80,
        rows: int = 30,
        kill_grace: float = 0.5,
    ) -> None:
        super().__init__(cols, rows)
        self._proc = proc
        self._kill_grace = kill_grace
        self._readers: list[asyncio.Task] = []
        self._waiter: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @classmethod
    async def spawn(
        cls,
        command: list[str],
        cwd: str,
        env: dict[str, str],
        *,
        cols: int = 80,
        rows: int = 30,
        kill_grace: float = 0.5,
    ) -> PipeBackend:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=sys.platform != "win32",
        )
        handle = cls(proc, cols=cols, rows=rows, kill_grace=kill_grace)
        handle._start()
        logger.info(
            "Piped shell started: pid=%d cmd=%s cwd=%s", proc.pid, " ".join(command), cwd
        )
        return handle

    def _start(self) -> None:
        self._loop = asyncio.get_running_loop()
        for stream in (self._proc.stdout, self._proc.stderr):
            if stream is not None:
                self._readers.append(asyncio.create_task(self._pump(stream)))
        self._waiter = asyncio.create_task(self._wait())

    @property
    def pid(self) -> int:
        return self._proc.pid

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        decoder = _utf8_decoder()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            self._emit_output(decoder.decode(chunk))
        self._emit_output(decoder.decode(b"", final=True))

    async def _wait(self) -> None:
        returncode = await self._proc.wait()
        if self._readers:
            # Let the pipes drain so output is delivered before the exit.
            # A grandchild holding a pipe open must not keep us waiting.
            _, pending = await asyncio.wait(self._readers, timeout=1.0)
            for task in pending:
                task.cancel()
        self._notify_exit(*_split_returncode(returncode))

    def write(self, data: str | bytes) -> None:
        stdin = self._proc.stdin
        if self._status != BackendStatus.RUNNING or stdin is None or stdin.is_closing():
            return
        try:
            stdin.write(_to_bytes(data))
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug("Dropping input for pid=%d: %s", self.pid, e)

    def terminate(self) -> None:
        if self._status != BackendStatus.RUNNING:
            return
        self._status = BackendStatus.KILLING
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
        if self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                logger.debug("Process already gone: %d", self.pid)
            else:
                if self._loop is not None and not self._loop.is_closed():
                    self._loop.call_later(self._kill_grace, self._force_kill)
        self._status = BackendStatus.KILLED
        logger.info("Terminated piped shell pid=%d", self.pid)

    def _force_kill(self) -> None:
        if self._proc.returncode is None:
            with suppress(ProcessLookupError):
                self._proc.kill()
