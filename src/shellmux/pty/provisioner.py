"""Provisioner — chooses and constructs backend handles.

The native pty is probed once per process. If probing succeeds but a
native spawn later fails, the provisioner drops to piped processes for
every session that follows and retries the failed request there. The
downgrade is one-way for the lifetime of the provisioner.
"""

from __future__ import annotations

import enum
import logging
import os
from typing import Awaitable, Callable, Mapping

from shellmux.config import SessionConfig, ShellmuxConfig
from shellmux.pty.backend import (
    BackendHandle,
    NativePtyBackend,
    PipeBackend,
    probe_native_pty,
)
from shellmux.pty.errors import ProvisioningFailure

logger = logging.getLogger(__name__)

BackendFactory = Callable[..., Awaitable[BackendHandle]]


class ProvisionMode(enum.Enum):
    NATIVE_ELIGIBLE = "native-eligible"
    FALLBACK_ONLY = "fallback-only"


def build_environment(
    overrides: Mapping[str, str] | None = None,
    strip: tuple[str, ...] | list[str] = ("ELECTRON_RUN_AS_NODE",),
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for a spawned shell, whichever backend runs it.

    Forces a colour-capable terminal type and drops host-only variables.
    """
    env = dict(os.environ if base is None else base)
    if overrides:
        env.update(overrides)
    env["TERM"] = "xterm-256color"
    env["COLORTERM"] = "truecolor"
    for name in strip:
        env.pop(name, None)
    return env


class Provisioner:
    """Produces backend handles and owns them for bulk shutdown."""

    def __init__(
        self,
        settings: ShellmuxConfig | None = None,
        *,
        probe: Callable[[], bool] = probe_native_pty,
        native_factory: BackendFactory = NativePtyBackend.spawn,
        fallback_factory: BackendFactory = PipeBackend.spawn,
    ) -> None:
        self._settings = settings if settings is not None else ShellmuxConfig()
        self._probe = probe
        self._native_factory = native_factory
        self._fallback_factory = fallback_factory
        self._mode: ProvisionMode | None = None
        self._handles: set[BackendHandle] = set()
        self._disposed = False

    @property
    def mode(self) -> ProvisionMode:
        """Current backend policy, probing the platform on first access."""
        if self._mode is None:
            if self._settings.force_fallback:
                logger.info("Native pty disabled by configuration")
                self._mode = ProvisionMode.FALLBACK_ONLY
            elif self._probe():
                self._mode = ProvisionMode.NATIVE_ELIGIBLE
            else:
                logger.warning("Native pty unavailable; using piped processes")
                self._mode = ProvisionMode.FALLBACK_ONLY
        return self._mode

    def _downgrade(self, reason: BaseException) -> None:
        logger.warning(
            "Native pty spawn failed (%s); all further sessions use piped processes",
            reason,
        )
        self._mode = ProvisionMode.FALLBACK_ONLY

    async def provision(self, config: SessionConfig) -> BackendHandle:
        """Start a shell for ``config`` and return its handle.

        Raises:
            ProvisioningFailure: Neither backend could start the process.
        """
        if self._disposed:
            raise ProvisioningFailure("Provisioner has been disposed")

        command = [config.resolved_shell()]
        cwd = config.resolved_cwd()
        env = build_environment(config.env, strip=self._settings.strip_env)
        kwargs = {
            "cols": self._settings.initial_cols,
            "rows": self._settings.initial_rows,
            "kill_grace": self._settings.kill_grace,
        }

        if self.mode is ProvisionMode.NATIVE_ELIGIBLE:
            try:
                handle = await self._native_factory(command, cwd, env, **kwargs)
            except Exception as e:
                self._downgrade(e)
            else:
                return self._track(handle)

        try:
            handle = await self._fallback_factory(command, cwd, env, **kwargs)
        except Exception as e:
            logger.error("Could not start %s in %s: %s", command[0], cwd, e)
            raise ProvisioningFailure(
                f"Failed to start shell {command[0]!r} in {cwd!r}: {e}"
            ) from e
        return self._track(handle)

    def _track(self, handle: BackendHandle) -> BackendHandle:
        self._handles.add(handle)
        handle.on_exit(lambda _code, _sig: self._handles.discard(handle))
        return handle

    def dispose_all(self) -> None:
        """Terminate every outstanding handle. Never raises."""
        self._disposed = True
        handles, self._handles = list(self._handles), set()
        for handle in handles:
            try:
                handle.terminate()
            except Exception as e:
                logger.warning("Error terminating backend pid=%s: %s", handle.pid, e)
        if handles:
            logger.info("Terminated %d backend process(es)", len(handles))

    def __len__(self) -> int:
        return len(self._handles)
