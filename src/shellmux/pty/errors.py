"""Errors raised by session creation.

Per-session commands report failure through boolean results instead.
"""

from __future__ import annotations


class ShellmuxError(Exception):
    """Base class for shellmux errors."""


class CapacityExceeded(ShellmuxError):
    """A session was requested while the registry was full."""

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Maximum number of sessions ({limit}) reached; close one and retry"
        )
        self.limit = limit


class ProvisioningFailure(ShellmuxError):
    """Neither the native pty nor the piped fallback could start the shell."""
