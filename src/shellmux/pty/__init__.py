"""Shell session management — many interactive shells in one process.

Each session runs on a native pseudo-terminal when the platform offers one
and on a piped child process otherwise. The registry caps concurrency,
tracks the active session and republishes output/closed events.
"""

from shellmux.pty.backend import (
    BackendHandle,
    BackendKind,
    BackendStatus,
    NativePtyBackend,
    PipeBackend,
    probe_native_pty,
)
from shellmux.pty.errors import CapacityExceeded, ProvisioningFailure, ShellmuxError
from shellmux.pty.provisioner import ProvisionMode, Provisioner, build_environment
from shellmux.pty.registry import SessionRegistry
from shellmux.pty.session import Session

__all__ = [
    "BackendHandle",
    "BackendKind",
    "BackendStatus",
    "CapacityExceeded",
    "NativePtyBackend",
    "PipeBackend",
    "ProvisionMode",
    "Provisioner",
    "ProvisioningFailure",
    "Session",
    "SessionRegistry",
    "ShellmuxError",
    "build_environment",
    "probe_native_pty",
]
