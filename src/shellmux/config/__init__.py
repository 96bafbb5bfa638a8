"""Configuration — Pydantic models for shellmux settings."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

# Hard cap on concurrently live sessions. The focus tracker derives
# "can split" from the same constant.
MAX_SESSIONS = 5

IS_WINDOWS = sys.platform == "win32"

# Synthesized input that clears the screen in the platform's shell.
CLEAR_SEQUENCE = "cls\r" if IS_WINDOWS else "clear\r"

_TRUTHY = {"1", "true", "yes", "on"}


def default_shell() -> str:
    """Shell used when neither the session nor the settings name one."""
    if IS_WINDOWS:
        return os.environ.get("COMSPEC") or "cmd.exe"
    return os.environ.get("SHELL") or "/bin/bash"


def default_cwd() -> str:
    return str(Path.home())


class SessionConfig(BaseModel):
    """Launch configuration for one shell session.

    Immutable once the session exists. ``font_size``, ``font_family`` and
    ``theme`` are display preferences: the core never reads them, it only
    hands them back to whoever renders the session.
    """

    model_config = ConfigDict(frozen=True)

    shell: str | None = Field(default=None, description="Shell executable")
    cwd: str | None = Field(default=None, description="Working directory")
    env: dict[str, str] = Field(
        default_factory=dict, description="Environment overrides"
    )
    font_size: int | None = Field(default=None)
    font_family: str | None = Field(default=None)
    theme: dict[str, str] = Field(
        default_factory=dict, description="Colour map, forwarded to the renderer"
    )

    def resolved_shell(self) -> str:
        return self.shell or default_shell()

    def resolved_cwd(self) -> str:
        return self.cwd or default_cwd()


class ShellmuxConfig(BaseModel):
    """Top-level shellmux configuration."""

    default_shell: str | None = Field(
        default=None, description="Shell for sessions that do not name one"
    )
    default_cwd: str | None = Field(
        default=None, description="Working directory for sessions that do not name one"
    )
    font_size: int = Field(default=14)
    font_family: str = Field(default='Menlo, Monaco, "Courier New", monospace')
    initial_cols: int = Field(default=80, ge=1)
    initial_rows: int = Field(default=30, ge=1)
    kill_grace: float = Field(
        default=0.5,
        ge=0,
        description="Seconds between SIGHUP and SIGKILL when terminating a pty",
    )
    force_fallback: bool = Field(
        default=False, description="Never try the native pty backend"
    )
    strip_env: list[str] = Field(
        default_factory=lambda: ["ELECTRON_RUN_AS_NODE"],
        description=(
            "Variables removed from the child environment. The default keeps "
            "spawned shells from believing they are the host runtime."
        ),
    )

    def session_defaults(self) -> SessionConfig:
        """The config a session gets when its creator supplies none."""
        return SessionConfig(
            shell=self.default_shell,
            cwd=self.default_cwd,
            font_size=self.font_size,
            font_family=self.font_family,
        )

    @classmethod
    def load(cls, config_path: str | None = None) -> ShellmuxConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            SHELLMUX_SHELL           - Default shell executable
            SHELLMUX_CWD             - Default working directory
            SHELLMUX_FONT_SIZE       - Font size forwarded to renderers
            SHELLMUX_FONT_FAMILY     - Font family forwarded to renderers
            SHELLMUX_FORCE_FALLBACK  - 1/true/yes/on to skip the native pty
        """
        load_dotenv()

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        env_shell = os.environ.get("SHELLMUX_SHELL")
        if env_shell:
            config_data["default_shell"] = env_shell

        env_cwd = os.environ.get("SHELLMUX_CWD")
        if env_cwd:
            config_data["default_cwd"] = env_cwd

        env_font_size = os.environ.get("SHELLMUX_FONT_SIZE")
        if env_font_size:
            config_data["font_size"] = int(env_font_size)

        env_font_family = os.environ.get("SHELLMUX_FONT_FAMILY")
        if env_font_family:
            config_data["font_family"] = env_font_family

        env_force_fallback = os.environ.get("SHELLMUX_FORCE_FALLBACK")
        if env_force_fallback:
            config_data["force_fallback"] = env_force_fallback.strip().lower() in _TRUTHY

        return cls.model_validate(config_data)
