"""CLI entry point for shellmux."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import sys
from contextlib import contextmanager
from typing import Iterator

import typer

from shellmux.config import ShellmuxConfig
from shellmux.pty import BackendKind, Provisioner, ProvisionMode, SessionRegistry, ShellmuxError
from shellmux.session.wire import EventType

app = typer.Typer(
    name="shellmux",
    help="Run several interactive shell sessions inside one process.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@contextmanager
def _raw_terminal(fd: int, enabled: bool) -> Iterator[None]:
    """Put the local terminal in raw mode so keystrokes pass straight through."""
    if not enabled:
        yield
        return
    import termios
    import tty

    saved = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


async def _attach(settings: ShellmuxConfig, shell: str | None, cwd: str | None) -> int:
    """Bridge the local terminal to one registry session until it closes."""
    registry = SessionRegistry(settings)
    events = registry.subscribe()
    defaults = settings.session_defaults()
    session_config = defaults.model_copy(
        update={"shell": shell or defaults.shell, "cwd": cwd or defaults.cwd}
    )

    try:
        session_id = await registry.create(session_config)
    except ShellmuxError as e:
        typer.echo(f"Error: {e}", err=True)
        registry.dispose_all()
        return 1

    session = registry.get(session_id)
    native = session is not None and session.backend_kind is BackendKind.NATIVE
    if not native:
        typer.echo("Note: no pseudo-terminal available, running with plain pipes.", err=True)

    loop = asyncio.get_running_loop()
    stdin_fd = sys.stdin.fileno()
    stdout = sys.stdout

    def on_stdin() -> None:
        try:
            data = os.read(stdin_fd, 4096)
        except OSError:
            data = b""
        if not data:
            loop.remove_reader(stdin_fd)
            return
        registry.send_input(session_id, data)

    def on_winch() -> None:
        size = shutil.get_terminal_size()
        registry.resize(session_id, size.columns, size.lines)

    exit_code: int | None = None
    with _raw_terminal(stdin_fd, native and os.isatty(stdin_fd)):
        loop.add_reader(stdin_fd, on_stdin)
        loop.add_signal_handler(signal.SIGWINCH, on_winch)
        on_winch()
        try:
            while True:
                event = await events.get()
                if event is None:
                    break
                if event.session_id != session_id:
                    continue
                if event.type is EventType.OUTPUT:
                    stdout.write(event.data["data"])
                    stdout.flush()
                elif event.type is EventType.CLOSED:
                    exit_code = event.data.get("exit_code")
                    break
        finally:
            loop.remove_reader(stdin_fd)
            loop.remove_signal_handler(signal.SIGWINCH)
            registry.dispose_all()
    return exit_code or 0


@app.command()
def run(
    shell: str | None = typer.Option(
        None, "--shell", "-s", help="Shell executable (default: $SHELL)."
    ),
    cwd: str | None = typer.Option(
        None, "--cwd", "-C", help="Working directory (default: home)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to config file (JSON)."
    ),
) -> None:
    """Attach this terminal to a new shell session."""
    if sys.platform == "win32":
        typer.echo("Error: 'run' needs a POSIX terminal.", err=True)
        raise typer.Exit(code=2)

    setup_logging(verbose)
    if not verbose:
        # Log lines would interleave with the shell's own output
        logging.getLogger("shellmux").setLevel(logging.WARNING)

    config = ShellmuxConfig.load(config_file)
    if cwd and not os.path.isdir(cwd):
        typer.echo(f"Error: Directory not found: {cwd}", err=True)
        raise typer.Exit(code=1)

    raise typer.Exit(code=asyncio.run(_attach(config, shell, cwd)))


@app.command()
def probe(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to config file (JSON)."
    ),
) -> None:
    """Report which backend new sessions would use."""
    config = ShellmuxConfig.load(config_file)
    provisioner = Provisioner(config)
    session_config = config.session_defaults()
    backend = "native pty" if provisioner.mode is ProvisionMode.NATIVE_ELIGIBLE else "piped fallback"
    typer.echo(f"Backend: {backend}")
    typer.echo(f"Shell: {session_config.resolved_shell()}")
    typer.echo(f"Cwd: {session_config.resolved_cwd()}")
    typer.echo(f"Max sessions: {SessionRegistry.MAX_SESSIONS}")


@app.command("config")
def show_config(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to config file (JSON)."
    ),
) -> None:
    """Print the resolved configuration as JSON."""
    typer.echo(ShellmuxConfig.load(config_file).model_dump_json(indent=2))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
