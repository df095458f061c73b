"""CLI entry point for agate."""

from __future__ import annotations

import asyncio
import logging
import os

import typer

from agate.config import AgateConfig
from agate.terminal import Terminal
from agate.tmux.errors import (
    AttachError,
    SessionStartError,
    TmuxCommandError,
)
from agate.tmux.server import TmuxServer
from agate.tmux.session import TmuxSession

app = typer.Typer(
    name="agate",
    help="Run command-line AI agents in persistent tmux sessions.",
    no_args_is_help=True,
)

DEFAULT_LOG_FILE = "~/.agate/agate.log"


def setup_logging(verbose: bool = False, log_file: str | None = DEFAULT_LOG_FILE) -> None:
    """Log to a file; stderr belongs to the attached session."""
    level = logging.DEBUG if verbose else logging.INFO
    kwargs: dict[str, str] = {}
    if log_file:
        path = os.path.expanduser(log_file)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        kwargs["filename"] = path
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        **kwargs,
    )


def _load(verbose: bool, config_file: str | None, log_file: str | None) -> AgateConfig:
    setup_logging(verbose, log_file)
    return AgateConfig.load(config_file)


def _fail(message: str) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(1)


async def _attach_and_wait(session: TmuxSession, terminal: Terminal) -> None:
    """Hand the terminal to the session until the user detaches."""
    with terminal.raw_mode():
        detached = await session.attach()
        await detached


async def _run_new(
    session: TmuxSession, workdir: str, terminal: Terminal | None
) -> None:
    await session.start(workdir)
    typer.echo(f"Session: {session.server_name}")
    if terminal is not None:
        await _attach_and_wait(session, terminal)


async def _run_attach(session: TmuxSession, terminal: Terminal) -> None:
    await session.start(os.getcwd())
    await _attach_and_wait(session, terminal)


VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")
ConfigOption = typer.Option(None, "--config", "-c", help="Config file path.")
LogFileOption = typer.Option(
    DEFAULT_LOG_FILE, "--log-file", help="Where to write logs ('' for stderr)."
)


@app.command()
def new(
    name: str = typer.Argument(help="Display name of the session (e.g. the agent)."),
    program: str = typer.Option(
        "claude", "--program", "-p", help="Command line to run inside the session."
    ),
    workdir: str = typer.Option(
        ".", "--workdir", "-w", help="Working directory for the program."
    ),
    attach: bool = typer.Option(
        True, "--attach/--no-attach", help="Attach right after creating it."
    ),
    verbose: bool = VerboseOption,
    config_file: str | None = ConfigOption,
    log_file: str = LogFileOption,
) -> None:
    """Create a session and attach to it."""
    config = _load(verbose, config_file, log_file)

    workdir_path = os.path.abspath(workdir)
    if not os.path.isdir(workdir_path):
        raise _fail(f"Working directory not found: {workdir_path}")

    terminal = Terminal.stdio() if attach else None
    session = TmuxSession(name, program, config=config, terminal=terminal)
    try:
        asyncio.run(_run_new(session, workdir_path, terminal))
    except (SessionStartError, AttachError) as e:
        raise _fail(str(e)) from e

    if attach:
        typer.echo(f"Detached from {session.server_name}")


@app.command()
def attach(
    server_name: str = typer.Argument(help="Session name as shown by 'agate ls'."),
    verbose: bool = VerboseOption,
    config_file: str | None = ConfigOption,
    log_file: str = LogFileOption,
) -> None:
    """Attach to an existing session (detach with Ctrl-Q)."""
    config = _load(verbose, config_file, log_file)

    terminal = Terminal.stdio()
    session = TmuxSession.restore(server_name, config=config, terminal=terminal)
    try:
        asyncio.run(_run_attach(session, terminal))
    except (SessionStartError, AttachError) as e:
        raise _fail(str(e)) from e

    typer.echo(f"Detached from {server_name}")


@app.command()
def capture(
    server_name: str = typer.Argument(help="Session name as shown by 'agate ls'."),
    start: int | None = typer.Option(None, "--start", "-S", help="First line."),
    end: int | None = typer.Option(None, "--end", "-E", help="Last line."),
    verbose: bool = VerboseOption,
    config_file: str | None = ConfigOption,
    log_file: str = LogFileOption,
) -> None:
    """Print the current pane content of a session."""
    config = _load(verbose, config_file, log_file)
    server = TmuxServer(config.tmux.binary, config.tmux.socket_name)
    try:
        content = asyncio.run(server.capture_pane(server_name, start=start, end=end))
    except TmuxCommandError as e:
        raise _fail(str(e)) from e
    typer.echo(content, nl=False)


@app.command()
def send(
    server_name: str = typer.Argument(help="Session name as shown by 'agate ls'."),
    keys: str = typer.Argument(help="Text to type into the session."),
    enter: bool = typer.Option(False, "--enter", "-e", help="Press Enter afterwards."),
    verbose: bool = VerboseOption,
    config_file: str | None = ConfigOption,
    log_file: str = LogFileOption,
) -> None:
    """Type text into a detached session."""
    config = _load(verbose, config_file, log_file)
    session = TmuxSession.restore(server_name, config=config)

    async def _send() -> None:
        await session.send_keys(keys)
        if enter:
            await session.tap_enter()

    try:
        asyncio.run(_send())
    except TmuxCommandError as e:
        raise _fail(str(e)) from e


@app.command(name="ls")
def list_sessions(
    verbose: bool = VerboseOption,
    config_file: str | None = ConfigOption,
    log_file: str = LogFileOption,
) -> None:
    """List agate sessions on the tmux server."""
    config = _load(verbose, config_file, log_file)
    server = TmuxServer(config.tmux.binary, config.tmux.socket_name)
    try:
        names = asyncio.run(server.list_sessions(prefix=f"{config.tmux.session_prefix}_"))
    except TmuxCommandError as e:
        raise _fail(str(e)) from e
    for name in names:
        typer.echo(name)


@app.command()
def kill(
    server_name: str = typer.Argument(help="Session name as shown by 'agate ls'."),
    verbose: bool = VerboseOption,
    config_file: str | None = ConfigOption,
    log_file: str = LogFileOption,
) -> None:
    """Destroy a session and the program running in it."""
    config = _load(verbose, config_file, log_file)
    session = TmuxSession.restore(server_name, config=config)
    try:
        asyncio.run(session.kill())
    except TmuxCommandError as e:
        raise _fail(str(e)) from e
    typer.echo(f"Killed {server_name}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
