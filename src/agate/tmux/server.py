"""tmux command interface.

Every operation against the terminal server goes through ``TmuxServer``.
Commands that only need their exit status or output run as plain
subprocesses; the two that need a terminal (creating and attaching to a
session) are exposed as argv lists for a ``PtySpawner`` to run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from agate.tmux.errors import TmuxCommandError

logger = logging.getLogger(__name__)

_NO_SERVER_MARKERS = ("no server running", "error connecting to")


@dataclass
class CommandResult:
    """Outcome of one tmux invocation."""

    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class TmuxServer:
    """Thin async wrapper around the ``tmux`` executable."""

    def __init__(self, binary: str = "tmux", socket_name: str | None = None) -> None:
        self.binary = binary
        self.socket_name = socket_name

    def argv(self, *args: str) -> list[str]:
        if self.socket_name:
            return [self.binary, "-L", self.socket_name, *args]
        return [self.binary, *args]

    async def run(self, *args: str, check: bool = True) -> CommandResult:
        """Run ``tmux <args>`` and collect its output.

        Raises ``TmuxCommandError`` if the binary cannot be executed, or if
        ``check`` is set and the command exits non-zero.
        """
        argv = self.argv(*args)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TmuxCommandError(argv, None, str(e)) from e

        out, err = await proc.communicate()
        result = CommandResult(
            argv=argv,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )
        if check and not result.ok:
            raise TmuxCommandError(argv, result.returncode, result.stderr)
        return result

    # ------------------------------------------------------------------
    # Commands run on a PTY by the caller
    # ------------------------------------------------------------------

    def new_session_argv(self, name: str, workdir: str, program: str) -> list[str]:
        return self.argv("new-session", "-d", "-s", name, "-c", workdir, program)

    def attach_argv(self, name: str) -> list[str]:
        return self.argv("attach-session", "-t", name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def has_session(self, name: str) -> bool:
        """Whether the server hosts ``name``.

        Exit status 1 means "no such session" (or no server at all); any
        other failure is an error.
        """
        result = await self.run("has-session", "-t", name, check=False)
        if result.ok:
            return True
        if result.returncode == 1:
            return False
        raise TmuxCommandError(result.argv, result.returncode, result.stderr)

    async def capture_pane(
        self, name: str, start: int | None = None, end: int | None = None
    ) -> str:
        """Visible pane text with escape sequences kept and wrapped lines joined."""
        args = ["capture-pane", "-p", "-e", "-J", "-t", name]
        if start is not None:
            args += ["-S", str(start)]
        if end is not None:
            args += ["-E", str(end)]
        result = await self.run(*args)
        return result.stdout

    async def list_sessions(self, prefix: str | None = None) -> list[str]:
        """Names of all sessions on the server, optionally filtered by prefix."""
        result = await self.run("list-sessions", "-F", "#{session_name}", check=False)
        if not result.ok:
            if any(marker in result.stderr for marker in _NO_SERVER_MARKERS):
                return []
            raise TmuxCommandError(result.argv, result.returncode, result.stderr)
        names = [line for line in result.stdout.splitlines() if line]
        if prefix is not None:
            names = [n for n in names if n.startswith(prefix)]
        return names

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def set_option(self, name: str, option: str, value: str) -> None:
        await self.run("set-option", "-t", name, option, value)

    async def resize_window(self, name: str, cols: int, rows: int) -> None:
        await self.run("resize-window", "-t", name, "-x", str(cols), "-y", str(rows))

    async def send_keys(self, name: str, *keys: str, literal: bool = True) -> None:
        """Send keystrokes. ``literal`` disables tmux key-name lookup."""
        args = ["send-keys", "-t", name]
        if literal:
            args.append("-l")
        await self.run(*args, *keys)

    async def copy_mode(self, name: str) -> None:
        await self.run("copy-mode", "-t", name)

    async def kill_session(self, name: str) -> None:
        await self.run("kill-session", "-t", name)
        logger.debug("tmux session %s killed", name)
