"""Errors raised by tmux sessions and the tmux command interface."""

from __future__ import annotations


class SessionError(RuntimeError):
    """Base class for every session failure."""


class TmuxCommandError(SessionError):
    """A tmux command could not be run or exited non-zero."""

    def __init__(
        self, argv: list[str], returncode: int | None, stderr: str = ""
    ) -> None:
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr or f"exit status {returncode}"
        super().__init__(f"{' '.join(argv)}: {detail}")


class SessionStartError(SessionError):
    """The session could not be brought into existence."""


class SessionTimeoutError(SessionStartError):
    """The session never became observable on the server."""


class AttachError(SessionError):
    """Opening a live attachment failed."""


class DetachInvariantError(SessionError):
    """Detaching left the session in an unknown state.

    Never caught inside agate: a half-closed PTY cannot be repaired, so
    this is meant to end the program.
    """
