"""tmux sessions: create, observe, attach to and detach from agent sessions.

Each agent runs inside its own tmux session so it outlives the UI. The
UI polls a detached session with ``capture-pane`` and, on request, hands
the user's terminal to it until the detach key is pressed.
"""

from agate.tmux.errors import (
    AttachError,
    DetachInvariantError,
    SessionError,
    SessionStartError,
    SessionTimeoutError,
    TmuxCommandError,
)
from agate.tmux.monitor import ContentMonitor, StatusMonitor, strip_ansi
from agate.tmux.naming import sanitize_name
from agate.tmux.server import CommandResult, TmuxServer
from agate.tmux.session import TmuxSession

__all__ = [
    "AttachError",
    "CommandResult",
    "ContentMonitor",
    "DetachInvariantError",
    "SessionError",
    "SessionStartError",
    "SessionTimeoutError",
    "StatusMonitor",
    "TmuxCommandError",
    "TmuxServer",
    "TmuxSession",
    "sanitize_name",
    "strip_ansi",
]
