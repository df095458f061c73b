"""PTY spawner: start a child process on a fresh pseudo-terminal."""

from __future__ import annotations

import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class ProcessSpec:
    """Description of a child process to run on a PTY."""

    argv: list[str]
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    cols: int | None = None
    rows: int | None = None


@runtime_checkable
class MasterHandle(Protocol):
    """Master side of a pseudo-terminal, as seen by a session."""

    def fileno(self) -> int: ...

    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> int: ...

    def set_size(self, cols: int, rows: int) -> None: ...

    def close(self) -> None: ...

    def reap(self) -> None: ...


@runtime_checkable
class PtySpawner(Protocol):
    """Starts child processes connected to a PTY.

    ``start`` raises ``OSError`` when the child cannot be started.
    """

    def start(self, spec: ProcessSpec) -> MasterHandle: ...


def _winsize(cols: int, rows: int) -> bytes:
    return struct.pack("HHHH", rows, cols, 0, 0)


class PtyHandle:
    """Master fd of a real PTY plus the process on its slave side.

    Closing the handle hangs up the child's process group, so a
    ``tmux attach-session`` client detaches instead of lingering.
    ``reap`` then waits for the child and blocks, so async callers run it
    in an executor.
    """

    def __init__(self, fd: int, proc: subprocess.Popen | None = None) -> None:
        self._fd = fd
        self._proc = proc
        self._closed = False

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def closed(self) -> bool:
        return self._closed

    def fileno(self) -> int:
        return self._fd

    def read(self, size: int) -> bytes:
        try:
            return os.read(self._fd, size)
        except OSError:
            # EIO once the slave side has no more writers
            return b""

    def write(self, data: bytes) -> int:
        return os.write(self._fd, data)

    def set_size(self, cols: int, rows: int) -> None:
        fcntl.ioctl(self._fd, termios.TIOCSWINSZ, _winsize(cols, rows))

    def close(self) -> None:
        """Close the master fd and hang up the child's process group.

        Never waits for the child. Raises ``OSError`` if the fd cannot be
        closed.
        """
        if self._closed:
            return
        os.close(self._fd)
        self._closed = True

        if self._proc is None or self._proc.poll() is not None:
            return

        try:
            os.killpg(self._proc.pid, signal.SIGHUP)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._proc.pid)

    def reap(self, timeout: float = 2.0) -> None:
        """Wait for the child to exit, killing it after ``timeout`` seconds."""
        if self._proc is None or self._proc.poll() is not None:
            return
        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("PTY child %d ignored SIGHUP, killing", self._proc.pid)
            try:
                os.killpg(self._proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            self._proc.wait()


class PtyProcessSpawner:
    """Spawns real processes on real pseudo-terminals.

    Uses subprocess.Popen (not os.fork) so spawning is safe from inside
    a running asyncio event loop.
    """

    def start(self, spec: ProcessSpec) -> PtyHandle:
        master_fd, slave_fd = pty.openpty()

        if spec.cols and spec.rows:
            fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, _winsize(spec.cols, spec.rows))

        env = {**os.environ, **spec.env}
        env.setdefault("TERM", "xterm-256color")
        # tmux refuses to attach from inside another tmux client
        env.pop("TMUX", None)

        try:
            proc = subprocess.Popen(
                spec.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                env=env,
                cwd=spec.cwd,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise OSError(f"failed to start {spec.argv[0]!r}: {e}") from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        logger.debug("PTY child started: pid=%d cmd=%s", proc.pid, " ".join(spec.argv))
        return PtyHandle(master_fd, proc)
