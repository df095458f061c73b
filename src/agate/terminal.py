"""The user's real terminal, as seen by an attached session."""

from __future__ import annotations

import contextlib
import os
import sys
import termios
import tty
from typing import Iterator, TextIO


class Terminal:
    """Input fd, output fd and error stream of the controlling terminal.

    Sessions read keystrokes from ``input_fd``, write the session's output
    to ``output_fd`` and report problems on ``error``. Tests substitute
    pipes for both fds.
    """

    def __init__(
        self, input_fd: int, output_fd: int, error: TextIO | None = None
    ) -> None:
        self.input_fd = input_fd
        self.output_fd = output_fd
        self.error = error if error is not None else sys.stderr

    @classmethod
    def stdio(cls) -> Terminal:
        return cls(sys.stdin.fileno(), sys.stdout.fileno(), sys.stderr)

    def fileno(self) -> int:
        return self.input_fd

    def read(self, size: int) -> bytes:
        return os.read(self.input_fd, size)

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self.output_fd, view)
            view = view[written:]

    def warn(self, message: str) -> None:
        """Print a red warning line on the error stream."""
        self.error.write(f"\n\033[31m{message}\033[0m\n")
        self.error.flush()

    def get_size(self) -> tuple[int, int] | None:
        """Current ``(cols, rows)``, or None when input is not a terminal."""
        try:
            size = os.get_terminal_size(self.input_fd)
        except OSError:
            return None
        return size.columns, size.lines

    def isatty(self) -> bool:
        return os.isatty(self.input_fd)

    @contextlib.contextmanager
    def raw_mode(self) -> Iterator[None]:
        """Put the input side in raw mode for the duration of the block."""
        if not self.isatty():
            yield
            return
        saved = termios.tcgetattr(self.input_fd)
        tty.setraw(self.input_fd)
        try:
            yield
        finally:
            termios.tcsetattr(self.input_fd, termios.TCSADRAIN, saved)
