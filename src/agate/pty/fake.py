"""In-memory PTY spawner for exercising sessions without a real terminal."""

from __future__ import annotations

import errno
import os
import time
from typing import Callable

from agate.pty.spawner import ProcessSpec


class FakePtyHandle:
    """Pipe-backed stand-in for a PTY master.

    Bytes passed to ``feed`` come out of ``read`` as if the child had
    printed them; bytes passed to ``write`` are recorded in ``written``.
    """

    def __init__(self, spec: ProcessSpec) -> None:
        self.spec = spec
        self._read_fd, self._feed_fd = os.pipe()
        self.written = bytearray()
        self.sizes: list[tuple[int, int]] = []
        self.close_calls = 0
        self.fail_close: OSError | None = None
        self.closed = False
        self.reap_delay = 0.0
        self.reaped = False

    def fileno(self) -> int:
        return self._read_fd

    def read(self, size: int) -> bytes:
        try:
            return os.read(self._read_fd, size)
        except OSError:
            return b""

    def write(self, data: bytes) -> int:
        if self.closed:
            raise OSError(errno.EBADF, "write to closed fake pty")
        self.written.extend(data)
        return len(data)

    def set_size(self, cols: int, rows: int) -> None:
        if self.closed:
            raise OSError(errno.EBADF, "resize of closed fake pty")
        self.sizes.append((cols, rows))

    def feed(self, data: bytes) -> None:
        """Make ``data`` readable on the master side."""
        os.write(self._feed_fd, data)

    def hang_up(self) -> None:
        """Simulate the child exiting: the next read sees end-of-stream."""
        if self._feed_fd >= 0:
            os.close(self._feed_fd)
            self._feed_fd = -1

    def close(self) -> None:
        self.close_calls += 1
        if self.fail_close is not None:
            raise self.fail_close
        if self.closed:
            raise OSError(errno.EBADF, "fake pty closed twice")
        self.closed = True
        self._release()

    def reap(self) -> None:
        """Block for ``reap_delay`` seconds, like a child slow to exit."""
        time.sleep(self.reap_delay)
        self.reaped = True

    def _release(self) -> None:
        for fd in (self._read_fd, self._feed_fd):
            if fd >= 0:
                try:
                    os.close(fd)
                except OSError:
                    pass
        self._read_fd = self._feed_fd = -1


class FakeSpawner:
    """Records every spawn request and hands back ``FakePtyHandle``s.

    Set ``error`` to make the next (and every later) ``start`` fail.
    ``on_start`` is called with each accepted spec, which lets a fake
    terminal server react to ``new-session`` bootstraps.
    """

    def __init__(
        self,
        error: OSError | None = None,
        on_start: Callable[[ProcessSpec], None] | None = None,
    ) -> None:
        self.error = error
        self.on_start = on_start
        self.specs: list[ProcessSpec] = []
        self.handles: list[FakePtyHandle] = []

    def start(self, spec: ProcessSpec) -> FakePtyHandle:
        self.specs.append(spec)
        if self.error is not None:
            raise self.error
        handle = FakePtyHandle(spec)
        self.handles.append(handle)
        if self.on_start is not None:
            self.on_start(spec)
        return handle

    def close(self) -> None:
        """Release every fd the fake handles still hold."""
        for handle in self.handles:
            handle._release()
