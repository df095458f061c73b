"""PTY spawning: child processes on pseudo-terminals.

Sessions never open PTYs directly; they go through a ``PtySpawner`` so
the attach/detach protocol can run against ``FakeSpawner`` in tests.
"""

from agate.pty.spawner import (
    MasterHandle,
    ProcessSpec,
    PtyHandle,
    PtyProcessSpawner,
    PtySpawner,
)
from agate.pty.fake import FakePtyHandle, FakeSpawner

__all__ = [
    "MasterHandle",
    "ProcessSpec",
    "PtyHandle",
    "PtyProcessSpawner",
    "PtySpawner",
    "FakePtyHandle",
    "FakeSpawner",
]
