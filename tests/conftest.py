from __future__ import annotations

from typing import Any, Callable, Iterator

import pytest

from agate.config import AgateConfig
from agate.pty.fake import FakeSpawner
from agate.tmux.session import TmuxSession
from fakes import WORKDIR, FakeServer, PipeTerminal


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def spawner(server: FakeServer) -> Iterator[FakeSpawner]:
    s = FakeSpawner(on_start=server.observe_spawn)
    yield s
    s.close()


@pytest.fixture
def terminal() -> Iterator[PipeTerminal]:
    t = PipeTerminal()
    yield t
    t.close()


@pytest.fixture
def make_session(
    server: FakeServer, spawner: FakeSpawner, terminal: PipeTerminal
) -> Callable[..., TmuxSession]:
    def _make(
        name: str = "claude",
        program: str = "claude",
        config: AgateConfig | None = None,
        **kwargs: Any,
    ) -> TmuxSession:
        return TmuxSession(
            name,
            program,
            spawner=spawner,
            server=server,
            terminal=terminal,
            config=config,
            **kwargs,
        )

    return _make


@pytest.fixture
def session(make_session: Callable[..., TmuxSession]) -> TmuxSession:
    return make_session()


@pytest.fixture
async def started(session: TmuxSession) -> TmuxSession:
    await session.start(WORKDIR)
    return session
