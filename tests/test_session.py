"""Tests for agate.tmux.session.TmuxSession against fake tmux and PTYs."""

from __future__ import annotations

import asyncio
import logging

import pytest

from agate.config import AgateConfig, StartConfig
from agate.pty.fake import FakeSpawner
from agate.tmux.errors import (
    AttachError,
    DetachInvariantError,
    SessionStartError,
    SessionTimeoutError,
    TmuxCommandError,
)
from agate.tmux.session import TmuxSession
from fakes import WORKDIR, FakeServer, PipeTerminal, eventually

DETACH = b"\x11"
PAST_GRACE = 0.08


async def _attach_past_grace(session: TmuxSession) -> asyncio.Future[None]:
    detached = await session.attach()
    await asyncio.sleep(PAST_GRACE)
    return detached


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------


class TestStart:
    async def test_creates_missing_session(
        self, session: TmuxSession, spawner: FakeSpawner, server: FakeServer
    ) -> None:
        await session.start(WORKDIR)

        assert spawner.specs[0].argv == [
            "tmux", "new-session", "-d", "-s", session.server_name,
            "-c", WORKDIR, "claude",
        ]
        assert spawner.specs[0].cwd == WORKDIR
        assert session.server_name in server.sessions
        assert not session.is_attached

    async def test_bootstrap_pty_is_closed(
        self, session: TmuxSession, spawner: FakeSpawner
    ) -> None:
        await session.start(WORKDIR)
        bootstrap = spawner.handles[0]
        assert bootstrap.closed
        assert bootstrap.close_calls == 1
        assert bootstrap.reaped

    async def test_sets_session_options(
        self, session: TmuxSession, server: FakeServer
    ) -> None:
        await session.start(WORKDIR)
        name = session.server_name
        assert ("set-option", name, "history-limit", "10000") in server.calls
        assert ("set-option", name, "mouse", "on") in server.calls

    async def test_options_follow_config(self, make_session, server: FakeServer) -> None:
        config = AgateConfig()
        config.tmux.history_limit = 500
        config.tmux.mouse = False
        session = make_session(config=config)
        await session.start(WORKDIR)
        assert ("set-option", session.server_name, "history-limit", "500") in server.calls
        assert ("set-option", session.server_name, "mouse", "off") in server.calls

    async def test_existing_session_is_reused(
        self, session: TmuxSession, spawner: FakeSpawner, server: FakeServer
    ) -> None:
        server.sessions[session.server_name] = "already running"
        await session.start(WORKDIR)
        assert spawner.specs == []
        assert server.count("set-option") == 0

    async def test_polls_until_session_appears(
        self, session: TmuxSession, server: FakeServer
    ) -> None:
        server.startup_polls = 3
        await session.start(WORKDIR)
        # initial check, three misses, one hit, final validation
        assert server.count("has-session") == 6

    async def test_times_out_when_session_never_appears(
        self, make_session, spawner: FakeSpawner, server: FakeServer
    ) -> None:
        server.startup_polls = None
        session = make_session(config=AgateConfig(start=StartConfig(timeout=0.1)))

        with pytest.raises(SessionTimeoutError, match="timed out"):
            await session.start(WORKDIR)

        assert spawner.handles[0].closed
        assert session.server_name not in server.sessions

    async def test_spawn_failure(
        self, session: TmuxSession, spawner: FakeSpawner, server: FakeServer
    ) -> None:
        spawner.error = OSError("out of ptys")
        with pytest.raises(SessionStartError, match="out of ptys"):
            await session.start(WORKDIR)
        assert session.server_name not in server.sessions

    async def test_existence_check_failure(
        self, session: TmuxSession, server: FakeServer
    ) -> None:
        server.has_session_error = TmuxCommandError(["tmux", "has-session"], 2, "boom")
        with pytest.raises(SessionStartError, match="existence"):
            await session.start(WORKDIR)


# ---------------------------------------------------------------------------
# Passive observation while idle
# ---------------------------------------------------------------------------


class TestIdle:
    async def test_capture_pane_content(
        self, started: TmuxSession, server: FakeServer
    ) -> None:
        server.sessions[started.server_name] = "Welcome to Claude\n> "
        assert await started.capture_pane_content() == "Welcome to Claude\n> "

    async def test_capture_pane_range(
        self, started: TmuxSession, server: FakeServer
    ) -> None:
        await started.capture_pane_range(-100, 0)
        assert ("capture-pane", started.server_name, -100, 0) in server.calls

    async def test_capture_of_missing_session_raises(self, session: TmuxSession) -> None:
        with pytest.raises(TmuxCommandError):
            await session.capture_pane_content()

    async def test_has_updated_delegates_to_monitor(self, started: TmuxSession) -> None:
        assert started.has_updated("banner") == (True, False)
        assert started.has_updated("banner") == (False, False)

    async def test_is_loading(self, started: TmuxSession, server: FakeServer) -> None:
        server.sessions[started.server_name] = "   \n"
        assert await started.is_loading()
        server.sessions[started.server_name] = "ready"
        assert not await started.is_loading()

    async def test_is_loading_when_capture_fails(self, session: TmuxSession) -> None:
        assert await session.is_loading()

    async def test_set_detached_size_resizes_window(
        self, started: TmuxSession, server: FakeServer
    ) -> None:
        await started.set_detached_size(90, 30)
        assert ("resize-window", started.server_name, 90, 30) in server.calls
        assert (started.width, started.height) == (90, 30)

    async def test_set_detached_size_reports_errors(self, session: TmuxSession) -> None:
        with pytest.raises(TmuxCommandError):
            await session.set_detached_size(90, 30)

    async def test_send_keys_is_literal(
        self, started: TmuxSession, server: FakeServer
    ) -> None:
        await started.send_keys("fix the tests")
        await started.tap_enter()
        name = started.server_name
        assert ("send-keys", name, ("fix the tests",), True) in server.calls
        assert ("send-keys", name, ("\r",), True) in server.calls

    async def test_scroll_up_enters_copy_mode(
        self, started: TmuxSession, server: FakeServer
    ) -> None:
        await started.scroll_up()
        name = started.server_name
        assert server.calls[-2] == ("copy-mode", name)
        assert server.calls[-1] == ("send-keys", name, ("Up", "Up", "Up"), False)

    async def test_scroll_down(self, started: TmuxSession, server: FakeServer) -> None:
        await started.scroll_down()
        assert server.calls[-1] == (
            "send-keys", started.server_name, ("Down", "Down", "Down"), False,
        )

    def test_attach_command(self, session: TmuxSession) -> None:
        assert session.attach_command() == [
            "tmux", "attach-session", "-t", session.server_name,
        ]

    def test_restore_keeps_server_name(self, server: FakeServer) -> None:
        session = TmuxSession.restore("agate_claude_1700000000", server=server)
        assert session.server_name == "agate_claude_1700000000"
        assert session.display_name == "agate_claude_1700000000"


# ---------------------------------------------------------------------------
# Kill
# ---------------------------------------------------------------------------


class TestKill:
    async def test_kill_never_attached(
        self, started: TmuxSession, server: FakeServer
    ) -> None:
        await started.kill()
        assert started.server_name not in server.sessions
        assert not await started.exists()

    async def test_kill_while_attached_ends_attach(
        self, started: TmuxSession, spawner: FakeSpawner, server: FakeServer
    ) -> None:
        detached = await started.attach()
        handle = spawner.handles[-1]

        await asyncio.wait_for(started.kill(), timeout=1.0)

        assert detached.done() and detached.result() is None
        assert handle.closed
        assert handle.reaped
        assert not started.is_attached
        assert started.server_name not in server.sessions

    async def test_kill_after_detach_byte(
        self, started: TmuxSession, terminal: PipeTerminal, server: FakeServer
    ) -> None:
        detached = await _attach_past_grace(started)
        terminal.type(DETACH)
        await asyncio.wait_for(started.kill(), timeout=1.0)
        assert detached.done()
        assert started.server_name not in server.sessions


# ---------------------------------------------------------------------------
# Attach
# ---------------------------------------------------------------------------


class TestAttach:
    async def test_spawns_attach_client(
        self, started: TmuxSession, spawner: FakeSpawner, terminal: PipeTerminal
    ) -> None:
        terminal.size = (132, 43)
        await started.attach()
        spec = spawner.specs[-1]
        assert spec.argv == ["tmux", "attach-session", "-t", started.server_name]
        assert (spec.cols, spec.rows) == (132, 43)
        assert started.is_attached
        await started.detach()

    async def test_relays_session_output(
        self, started: TmuxSession, spawner: FakeSpawner, terminal: PipeTerminal
    ) -> None:
        await started.attach()
        spawner.handles[-1].feed(b"\x1b[1mhello\x1b[0m")
        screen = bytearray()

        def _seen() -> bool:
            screen.extend(terminal.screen())
            return b"hello" in screen

        await eventually(_seen)
        assert bytes(screen) == b"\x1b[1mhello\x1b[0m"
        await started.detach()

    async def test_forwards_input_after_grace_period(
        self, started: TmuxSession, spawner: FakeSpawner, terminal: PipeTerminal
    ) -> None:
        await _attach_past_grace(started)
        handle = spawner.handles[-1]
        terminal.type(b"ls -la\r")
        await eventually(lambda: bytes(handle.written) == b"ls -la\r")
        await started.detach()

    async def test_discards_input_inside_grace_period(
        self, started: TmuxSession, spawner: FakeSpawner, terminal: PipeTerminal
    ) -> None:
        detached = await started.attach()
        handle = spawner.handles[-1]
        terminal.type(b"\x1b[?62;22c\x1b]10;rgb:f8f8/f8f8/f8f8\x07")
        await asyncio.sleep(0.1)
        terminal.type(b"y")

        await eventually(lambda: bytes(handle.written) == b"y")
        assert not detached.done()
        await started.detach()

    async def test_detach_byte_inside_grace_period_is_ignored(
        self, started: TmuxSession, terminal: PipeTerminal
    ) -> None:
        detached = await started.attach()
        terminal.type(DETACH)
        await asyncio.sleep(0.1)
        assert not detached.done()
        assert started.is_attached
        await started.detach()

    async def test_resize_relay_pushes_terminal_size(
        self, started: TmuxSession, spawner: FakeSpawner, terminal: PipeTerminal
    ) -> None:
        terminal.size = (100, 40)
        await started.attach()
        handle = spawner.handles[-1]
        await eventually(lambda: handle.sizes[:1] == [(100, 40)])

        terminal.size = (120, 50)
        await eventually(lambda: (120, 50) in handle.sizes)
        assert (started.width, started.height) == (120, 50)
        assert handle.sizes.count((100, 40)) == 1
        await started.detach()

    async def test_set_detached_size_while_attached_uses_pty(
        self, started: TmuxSession, spawner: FakeSpawner, server: FakeServer
    ) -> None:
        await started.attach()
        await started.set_detached_size(70, 20)
        assert (70, 20) in spawner.handles[-1].sizes
        assert server.count("resize-window") == 0
        await started.detach()

    async def test_attach_twice_fails(self, started: TmuxSession) -> None:
        await started.attach()
        with pytest.raises(AttachError, match="already attached"):
            await started.attach()
        await started.detach()

    async def test_spawn_failure(
        self, started: TmuxSession, spawner: FakeSpawner
    ) -> None:
        spawner.error = OSError("no more ptys")
        with pytest.raises(AttachError, match="no more ptys"):
            await started.attach()
        assert not started.is_attached

    async def test_unexpected_termination_warns(
        self, started: TmuxSession, spawner: FakeSpawner, terminal: PipeTerminal
    ) -> None:
        detached = await started.attach()
        spawner.handles[-1].hang_up()

        await eventually(lambda: "terminated without detaching" in terminal.warnings())
        assert "Ctrl-Q" in terminal.warnings()
        assert not detached.done()
        await started.detach()
        assert detached.done()


# ---------------------------------------------------------------------------
# Detach
# ---------------------------------------------------------------------------


class TestDetach:
    async def test_detach_byte_detaches(
        self,
        started: TmuxSession,
        spawner: FakeSpawner,
        terminal: PipeTerminal,
        server: FakeServer,
    ) -> None:
        detached = await _attach_past_grace(started)
        handle = spawner.handles[-1]
        checks_before = server.count("has-session")

        terminal.type(DETACH)
        await asyncio.wait_for(detached, timeout=1.0)

        assert not started.is_attached
        assert handle.close_calls == 1
        assert DETACH not in handle.written
        assert server.count("has-session") == checks_before + 1
        assert terminal.warnings() == ""

    async def test_input_before_detach_byte_is_forwarded(
        self, started: TmuxSession, spawner: FakeSpawner, terminal: PipeTerminal
    ) -> None:
        detached = await _attach_past_grace(started)
        handle = spawner.handles[-1]
        terminal.type(b"q" + DETACH + b"ignored")
        await asyncio.wait_for(detached, timeout=1.0)
        assert bytes(handle.written) == b"q"

    async def test_external_detach_interrupts_blocked_read(
        self, started: TmuxSession
    ) -> None:
        detached = await _attach_past_grace(started)
        await asyncio.wait_for(started.detach(), timeout=1.0)
        assert detached.done()
        assert not started.is_attached

    async def test_detach_when_idle_is_noop(
        self, started: TmuxSession, server: FakeServer
    ) -> None:
        before = list(server.calls)
        await started.detach()
        assert server.calls == before

    async def test_racing_triggers_detach_once(
        self,
        started: TmuxSession,
        spawner: FakeSpawner,
        terminal: PipeTerminal,
        server: FakeServer,
    ) -> None:
        detached = await _attach_past_grace(started)
        handle = spawner.handles[-1]
        resolutions: list[asyncio.Future[None]] = []
        detached.add_done_callback(resolutions.append)
        checks_before = server.count("has-session")

        terminal.type(DETACH + DETACH + DETACH)
        await asyncio.sleep(0)
        await asyncio.gather(started.detach(), started.detach())
        await asyncio.wait_for(detached, timeout=1.0)
        await asyncio.sleep(0.05)

        assert handle.close_calls == 1
        assert len(resolutions) == 1
        assert server.count("has-session") == checks_before + 1

    async def test_input_after_detach_goes_nowhere(
        self, started: TmuxSession, spawner: FakeSpawner, terminal: PipeTerminal
    ) -> None:
        detached = await _attach_past_grace(started)
        handle = spawner.handles[-1]
        terminal.type(DETACH)
        await asyncio.wait_for(detached, timeout=1.0)

        terminal.type(b"after")
        await asyncio.sleep(0.05)
        assert b"after" not in handle.written

    async def test_round_trips_leave_session_observable(
        self,
        started: TmuxSession,
        spawner: FakeSpawner,
        terminal: PipeTerminal,
        server: FakeServer,
    ) -> None:
        server.sessions[started.server_name] = "agent banner"
        for _ in range(4):
            detached = await _attach_past_grace(started)
            terminal.type(DETACH)
            await asyncio.wait_for(detached, timeout=1.0)
            assert await started.capture_pane_content() == "agent banner"

        attach_handles = spawner.handles[1:]
        assert len(attach_handles) == 4
        assert all(h.close_calls == 1 for h in attach_handles)

    async def test_close_failure_is_fatal(
        self, started: TmuxSession, spawner: FakeSpawner
    ) -> None:
        detached = await started.attach()
        spawner.handles[-1].fail_close = OSError("EIO")

        with pytest.raises(DetachInvariantError, match="EIO"):
            await started.detach()
        with pytest.raises(DetachInvariantError):
            await detached
        assert not started.is_attached

    async def test_vanished_session_is_fatal(
        self, started: TmuxSession, terminal: PipeTerminal, server: FakeServer
    ) -> None:
        detached = await _attach_past_grace(started)
        del server.sessions[started.server_name]

        terminal.type(DETACH)
        with pytest.raises(DetachInvariantError, match="does not exist"):
            await asyncio.wait_for(detached, timeout=1.0)
        assert not started.is_attached

    async def test_detach_after_caller_wait_timed_out(
        self, started: TmuxSession
    ) -> None:
        detached = await started.attach()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(detached, timeout=0.01)
        assert detached.cancelled()

        await asyncio.wait_for(started.detach(), timeout=1.0)
        assert not started.is_attached

    async def test_detach_byte_after_caller_wait_timed_out(
        self, started: TmuxSession, terminal: PipeTerminal, caplog
    ) -> None:
        caplog.set_level(logging.INFO, logger="agate.tmux.session")
        detached = await _attach_past_grace(started)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(detached, timeout=0.01)

        terminal.type(DETACH)
        await eventually(lambda: not started.is_attached)
        await eventually(lambda: "Detached from tmux session" in caplog.text)

    async def test_slow_child_exit_does_not_stall_loop(
        self, started: TmuxSession, spawner: FakeSpawner
    ) -> None:
        await started.attach()
        handle = spawner.handles[-1]
        handle.reap_delay = 0.3
        ticks = 0

        async def ticker() -> None:
            nonlocal ticks
            while True:
                await asyncio.sleep(0.02)
                ticks += 1

        task = asyncio.create_task(ticker())
        try:
            await started.detach()
        finally:
            task.cancel()

        assert handle.reaped
        assert ticks >= 5
