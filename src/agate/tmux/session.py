"""tmux session: one multiplexed terminal session, end to end.

A ``TmuxSession`` creates its session on the tmux server, lets callers
poll the pane while nobody is attached, and can hand the user's real
terminal to the session for live use. While attached, three tasks run
on the caller's event loop:

* output relay: PTY master -> terminal output
* input relay: terminal input -> PTY master, except during the start-up
  grace window and for the detach byte
* resize relay: terminal size -> PTY master, every ``resize_interval``

All three stop once the attach's cancel event is set. No PTY is held
while idle; the pane is observed with ``capture-pane`` instead.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_result,
    stop_after_delay,
    wait_exponential,
)

from agate.config import AgateConfig
from agate.pty.spawner import MasterHandle, ProcessSpec, PtyProcessSpawner, PtySpawner
from agate.terminal import Terminal
from agate.tmux.errors import (
    AttachError,
    DetachInvariantError,
    SessionError,
    SessionStartError,
    SessionTimeoutError,
    TmuxCommandError,
)
from agate.tmux.monitor import ContentMonitor, StatusMonitor
from agate.tmux.naming import sanitize_name
from agate.tmux.server import TmuxServer

logger = logging.getLogger(__name__)


class _Readable(Protocol):
    def fileno(self) -> int: ...

    def read(self, size: int) -> bytes: ...


@dataclass
class _AttachState:
    """Everything that exists only while an attach is live."""

    cancel: asyncio.Event
    detached: asyncio.Future[None]
    started_at: float = 0.0
    workers: list[asyncio.Task[None]] = field(default_factory=list)
    trigger: asyncio.Task[None] | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)
    detaching: bool = False

    def claim(self) -> bool:
        """Return True for the first caller only."""
        with self.lock:
            if self.detaching:
                return False
            self.detaching = True
            return True


def _mark_ready(ready: asyncio.Future[None]) -> None:
    if not ready.done():
        ready.set_result(None)


def _consume_result(task: asyncio.Task[None]) -> None:
    # A failed detach already reached the caller through the attach future.
    if not task.cancelled():
        task.exception()


async def _read_or_cancel(
    source: _Readable,
    size: int,
    cancel: asyncio.Event,
    release_on_cancel: bool = True,
) -> bytes | None:
    """Read once from ``source`` unless ``cancel`` fires first.

    Returns None when cancelled and b"" at end of stream. With
    ``release_on_cancel=False`` the reader is left for whoever set
    ``cancel`` to remove, because that party is about to close the fd.
    """
    loop = asyncio.get_running_loop()
    fd = source.fileno()
    ready: asyncio.Future[None] = loop.create_future()
    loop.add_reader(fd, _mark_ready, ready)
    stop = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({ready, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        ready.cancel()
        if release_on_cancel or not cancel.is_set():
            loop.remove_reader(fd)
    if cancel.is_set():
        return None
    return source.read(size)


def _key_label(key: int) -> str:
    if key < 0x20:
        return f"Ctrl-{chr(key + 0x40)}"
    return repr(chr(key))


class TmuxSession:
    """A named tmux session and the live attachment to it.

    Lifecycle: ``start`` -> idle -> ``attach`` -> live -> detach -> idle
    -> ``kill``. Lifecycle calls must come from one task at a time; only
    the attach workers run concurrently.
    """

    def __init__(
        self,
        name: str,
        program: str,
        *,
        spawner: PtySpawner | None = None,
        monitor: ContentMonitor | None = None,
        server: TmuxServer | None = None,
        terminal: Terminal | None = None,
        config: AgateConfig | None = None,
        server_name: str | None = None,
    ) -> None:
        self.config = config or AgateConfig()
        self.display_name = name
        self.program = program
        self.server_name = server_name or sanitize_name(
            name, prefix=self.config.tmux.session_prefix
        )
        self.spawner = spawner or PtyProcessSpawner()
        self.monitor = monitor or StatusMonitor(program)
        self.server = server or TmuxServer(
            self.config.tmux.binary, self.config.tmux.socket_name
        )
        self.terminal = terminal
        self.width = 0
        self.height = 0

        self._master: MasterHandle | None = None
        self._attach: _AttachState | None = None

    @classmethod
    def restore(
        cls, server_name: str, program: str = "", **kwargs: Any
    ) -> TmuxSession:
        """Wrap a session that already exists on the server."""
        return cls(server_name, program, server_name=server_name, **kwargs)

    @property
    def is_attached(self) -> bool:
        return self._attach is not None

    def __repr__(self) -> str:
        state = "attached" if self.is_attached else "idle"
        return f"<TmuxSession {self.server_name} ({state})>"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, workdir: str) -> None:
        """Create the session on the server unless it already exists.

        Raises ``SessionStartError`` (``SessionTimeoutError`` if the
        session never shows up) and leaves nothing behind on failure.
        """
        try:
            exists = await self.server.has_session(self.server_name)
        except TmuxCommandError as e:
            raise SessionStartError(
                f"error checking session existence for {self.server_name}: {e}"
            ) from e

        if not exists:
            await self._create(workdir)

        try:
            await self._ensure_observable()
        except SessionError as e:
            raise SessionStartError(str(e)) from e

    async def _create(self, workdir: str) -> None:
        spec = ProcessSpec(
            argv=self.server.new_session_argv(self.server_name, workdir, self.program),
            cwd=workdir,
        )
        try:
            bootstrap = self.spawner.start(spec)
        except OSError as e:
            await self._discard_partial()
            raise SessionStartError(
                f"error starting tmux session {self.server_name}: {e}"
            ) from e

        try:
            await self._wait_until_live()
        finally:
            try:
                bootstrap.close()
            except OSError as e:
                logger.debug("Failed to close bootstrap PTY for %s: %s", self.server_name, e)
            else:
                await self._reap(bootstrap)

        await self._configure()
        logger.info(
            "tmux session %s created in %s running %r",
            self.server_name,
            workdir,
            self.program,
        )

    async def _wait_until_live(self) -> None:
        cfg = self.config.start
        retrying = AsyncRetrying(
            retry=retry_if_result(lambda live: not live),
            wait=wait_exponential(multiplier=cfg.initial_backoff, max=cfg.max_backoff),
            stop=stop_after_delay(cfg.timeout),
        )
        try:
            await retrying(self._probe)
        except RetryError as e:
            await self._discard_partial()
            raise SessionTimeoutError(
                f"timed out waiting for tmux session {self.server_name}"
            ) from e

    async def _probe(self) -> bool:
        try:
            return await self.server.has_session(self.server_name)
        except TmuxCommandError as e:
            logger.debug("has-session failed for %s: %s", self.server_name, e)
            return False

    async def _discard_partial(self) -> None:
        if not await self._probe():
            return
        try:
            await self.server.kill_session(self.server_name)
        except TmuxCommandError as e:
            logger.debug("Cleanup of %s failed: %s", self.server_name, e)

    async def _configure(self) -> None:
        options = {
            "history-limit": str(self.config.tmux.history_limit),
            "mouse": "on" if self.config.tmux.mouse else "off",
        }
        for option, value in options.items():
            try:
                await self.server.set_option(self.server_name, option, value)
            except TmuxCommandError as e:
                logger.warning("Could not set %s on %s: %s", option, self.server_name, e)

    async def _ensure_observable(self) -> None:
        """Confirm the idle session can still be captured."""
        if not await self.server.has_session(self.server_name):
            raise SessionError(f"tmux session {self.server_name} does not exist")

    async def kill(self) -> None:
        """End any live attach and destroy the session on the server."""
        state = self._attach
        if state is not None and state.trigger is not None:
            # The detach byte already started tearing the attach down
            await asyncio.gather(state.trigger, return_exceptions=True)
            state = self._attach

        if state is not None:
            state.claim()
            state.cancel.set()

        closed: MasterHandle | None = None
        try:
            closed = self._close_master()
        except OSError as e:
            logger.debug("Failed to close PTY while killing %s: %s", self.server_name, e)

        if state is not None:
            await asyncio.gather(*state.workers, return_exceptions=True)
            self._attach = None
            if not state.detached.done():
                state.detached.set_result(None)
        if closed is not None:
            await self._reap(closed)

        await self.server.kill_session(self.server_name)
        logger.info("Killed tmux session %s", self.server_name)

    # ------------------------------------------------------------------
    # Passive observation
    # ------------------------------------------------------------------

    async def exists(self) -> bool:
        return await self.server.has_session(self.server_name)

    async def capture_pane_content(self) -> str:
        return await self.server.capture_pane(self.server_name)

    async def capture_pane_range(self, start: int, end: int) -> str:
        """Capture lines ``start``..``end`` (negative values reach into history)."""
        return await self.server.capture_pane(self.server_name, start=start, end=end)

    def has_updated(self, content: str) -> tuple[bool, bool]:
        """Return ``(changed, looks_idle)`` as judged by the content monitor."""
        return self.monitor.has_updated(content)

    async def is_loading(self) -> bool:
        """True while the pane is blank or cannot be captured."""
        try:
            content = await self.capture_pane_content()
        except TmuxCommandError:
            return True
        return not content.strip()

    async def set_detached_size(self, cols: int, rows: int) -> None:
        if self._master is not None:
            self._resize(self._master, cols, rows)
            return
        self.width, self.height = cols, rows
        await self.server.resize_window(self.server_name, cols, rows)

    def _resize(self, master: MasterHandle, cols: int, rows: int) -> None:
        self.width, self.height = cols, rows
        master.set_size(cols, rows)

    # ------------------------------------------------------------------
    # Input while idle
    # ------------------------------------------------------------------

    async def send_keys(self, keys: str) -> None:
        await self.server.send_keys(self.server_name, keys)

    async def tap_enter(self) -> None:
        await self.send_keys("\r")

    async def scroll_up(self) -> None:
        await self.server.copy_mode(self.server_name)
        await self.server.send_keys(self.server_name, "Up", "Up", "Up", literal=False)

    async def scroll_down(self) -> None:
        # tmux leaves copy mode by itself once scrolled past the bottom
        await self.server.send_keys(
            self.server_name, "Down", "Down", "Down", literal=False
        )

    def attach_command(self) -> list[str]:
        """argv that attaches a terminal directly, bypassing the relays."""
        return self.server.attach_argv(self.server_name)

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    async def attach(self) -> asyncio.Future[None]:
        """Connect the real terminal to the session.

        Returns a future that resolves once the session has been detached
        again, either by the detach byte or by ``detach()``. If detaching
        fails, the future carries the ``DetachInvariantError``.
        """
        if self._attach is not None:
            raise AttachError(f"tmux session {self.server_name} is already attached")

        terminal = self.terminal or Terminal.stdio()
        size = terminal.get_size()
        spec = ProcessSpec(
            argv=self.server.attach_argv(self.server_name),
            cols=size[0] if size else None,
            rows=size[1] if size else None,
        )
        try:
            master = self.spawner.start(spec)
        except OSError as e:
            raise AttachError(
                f"error attaching to tmux session {self.server_name}: {e}"
            ) from e
        self._master = master

        loop = asyncio.get_running_loop()
        state = _AttachState(cancel=asyncio.Event(), detached=loop.create_future())
        state.workers = [
            asyncio.create_task(
                self._relay_output(state, master, terminal),
                name=f"{self.server_name}-output",
            ),
            asyncio.create_task(
                self._relay_input(state, master, terminal),
                name=f"{self.server_name}-input",
            ),
            asyncio.create_task(
                self._relay_resize(state, master, terminal),
                name=f"{self.server_name}-resize",
            ),
        ]
        state.started_at = loop.time()
        self._attach = state

        logger.info("Attached to tmux session %s", self.server_name)
        return state.detached

    async def detach(self) -> None:
        """Detach the live attachment, if any.

        A no-op when nothing is attached or a detach is already under way.
        """
        state = self._attach
        if state is None:
            return
        await self._detach(state)

    async def _detach(self, state: _AttachState) -> None:
        if not state.claim():
            return

        state.cancel.set()
        failure: Exception | None = None
        closed: MasterHandle | None = None
        try:
            closed = self._close_master()
        except OSError as e:
            failure = e

        results = await asyncio.gather(*state.workers, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Attach worker for %s failed: %s", self.server_name, result)
        if closed is not None:
            await self._reap(closed)
        self._attach = None

        if failure is None:
            try:
                await self._ensure_observable()
            except SessionError as e:
                failure = e

        if failure is not None:
            error = DetachInvariantError(
                f"detaching from {self.server_name} left it in an unknown state: {failure}"
            )
            logger.critical("%s", error)
            if not state.detached.done():
                state.detached.set_exception(error)
            raise error from failure

        if not state.detached.done():
            # A caller may have cancelled it, e.g. through wait_for
            state.detached.set_result(None)
        logger.info("Detached from tmux session %s", self.server_name)

    def _close_master(self) -> MasterHandle | None:
        master, self._master = self._master, None
        if master is None:
            return None
        asyncio.get_running_loop().remove_reader(master.fileno())
        master.close()
        return master

    async def _reap(self, master: MasterHandle) -> None:
        """Wait for the PTY child off the event loop."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, master.reap)
        except OSError as e:
            logger.debug("Failed to reap PTY child of %s: %s", self.server_name, e)

    async def _relay_output(
        self, state: _AttachState, master: MasterHandle, terminal: Terminal
    ) -> None:
        """Copy session output to the terminal until cancelled or end of stream.

        If the stream ends first, the user is warned but the attach stays
        live: the future returned by ``attach`` resolves only once the
        detach byte is pressed or ``detach``/``kill`` is called.
        """
        read_size = self.config.attach.read_size
        while True:
            data = await _read_or_cancel(
                master, read_size, state.cancel, release_on_cancel=False
            )
            if not data:
                break
            try:
                terminal.write(data)
            except OSError as e:
                logger.debug("Terminal output for %s closed: %s", self.server_name, e)
                break

        if not state.cancel.is_set():
            logger.warning("tmux session %s ended while attached", self.server_name)
            terminal.warn(
                f"Error: session {self.display_name} terminated without detaching. "
                f"Use {_key_label(self.config.attach.detach_key)} to detach cleanly."
            )

    async def _relay_input(
        self, state: _AttachState, master: MasterHandle, terminal: Terminal
    ) -> None:
        cfg = self.config.attach
        loop = asyncio.get_running_loop()
        detach_byte = bytes([cfg.detach_key])

        while True:
            try:
                data = await _read_or_cancel(terminal, cfg.read_size, state.cancel)
            except OSError as e:
                if e.errno in (errno.EAGAIN, errno.EINTR):
                    continue
                logger.debug("Terminal input for %s failed: %s", self.server_name, e)
                return
            if not data:
                return

            if loop.time() - state.started_at < cfg.grace_period:
                logger.debug("Discarded %d bytes of terminal start-up input", len(data))
                continue

            head, found, _ = data.partition(detach_byte)
            if head:
                self._forward(master, head)
            if found:
                state.trigger = asyncio.create_task(
                    self._detach(state), name=f"{self.server_name}-detach"
                )
                state.trigger.add_done_callback(_consume_result)
                return

    def _forward(self, master: MasterHandle, data: bytes) -> None:
        try:
            master.write(data)
        except OSError as e:
            logger.debug("Dropped %d bytes for %s: %s", len(data), self.server_name, e)

    async def _relay_resize(
        self, state: _AttachState, master: MasterHandle, terminal: Terminal
    ) -> None:
        interval = self.config.attach.resize_interval
        last: tuple[int, int] | None = None
        while not state.cancel.is_set():
            size = terminal.get_size()
            if size is not None and size != last:
                try:
                    self._resize(master, *size)
                    last = size
                except OSError as e:
                    logger.debug("Resize of %s failed: %s", self.server_name, e)
            try:
                await asyncio.wait_for(state.cancel.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
