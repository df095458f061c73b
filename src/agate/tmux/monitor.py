"""Pane content monitoring: change detection and idle-prompt heuristics."""

from __future__ import annotations

import hashlib
import os
import re
import shlex
from typing import Protocol, runtime_checkable

_ANSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")

# Text each agent shows when it is blocked waiting on the user
_IDLE_MARKERS: dict[str, str | None] = {
    "claude": "No, and tell Claude what to do differently",
    "aider": "(Y)es/(N)o/(D)on't ask again",
    "codex": None,
}

_SHELL_PROMPT_SUFFIXES = (">", "$", ":")


def strip_ansi(text: str) -> str:
    """Strip CSI and OSC escape sequences from text."""
    return _ANSI_RE.sub("", text)


@runtime_checkable
class ContentMonitor(Protocol):
    def has_updated(self, content: str) -> tuple[bool, bool]:
        """Return ``(changed, looks_idle)`` for freshly captured pane text."""
        ...


def _program_key(program: str) -> str:
    try:
        parts = shlex.split(program)
    except ValueError:
        parts = program.split()
    return os.path.basename(parts[0]) if parts else ""


class StatusMonitor:
    """Default content monitor.

    Change detection compares SHA-256 digests of consecutive captures, so
    the first capture always counts as a change. Idle detection looks
    for an agent-specific confirmation prompt, or for a trailing shell
    prompt character for programs it does not know.
    """

    def __init__(self, program: str) -> None:
        self.program = program
        self._key = _program_key(program)
        self._last_digest: bytes | None = None

    def has_updated(self, content: str) -> tuple[bool, bool]:
        looks_idle = self._looks_idle(content)
        digest = hashlib.sha256(content.encode("utf-8", errors="replace")).digest()
        changed = digest != self._last_digest
        self._last_digest = digest
        return changed, looks_idle

    def _looks_idle(self, content: str) -> bool:
        if self._key in _IDLE_MARKERS:
            marker = _IDLE_MARKERS[self._key]
            return marker is not None and marker in content
        return strip_ansi(content).rstrip().endswith(_SHELL_PROMPT_SUFFIXES)
