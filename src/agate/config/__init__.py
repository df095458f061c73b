"""Configuration: Pydantic models for agate settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class TmuxConfig(BaseModel):
    """Terminal server settings."""

    binary: str = Field(default="tmux", description="tmux executable to invoke")
    socket_name: str | None = Field(
        default=None, description="tmux -L socket name; None uses the default server"
    )
    history_limit: int = Field(
        default=10_000, ge=0, description="Scrollback lines kept per session"
    )
    mouse: bool = Field(default=True, description="Enable tmux mouse reporting")
    session_prefix: str = Field(
        default="agate", description="Prefix of every server-side session name"
    )


class AttachConfig(BaseModel):
    """Live attach settings.

    ``grace_period`` is how long input is discarded after attaching. Most
    terminal emulators answer the raw/alternate-screen switch with device
    attribute and colour reports (``ESC[?62c``, ``ESC]10;rgb:...``) that
    would otherwise reach the agent as keystrokes.
    """

    detach_key: int = Field(
        default=0x11, ge=0, le=0xFF, description="Byte that detaches (Ctrl-Q)"
    )
    grace_period: float = Field(default=0.05, ge=0)
    resize_interval: float = Field(default=0.1, gt=0)
    read_size: int = Field(default=1024, gt=0)


class StartConfig(BaseModel):
    """Session creation: liveness polling with exponential backoff."""

    timeout: float = Field(default=2.0, gt=0)
    initial_backoff: float = Field(default=0.005, gt=0)
    max_backoff: float = Field(default=0.05, gt=0)


class AgateConfig(BaseModel):
    """Top-level agate configuration."""

    tmux: TmuxConfig = Field(default_factory=TmuxConfig)
    attach: AttachConfig = Field(default_factory=AttachConfig)
    start: StartConfig = Field(default_factory=StartConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> AgateConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            AGATE_TMUX            - tmux executable
            AGATE_TMUX_SOCKET     - tmux socket name (-L)
            AGATE_HISTORY_LIMIT   - Scrollback lines per session
            AGATE_MOUSE           - "1"/"true"/"on" to enable mouse reporting
            AGATE_DETACH_KEY      - Detach byte, decimal or 0x-prefixed
            AGATE_START_TIMEOUT   - Seconds to wait for a new session
        """
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        tmux = config_data.get("tmux", {})
        attach = config_data.get("attach", {})
        start = config_data.get("start", {})

        env_tmux = os.environ.get("AGATE_TMUX")
        if env_tmux:
            tmux["binary"] = env_tmux

        env_socket = os.environ.get("AGATE_TMUX_SOCKET")
        if env_socket:
            tmux["socket_name"] = env_socket

        env_history = os.environ.get("AGATE_HISTORY_LIMIT")
        if env_history:
            tmux["history_limit"] = int(env_history)

        env_mouse = os.environ.get("AGATE_MOUSE")
        if env_mouse:
            tmux["mouse"] = env_mouse.strip().lower() in ("1", "true", "yes", "on")

        env_detach_key = os.environ.get("AGATE_DETACH_KEY")
        if env_detach_key:
            attach["detach_key"] = int(env_detach_key, 0)

        env_start_timeout = os.environ.get("AGATE_START_TIMEOUT")
        if env_start_timeout:
            start["timeout"] = float(env_start_timeout)

        if tmux:
            config_data["tmux"] = tmux
        if attach:
            config_data["attach"] = attach
        if start:
            config_data["start"] = start

        return cls.model_validate(config_data)
