"""Server-side session names."""

from __future__ import annotations

import re
import time

MAX_NAME_LEN = 80

# tmux rewrites '.' and ':' in session names, so neither may survive here.
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_name(
    display_name: str, prefix: str = "agate", now: float | None = None
) -> str:
    """Turn a human label into a tmux session name.

    ``"my agent/v2"`` created at unix time 1700000000 becomes
    ``"agate_my_agent_v2_1700000000"``. The timestamp has one-second
    resolution.
    """
    original = display_name.strip() or "default"
    sanitized = _UNSAFE_CHARS.sub("_", original).strip("_-")
    if not sanitized:
        sanitized = "session"
    sanitized = sanitized[:MAX_NAME_LEN]

    stamp = int(time.time() if now is None else now)
    return f"{prefix}_{sanitized}_{stamp}"
