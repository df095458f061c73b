"""Tests for agate.tmux.naming.sanitize_name."""

from __future__ import annotations

import re

from agate.tmux.naming import MAX_NAME_LEN, sanitize_name

NOW = 1_700_000_000


class TestSanitizeName:
    def test_simple_name(self) -> None:
        assert sanitize_name("claude", now=NOW) == "agate_claude_1700000000"

    def test_unsafe_characters_replaced(self) -> None:
        assert sanitize_name("my repo/feat:x.y", now=NOW) == "agate_my_repo_feat_x_y_1700000000"

    def test_surrounding_separators_trimmed(self) -> None:
        assert sanitize_name("  --agent--  ", now=NOW) == "agate_agent_1700000000"

    def test_blank_name(self) -> None:
        assert sanitize_name("   ", now=NOW) == "agate_default_1700000000"

    def test_only_symbols(self) -> None:
        assert sanitize_name("///", now=NOW) == "agate_session_1700000000"

    def test_long_name_truncated(self) -> None:
        name = sanitize_name("a" * 200, now=NOW)
        assert name == f"agate_{'a' * MAX_NAME_LEN}_1700000000"

    def test_custom_prefix(self) -> None:
        assert sanitize_name("codex", prefix="dev", now=NOW) == "dev_codex_1700000000"

    def test_fractional_timestamp_truncated(self) -> None:
        assert sanitize_name("x", now=NOW + 0.9).endswith("_1700000000")

    def test_uses_current_time(self) -> None:
        assert re.fullmatch(r"agate_claude_\d{10,}", sanitize_name("claude"))

    def test_result_is_tmux_safe(self) -> None:
        name = sanitize_name("ünïcødé agent: v1.2", now=NOW)
        assert re.fullmatch(r"[A-Za-z0-9_-]+", name)
