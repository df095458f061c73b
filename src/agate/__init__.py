"""agate: drive command-line AI agents inside persistent tmux sessions."""

__version__ = "0.1.0"
