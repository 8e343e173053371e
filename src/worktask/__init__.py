"""worktask: run dependent agent tasks in git worktrees and tmux windows."""

__version__ = "0.3.0"
