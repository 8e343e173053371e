"""Allow ``python -m worktask``."""

from worktask.cli import main

main()
