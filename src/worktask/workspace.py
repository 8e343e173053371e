"""Prepare and preserve worktree contents: copied files, hook scripts, backups."""

from __future__ import annotations

import shutil
from datetime import datetime
from pathlib import Path

from worktask import log
from worktask.io_utils import copy_tree
from worktask.process import ProcessRunner


def copy_files(source_dir: Path, worktree: Path, files: list[str]) -> list[str]:
    """Copy each relative path in *files* from *source_dir* into *worktree*.

    Missing sources are skipped. Directories are copied recursively.
    Returns the entries actually copied.
    """
    copied: list[str] = []
    for rel in files:
        src = source_dir / rel
        dest = worktree / rel
        if not src.exists():
            log.debug(f"copy_files: {rel} not found, skipping")
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        if src.is_dir():
            shutil.copytree(src, dest, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dest)
        copied.append(rel)
    return copied


def run_script(runner: ProcessRunner, script: str, cwd: Path) -> None:
    """Run a configured hook with ``bash -c`` inside *cwd*; raise on failure."""
    runner.check("bash", ["-c", script], cwd=cwd)


def backup_name(task: str, now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{task}-{stamp}"


def backup_worktree(worktree: Path, backups_dir: Path, task: str, now: datetime | None = None) -> Path:
    """Copy *worktree* (minus ``.git``) to ``backups_dir/<task>-<timestamp>``.

    A numeric suffix is appended when the target already exists. Raises
    ``OSError`` when the copy fails.
    """
    backups_dir.mkdir(parents=True, exist_ok=True)
    base = backup_name(task, now)
    dest = backups_dir / base
    n = 1
    while dest.exists():
        dest = backups_dir / f"{base}-{n}"
        n += 1
    copy_tree(worktree, dest)
    return dest
