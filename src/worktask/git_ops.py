"""Git operations: worktrees, task branches, diff statistics."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from worktask import log
from worktask.config import BRANCH_PREFIX
from worktask.process import ProcessResult, ProcessRunner


def _git(runner: ProcessRunner, *args: str, cwd: Path | None = None) -> ProcessResult:
    return runner.run("git", list(args), cwd=cwd)


def branch_name(task: str, session_id: str | None = None) -> str:
    """``wt/<task>`` or, with a session id, ``wt/<task>-<first 8 chars>``."""
    if session_id:
        return f"{BRANCH_PREFIX}{task}-{session_id[:8]}"
    return f"{BRANCH_PREFIX}{task}"


def branch_pattern(task: str) -> re.Pattern[str]:
    """Branches owned by *task*: ``wt/<task>`` and ``wt/<task>-<8 hex>``."""
    return re.compile(rf"^{re.escape(BRANCH_PREFIX + task)}(-[0-9a-f]{{8}})?$")


def branch_exists(runner: ProcessRunner, name: str, cwd: Path | None = None) -> bool:
    r = _git(runner, "show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=cwd)
    return r.ok


def list_branches(runner: ProcessRunner, pattern: str, cwd: Path | None = None) -> list[str]:
    r = _git(runner, "for-each-ref", "--format=%(refname:short)", f"refs/heads/{pattern}", cwd=cwd)
    if not r.ok:
        return []
    return [line.strip() for line in r.stdout.splitlines() if line.strip()]


def find_task_branches(runner: ProcessRunner, task: str, cwd: Path | None = None) -> list[str]:
    """Every local branch that belongs to *task*."""
    pattern = branch_pattern(task)
    candidates = list_branches(runner, f"{BRANCH_PREFIX}{task}", cwd=cwd)
    candidates += list_branches(runner, f"{BRANCH_PREFIX}{task}-*", cwd=cwd)
    return sorted({b for b in candidates if pattern.match(b)})


def delete_branch(runner: ProcessRunner, name: str, cwd: Path | None = None) -> None:
    runner.check("git", ["branch", "-D", name], cwd=cwd)


def worktree_add(runner: ProcessRunner, path: Path, branch: str, cwd: Path | None = None) -> None:
    """Create a worktree at *path* on a new branch *branch* from HEAD."""
    path.parent.mkdir(parents=True, exist_ok=True)
    runner.check("git", ["worktree", "add", "-b", branch, str(path)], cwd=cwd)
    log.debug(f"Created worktree {path} on {branch}")


def worktree_remove(runner: ProcessRunner, path: Path, cwd: Path | None = None) -> None:
    runner.check("git", ["worktree", "remove", "--force", str(path)], cwd=cwd)


def worktree_prune(runner: ProcessRunner, cwd: Path | None = None) -> None:
    _git(runner, "worktree", "prune", cwd=cwd)


# ── Progress statistics (best effort, zero on failure) ───────────────


@dataclass
class DiffStats:
    additions: int = 0
    deletions: int = 0
    commits: int = 0


def resolve_base_branch(runner: ProcessRunner, preferred: str = "", cwd: Path | None = None) -> str:
    """The branch task work is compared against: *preferred*, else main, else master."""
    if preferred:
        return preferred
    for candidate in ("main", "master"):
        if branch_exists(runner, candidate, cwd=cwd):
            return candidate
    return "HEAD"


def merge_base(runner: ProcessRunner, base: str, cwd: Path | None = None) -> str | None:
    r = _git(runner, "merge-base", base, "HEAD", cwd=cwd)
    return r.stdout.strip() if r.ok and r.stdout.strip() else None


def parse_numstat(output: str) -> tuple[int, int]:
    """Sum ``git diff --numstat`` output. Binary files (``-``) count as zero."""
    additions = deletions = 0
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        if parts[0].isdigit():
            additions += int(parts[0])
        if parts[1].isdigit():
            deletions += int(parts[1])
    return additions, deletions


def commit_count(runner: ProcessRunner, base: str, cwd: Path | None = None) -> int:
    r = _git(runner, "rev-list", "--count", f"{base}..HEAD", cwd=cwd)
    if not r.ok:
        return 0
    try:
        return int(r.stdout.strip())
    except ValueError:
        return 0


def diff_stats(runner: ProcessRunner, worktree: Path, base_branch: str = "") -> DiffStats:
    """Lines added/removed in *worktree* (including uncommitted work) and commits since base."""
    base = resolve_base_branch(runner, base_branch, cwd=worktree)
    fork_point = merge_base(runner, base, cwd=worktree)
    if fork_point is None:
        return DiffStats()
    r = _git(runner, "diff", "--numstat", fork_point, cwd=worktree)
    additions, deletions = parse_numstat(r.stdout) if r.ok else (0, 0)
    return DiffStats(additions, deletions, commit_count(runner, fork_point, cwd=worktree))


def last_commit_time(runner: ProcessRunner, cwd: Path) -> int | None:
    """Unix timestamp of HEAD's commit, or ``None``."""
    r = _git(runner, "log", "-1", "--format=%ct", cwd=cwd)
    try:
        return int(r.stdout.strip()) if r.ok else None
    except ValueError:
        return None
