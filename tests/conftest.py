"""Shared fixtures for worktask tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use worktask.io_utils read_text/write_text for consistent UTF-8 I/O.

Lifecycle tests run against FakeRunner, which simulates the subset of git
and tmux the orchestrator drives. Tests that need real git use git_repo.
"""

from __future__ import annotations

import fnmatch
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from worktask.config import Config, Paths, init_project
from worktask.io_utils import write_text
from worktask.lifecycle import Orchestrator
from worktask.process import ProcessResult, ProcessRunner
from worktask.state import MemoryStatusStore
from worktask.tasks.io import format_task_markdown


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo for testing."""
    subprocess.run(["git", "init", "-b", "main"], cwd=tmp_path, capture_output=True, check=True)
    subprocess.run(
        ["git", "config", "user.name", "Test"], cwd=tmp_path, capture_output=True
    )
    subprocess.run(
        ["git", "config", "user.email", "test@test"], cwd=tmp_path, capture_output=True
    )
    write_text(tmp_path / "README.md", "# Test")
    subprocess.run(["git", "add", "README.md"], cwd=tmp_path, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial"], cwd=tmp_path, capture_output=True
    )
    return tmp_path


# ── Fake process runner ─────────────────────────────────────────────


class FakeRunner(ProcessRunner):
    """In-memory stand-in for git, tmux and bash.

    ``calls`` records every invocation as ``(program, args, cwd)``.
    ``fail_on(program, *prefix)`` makes matching invocations exit 1.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str], Path | None]] = []
        self.branches: set[str] = set()
        self.windows: dict[str, dict[str, str]] = {}
        self._next_window_id = 1
        self.attached: list[list[str]] = []
        self.sent_keys: list[tuple[str, str]] = []
        self.scripts: list[tuple[str, Path | None]] = []
        self._failures: list[tuple[str, tuple[str, ...], str]] = []

    def fail_on(self, program: str, *prefix: str, stderr: str = "boom") -> None:
        self._failures.append((program, prefix, stderr))

    def commands(self, program: str) -> list[list[str]]:
        return [args for prog, args, _ in self.calls if prog == program]

    def run(self, program: str, args: list[str], cwd: Path | None = None) -> ProcessResult:
        self.calls.append((program, list(args), cwd))
        for prog, prefix, stderr in self._failures:
            if prog == program and tuple(args[: len(prefix)]) == prefix:
                return ProcessResult(stderr=stderr, returncode=1)
        handler = {"git": self._git, "tmux": self._tmux, "bash": self._bash}.get(program)
        if handler is None:
            return ProcessResult(stderr=f"{program}: command not found", returncode=127)
        return handler(args, cwd)

    # git ------------------------------------------------------------

    def _git(self, args: list[str], cwd: Path | None) -> ProcessResult:
        match args:
            case ["worktree", "add", "-b", branch, path]:
                if branch in self.branches:
                    return ProcessResult(stderr=f"branch '{branch}' exists", returncode=128)
                Path(path).mkdir(parents=True)
                self.branches.add(branch)
                return ProcessResult()
            case ["worktree", "remove", "--force", path]:
                if not Path(path).exists():
                    return ProcessResult(stderr="not a working tree", returncode=128)
                shutil.rmtree(path)
                return ProcessResult()
            case ["worktree", "prune"]:
                return ProcessResult()
            case ["show-ref", "--verify", "--quiet", ref]:
                name = ref.removeprefix("refs/heads/")
                return ProcessResult(returncode=0 if name in self.branches else 1)
            case ["for-each-ref", _, ref]:
                pattern = ref.removeprefix("refs/heads/")
                hits = sorted(b for b in self.branches if fnmatch.fnmatchcase(b, pattern))
                return ProcessResult(stdout="".join(f"{b}\n" for b in hits))
            case ["branch", "-D", name]:
                if name not in self.branches:
                    return ProcessResult(stderr=f"branch '{name}' not found", returncode=1)
                self.branches.discard(name)
                return ProcessResult()
            case _:
                return ProcessResult(stderr="unsupported in FakeRunner", returncode=1)

    # tmux -----------------------------------------------------------

    @property
    def sessions(self) -> dict[str, list[str]]:
        """Window names per session, in creation order."""
        return {s: list(windows.values()) for s, windows in self.windows.items()}

    def _resolve_window(self, target: str) -> tuple[str, str] | None:
        session, _, window_id = target.partition(":")
        if window_id in self.windows.get(session, {}):
            return session, window_id
        return None

    def _tmux(self, args: list[str], cwd: Path | None) -> ProcessResult:
        match args:
            case ["has-session", "-t", session]:
                return ProcessResult(returncode=0 if session in self.windows else 1)
            case ["new-session", "-d", "-s", session, "-c", _]:
                self.windows.setdefault(session, {})
                return ProcessResult()
            case ["new-window", "-d", "-P", "-F", _, "-t", session, "-n", window, "-c", _]:
                if session not in self.windows:
                    return ProcessResult(stderr="no such session", returncode=1)
                window_id = f"@{self._next_window_id}"
                self._next_window_id += 1
                self.windows[session][window_id] = window
                return ProcessResult(stdout=f"{window_id}\n")
            case ["list-windows", "-t", session, "-F", _]:
                if session not in self.windows:
                    return ProcessResult(stderr="no such session", returncode=1)
                return ProcessResult(stdout="".join(
                    f"{wid}\t{name}\n" for wid, name in self.windows[session].items()
                ))
            case ["send-keys", "-t", target, "-l", keys]:
                if self._resolve_window(target) is None:
                    return ProcessResult(stderr="can't find window", returncode=1)
                self.sent_keys.append((target, keys))
                return ProcessResult()
            case ["send-keys", "-t", _, "Enter"]:
                return ProcessResult()
            case ["kill-window", "-t", target]:
                found = self._resolve_window(target)
                if found is None:
                    return ProcessResult(stderr="can't find window", returncode=1)
                session, window_id = found
                del self.windows[session][window_id]
                return ProcessResult()
            case ["attach-session" | "switch-client", "-t", target]:
                session = target.partition(":")[0]
                return ProcessResult(returncode=0 if session in self.windows else 1)
            case ["kill-session", "-t", session]:
                if self.windows.pop(session, None) is None:
                    return ProcessResult(stderr="no such session", returncode=1)
                return ProcessResult()
            case _:
                return ProcessResult(stderr="unsupported in FakeRunner", returncode=1)

    def run_interactive(self, program: str, args: list[str], cwd: Path | None = None) -> int:
        self.attached.append([program, *args])
        return self.run(program, args, cwd=cwd).returncode

    def close_window(self, session: str, window: str) -> None:
        """Simulate the agent exiting and tmux closing its window."""
        windows = self.windows[session]
        window_id = next(wid for wid, name in windows.items() if name == window)
        del windows[window_id]

    # bash -----------------------------------------------------------

    def _bash(self, args: list[str], cwd: Path | None) -> ProcessResult:
        self.scripts.append((args[-1], cwd))
        return ProcessResult()


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


# ── Project fixture ─────────────────────────────────────────────────


@dataclass
class Project:
    paths: Paths
    config: Config
    runner: FakeRunner
    store: MemoryStatusStore = field(default_factory=MemoryStatusStore)

    @property
    def root(self) -> Path:
        return self.paths.root

    def add_task(self, name: str, depends: list[str] | None = None, description: str = "") -> Path:
        path = self.paths.task_file(name)
        write_text(path, format_task_markdown(name, depends or [], description or f"Task {name}"))
        return path

    def orchestrator(self) -> Orchestrator:
        """Fresh orchestrator over the current task files."""
        return Orchestrator(self.config, self.paths, self.store, self.runner)


@pytest.fixture
def project(tmp_path: Path, fake_runner: FakeRunner) -> Project:
    paths = Paths(tmp_path)
    config = Config(tmux_session="test-wt")
    init_project(paths, config)
    return Project(paths=paths, config=config, runner=fake_runner)
