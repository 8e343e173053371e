"""External process execution behind a small replaceable interface.

All git, tmux and hook-script invocations go through a
:class:`ProcessRunner`, so lifecycle code can be exercised with a fake.
"""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from worktask import log
from worktask.errors import CommandFailed


@dataclass
class ProcessResult:
    """Captured outcome of one external command."""

    stdout: str = ""
    stderr: str = ""
    returncode: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessRunner(ABC):
    """Run an external program and capture its output."""

    @abstractmethod
    def run(self, program: str, args: list[str], cwd: Path | None = None) -> ProcessResult:
        ...

    def check(self, program: str, args: list[str], cwd: Path | None = None) -> ProcessResult:
        """Like :meth:`run` but raise :class:`CommandFailed` on a non-zero exit."""
        result = self.run(program, args, cwd=cwd)
        if not result.ok:
            raise CommandFailed(program, args, result.stderr, result.returncode)
        return result

    def run_interactive(self, program: str, args: list[str], cwd: Path | None = None) -> int:
        """Run attached to the operator's terminal; return the exit code."""
        return self.run(program, args, cwd=cwd).returncode


class SubprocessRunner(ProcessRunner):
    """Production runner backed by :func:`subprocess.run`."""

    def run(self, program: str, args: list[str], cwd: Path | None = None) -> ProcessResult:
        log.debug(f"$ {program} {' '.join(args)}" + (f"  (in {cwd})" if cwd else ""))
        try:
            proc = subprocess.run(
                [program, *args],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
            )
        except FileNotFoundError:
            return ProcessResult(stderr=f"{program}: command not found", returncode=127)
        return ProcessResult(stdout=proc.stdout, stderr=proc.stderr, returncode=proc.returncode)

    def run_interactive(self, program: str, args: list[str], cwd: Path | None = None) -> int:
        log.debug(f"$ {program} {' '.join(args)}")
        try:
            return subprocess.run([program, *args], cwd=cwd).returncode
        except FileNotFoundError:
            return 127
