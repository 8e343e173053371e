"""Exception hierarchy for task and lifecycle operations.

Everything raised on purpose derives from :class:`WtError`; the CLI
catches that base, prints the message and exits non-zero.
"""

from __future__ import annotations


class WtError(Exception):
    """Base class for every error the ``wt`` command reports to the user."""


# ── Validation (bad input or wrong state; nothing was changed) ─────


class ValidationError(WtError):
    pass


class InvalidTaskName(ValidationError):
    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Invalid task name '{name}': {reason}")
        self.name = name
        self.reason = reason


class InvalidTaskFile(ValidationError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Invalid task file {path}: {reason}")
        self.path = path
        self.reason = reason


class TaskNotFound(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Task '{name}' not found")
        self.name = name


class TaskExists(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Task '{name}' already exists")
        self.name = name


class DependencyNotFound(ValidationError):
    def __init__(self, task: str, dependency: str) -> None:
        super().__init__(f"Task '{task}' depends on '{dependency}' which doesn't exist")
        self.task = task
        self.dependency = dependency


class DependencyNotMerged(ValidationError):
    def __init__(self, task: str, dependency: str, status: str) -> None:
        super().__init__(
            f"Cannot start task '{task}': dependency '{dependency}' is not merged "
            f"(currently {status})"
        )
        self.task = task
        self.dependency = dependency
        self.status = status


class AlreadyRunning(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Task '{name}' is already running")
        self.name = name


class InvalidStateTransition(ValidationError):
    def __init__(self, name: str, current: str, target: str) -> None:
        super().__init__(
            f"Invalid state transition: cannot change task '{name}' from {current} to {target}"
        )
        self.name = name
        self.current = current
        self.target = target


class HasDependents(ValidationError):
    def __init__(self, name: str, dependent: str, status: str) -> None:
        super().__init__(
            f"Cannot reset '{name}': task '{dependent}' depends on it and is {status}"
        )
        self.name = name
        self.dependent = dependent
        self.status = status


class ScratchNotAllowed(ValidationError):
    def __init__(self, name: str, operation: str) -> None:
        super().__init__(
            f"Scratch task '{name}' cannot be marked {operation}. "
            f"Use `wt archive {name}` to discard it."
        )
        self.name = name
        self.operation = operation


class TaskNotStarted(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Task '{name}' has no running instance")
        self.name = name


class TaskNotActive(ValidationError):
    def __init__(self, name: str, status: str, action: str) -> None:
        super().__init__(f"Task '{name}' is {status} (need running or done to {action})")
        self.name = name
        self.status = status
        self.action = action


class StillRunning(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(
            f"Task '{name}' is still running in its tmux window. "
            f"Use `wt enter {name}` to watch it, or `wt done {name}` first."
        )
        self.name = name


class WorktreeNotFound(ValidationError):
    def __init__(self, name: str, path: str) -> None:
        super().__init__(f"Worktree of task '{name}' is missing: {path}")
        self.name = name
        self.path = path


class TranscriptNotFound(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"No transcript found for '{name}'")
        self.name = name


class SessionNotFound(ValidationError):
    def __init__(self, session: str) -> None:
        super().__init__(f"tmux session '{session}' not found. Task may have been stopped.")
        self.session = session


# ── Conflicts with resources that already exist on the host ────────


class ConflictError(WtError):
    pass


class BranchExists(ConflictError):
    def __init__(self, branch: str) -> None:
        super().__init__(
            f"Branch '{branch}' already exists.\n"
            f"Hint: Run `git branch -D {branch}` to delete it, or `wt reset` the task."
        )
        self.branch = branch


class WorktreeExists(ConflictError):
    def __init__(self, path: str) -> None:
        super().__init__(
            f"Worktree path '{path}' already exists.\n"
            f"Hint: `wt reset` the task to reclaim it."
        )
        self.path = path


class NameInUse(ConflictError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Name '{name}' is already used by another task")
        self.name = name


# ── Infrastructure ─────────────────────────────────────────────────


class CommandFailed(WtError):
    def __init__(self, program: str, args: list[str], stderr: str, returncode: int = 1) -> None:
        cmd = " ".join([program, *args])
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"`{cmd}` failed: {detail}")
        self.program = program
        self.args_list = list(args)
        self.stderr = stderr
        self.returncode = returncode


class StateFileError(WtError):
    pass


class ConfigError(WtError):
    pass


class BackupFailed(WtError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Could not back up {path}: {reason}. Nothing was removed.")
        self.path = path
        self.reason = reason
