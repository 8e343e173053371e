"""Task lifecycle: state transitions tied to worktrees, branches and tmux windows.

Guards run before anything is touched and raise a :class:`WtError`.
Resource teardown after a guard is best effort: each step runs in order,
a failing step becomes a warning on the result, and the state update
still happens. A Start interrupted half-way is not rolled back; ``reset``
finds the leftovers by naming convention and reclaims them.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from rich.markup import escape

from worktask import git_ops, log, scheduler, tmux, workspace
from worktask.config import Config, Paths, load_config
from worktask.errors import (
    AlreadyRunning,
    BackupFailed,
    BranchExists,
    CommandFailed,
    DependencyNotFound,
    DependencyNotMerged,
    HasDependents,
    InvalidStateTransition,
    NameInUse,
    ScratchNotAllowed,
    SessionNotFound,
    TaskExists,
    TaskNotActive,
    TaskNotFound,
    TaskNotStarted,
    WorktreeExists,
    WtError,
)
from worktask.process import ProcessRunner, SubprocessRunner
from worktask.state import JsonStatusStore, StatusStore
from worktask.tasks.io import load_catalog, validate_task_name
from worktask.tasks.model import ResourceInstance, TaskCatalog, TaskStatus


@dataclass
class CleanupStep:
    description: str
    action: Callable[[], None]


@dataclass
class TransitionResult:
    name: str
    before: TaskStatus
    after: TaskStatus | None
    warnings: list[str] = field(default_factory=list)
    instance: ResourceInstance | None = None
    backup: Path | None = None
    message: str = ""

    @property
    def removed(self) -> bool:
        """True when a scratch entry was deleted rather than moved to a status."""
        return self.after is None


@dataclass
class BatchStartResult:
    started: list[TransitionResult] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)


def run_steps(steps: list[CleanupStep]) -> list[str]:
    """Run every step in order; return a warning for each one that failed."""
    warnings: list[str] = []
    for step in steps:
        try:
            step.action()
        except (WtError, OSError) as e:
            msg = f"{step.description} failed: {e}"
            log.warn(escape(msg))
            warnings.append(msg)
        else:
            log.debug(f"{step.description}: ok")
    return warnings


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class Orchestrator:
    """Apply lifecycle operations to one project.

    The store is mutated in memory and saved once per operation.
    """

    def __init__(
        self,
        config: Config,
        paths: Paths,
        store: StatusStore,
        runner: ProcessRunner,
        catalog: TaskCatalog | None = None,
    ) -> None:
        self.config = config
        self.paths = paths
        self.store = store
        self.runner = runner
        self.catalog = catalog if catalog is not None else load_catalog(paths.tasks_dir)

    @property
    def root(self) -> Path:
        return self.paths.root

    def listed_names(self) -> list[str]:
        """Names in display order; list indices refer to this order."""
        return self.catalog.names()

    def resolve(self, ref: str) -> str:
        return self.store.resolve_ref(ref, self.listed_names())

    # ── guards ───────────────────────────────────────────────────

    def _require_defined(self, name: str):
        task = self.catalog.get(name)
        if task is None:
            raise TaskNotFound(name)
        return task

    def _require_known(self, name: str) -> None:
        """Defined tasks and scratch entries are addressable; orphans are not."""
        if name in self.catalog or self.store.is_scratch(name):
            return
        raise TaskNotFound(name)

    def _forbid_scratch(self, name: str, operation: str) -> None:
        if self.store.is_scratch(name):
            raise ScratchNotAllowed(name, operation)

    def _check_branch_free(self, name: str) -> None:
        existing = git_ops.find_task_branches(self.runner, name, cwd=self.root)
        if existing:
            raise BranchExists(existing[0])

    def _check_worktree_free(self, path: Path) -> None:
        if path.exists():
            raise WorktreeExists(str(path))

    # ── teardown steps ───────────────────────────────────────────

    def _window_of(
        self, name: str, instance: ResourceInstance | None
    ) -> tuple[str, str, str | None]:
        """``(session, window name, window id)``; orphans are looked up by name."""
        if instance is not None:
            return instance.tmux_session, instance.tmux_window, instance.tmux_window_id
        return self.config.tmux_session, name, None

    def _close_window_step(self, name: str, instance: ResourceInstance | None) -> CleanupStep:
        session, window, window_id = self._window_of(name, instance)
        return CleanupStep(
            f"Close tmux window {session}:{window}",
            lambda: tmux.kill_window_if_exists(self.runner, session, window, window_id),
        )

    def _archive_script_step(self, worktree: Path) -> CleanupStep | None:
        script = self.config.archive_script
        if not script or not worktree.exists():
            return None
        return CleanupStep(
            "Archive script",
            lambda: workspace.run_script(self.runner, script, worktree),
        )

    def _remove_worktree_steps(self, worktree: Path) -> list[CleanupStep]:
        if not worktree.exists():
            return []

        def remove() -> None:
            git_ops.worktree_remove(self.runner, worktree, cwd=self.root)
            git_ops.worktree_prune(self.runner, cwd=self.root)

        return [CleanupStep(f"Remove worktree {worktree}", remove)]

    def _delete_branch_steps(self, branches: list[str]) -> list[CleanupStep]:
        return [
            CleanupStep(
                f"Delete branch {branch}",
                lambda b=branch: git_ops.delete_branch(self.runner, b, cwd=self.root),
            )
            for branch in branches
        ]

    def _instance_branches(self, instance: ResourceInstance) -> list[str]:
        if git_ops.branch_exists(self.runner, instance.branch, cwd=self.root):
            return [instance.branch]
        return []

    def _release_steps(self, name: str, instance: ResourceInstance | None) -> list[CleanupStep]:
        """Close window, remove worktree, delete branch(es)."""
        if instance is not None:
            worktree = Path(instance.worktree_path)
            branches = self._instance_branches(instance)
        else:
            worktree = self.paths.worktree_path(self.config, name)
            branches = git_ops.find_task_branches(self.runner, name, cwd=self.root)
        steps = [self._close_window_step(name, instance)]
        steps += self._remove_worktree_steps(worktree)
        steps += self._delete_branch_steps(branches)
        return steps

    # ── operations ───────────────────────────────────────────────

    def start(self, name: str) -> TransitionResult:
        """Create the task's worktree, branch and tmux window and launch the agent."""
        task = self._require_defined(name)
        before = self.store.get_status(name)
        if before == TaskStatus.RUNNING:
            raise AlreadyRunning(name)
        if not before.can_transition_to(TaskStatus.RUNNING):
            raise InvalidStateTransition(name, before.value, TaskStatus.RUNNING.value)
        for dep in task.unique_depends():
            if dep not in self.catalog:
                raise DependencyNotFound(name, dep)
        blocking = scheduler.blocking_dependency(self.catalog, self.store, name)
        if blocking is not None:
            raise DependencyNotMerged(name, blocking, self.store.get_status(blocking).value)
        self._check_branch_free(name)
        worktree = self.paths.worktree_path(self.config, name)
        self._check_worktree_free(worktree)

        session_id = str(uuid.uuid4())
        branch = git_ops.branch_name(name, session_id)

        git_ops.worktree_add(self.runner, worktree, branch, cwd=self.root)
        for rel in workspace.copy_files(self.root, worktree, self.config.copy_files):
            log.info(f"  Copied {rel}")
        if self.config.init_script:
            log.info("  Running init script...")
            workspace.run_script(self.runner, self.config.init_script, worktree)

        session = self.config.tmux_session
        tmux.ensure_session(self.runner, session, self.root)
        command = self.config.agent_launch_command(
            name, str(self.paths.task_file(name)), session_id
        )
        window_id = tmux.create_window(self.runner, session, name, worktree, command)

        instance = ResourceInstance(
            branch=branch,
            worktree_path=str(worktree),
            tmux_session=session,
            tmux_window=name,
            session_id=session_id,
            started_at=_now_iso(),
            tmux_window_id=window_id,
        )
        self.store.set_status(name, TaskStatus.RUNNING)
        self.store.set_instance(name, instance)
        self.store.save()
        return TransitionResult(name, before, TaskStatus.RUNNING, instance=instance)

    def start_ready(self) -> BatchStartResult:
        """Start every ready task in name order, continuing past failures."""
        batch = BatchStartResult()
        for name in scheduler.readiness(self.catalog, self.store).ready:
            try:
                batch.started.append(self.start(name))
            except WtError as e:
                log.error(escape(f"{name}: {e}"))
                batch.failed.append((name, str(e)))
        return batch

    def done(self, name: str) -> TransitionResult:
        self._forbid_scratch(name, "done")
        self._require_defined(name)
        before = self.store.get_status(name)
        if not before.can_transition_to(TaskStatus.DONE):
            raise InvalidStateTransition(name, before.value, TaskStatus.DONE.value)

        instance = self.store.get_instance(name)
        warnings = run_steps([self._close_window_step(name, instance)])
        self.store.set_status(name, TaskStatus.DONE)
        self.store.save()
        return TransitionResult(name, before, TaskStatus.DONE, warnings, instance=instance)

    def merged(self, name: str) -> TransitionResult:
        """Mark merged and close the window; worktree and branch stay for review."""
        self._forbid_scratch(name, "merged")
        self._require_defined(name)
        before = self.store.get_status(name)
        warnings: list[str] = []
        if before not in (TaskStatus.RUNNING, TaskStatus.DONE):
            msg = f"Task '{name}' is {before.value}, expected running or done"
            log.warn(escape(msg))
            warnings.append(msg)

        instance = self.store.get_instance(name)
        warnings += run_steps([self._close_window_step(name, instance)])
        self.store.set_status(name, TaskStatus.MERGED)
        self.store.save()
        return TransitionResult(name, before, TaskStatus.MERGED, warnings, instance=instance)

    def archive(self, name: str) -> TransitionResult:
        """Release all resources of a merged task (or any scratch task)."""
        self._require_known(name)
        scratch = self.store.is_scratch(name)
        before = self.store.get_status(name)
        if not scratch and not before.can_transition_to(TaskStatus.ARCHIVED):
            raise InvalidStateTransition(name, before.value, TaskStatus.ARCHIVED.value)

        instance = self.store.get_instance(name)
        worktree = (
            Path(instance.worktree_path)
            if instance is not None
            else self.paths.worktree_path(self.config, name)
        )
        steps: list[CleanupStep] = []
        script_step = self._archive_script_step(worktree)
        if script_step is not None:
            steps.append(script_step)
        steps += self._release_steps(name, instance)
        warnings = run_steps(steps)

        if scratch:
            self.store.remove(name)
            after = None
        else:
            self.store.set_instance(name, None)
            self.store.set_status(name, TaskStatus.ARCHIVED)
            after = TaskStatus.ARCHIVED
        self.store.save()
        return TransitionResult(name, before, after, warnings)

    def reset(self, name: str) -> TransitionResult:
        """Return a task to pending, backing up and discarding its worktree."""
        self._require_known(name)
        scratch = self.store.is_scratch(name)
        if not scratch:
            for dependent in self.catalog.dependents_of(name):
                dep_status = self.store.get_status(dependent)
                if dep_status not in (TaskStatus.PENDING, TaskStatus.ARCHIVED):
                    raise HasDependents(name, dependent, dep_status.value)

        before = self.store.get_status(name)
        instance = self.store.get_instance(name)

        if instance is not None:
            worktree = Path(instance.worktree_path)
            has_resources = True
        else:
            # Leftovers of an interrupted start, found by naming convention.
            worktree = self.paths.worktree_path(self.config, name)
            session, window, _ = self._window_of(name, None)
            has_resources = (
                worktree.exists()
                or bool(git_ops.find_task_branches(self.runner, name, cwd=self.root))
                or tmux.window_exists(self.runner, session, window)
            )

        if not scratch and before == TaskStatus.PENDING and not has_resources:
            log.info(f"Task '{name}' is already pending")
            return TransitionResult(name, before, before, message="already pending")

        warnings: list[str] = []
        backup: Path | None = None
        if has_resources:
            script_step = self._archive_script_step(worktree)
            if script_step is not None:
                warnings += run_steps([script_step])
            if worktree.exists():
                try:
                    backup = workspace.backup_worktree(worktree, self.paths.backups_dir, name)
                except OSError as e:
                    raise BackupFailed(str(worktree), str(e)) from e
                log.info(f"Backed up worktree to {backup}")
            warnings += run_steps(self._release_steps(name, instance))

        if scratch:
            self.store.remove(name)
            after = None
        else:
            self.store.set_instance(name, None)
            self.store.set_status(name, TaskStatus.PENDING)
            after = TaskStatus.PENDING
        self.store.save()
        return TransitionResult(name, before, after, warnings, backup=backup)

    def _next_scratch_name(self) -> str:
        n = 1
        while True:
            candidate = f"s{n}"
            if not self._scratch_name_taken(candidate):
                return candidate
            n += 1

    def _scratch_name_taken(self, name: str) -> bool:
        return (
            name in self.catalog
            or self.paths.task_file(name).exists()
            or self.store.has_entry(name)
            or bool(git_ops.find_task_branches(self.runner, name, cwd=self.root))
        )

    def new_scratch(self, name: str | None = None) -> TransitionResult:
        """Open an ad-hoc worktree and tmux window with no task definition behind it."""
        if name is None:
            name = self._next_scratch_name()
        validate_task_name(name)
        if name in self.catalog or self.paths.task_file(name).exists():
            raise TaskExists(name)
        if self.store.has_entry(name):
            raise NameInUse(name)
        self._check_branch_free(name)
        worktree = self.paths.worktree_path(self.config, name)
        self._check_worktree_free(worktree)

        branch = git_ops.branch_name(name, str(uuid.uuid4()))
        git_ops.worktree_add(self.runner, worktree, branch, cwd=self.root)
        for rel in workspace.copy_files(self.root, worktree, self.config.copy_files):
            log.info(f"  Copied {rel}")

        session = self.config.tmux_session
        tmux.ensure_session(self.runner, session, self.root)
        window_id = tmux.create_window(
            self.runner, session, name, worktree, self.config.init_script or None
        )

        instance = ResourceInstance(
            branch=branch,
            worktree_path=str(worktree),
            tmux_session=session,
            tmux_window=name,
            started_at=_now_iso(),
            tmux_window_id=window_id,
        )
        self.store.set_status(name, TaskStatus.RUNNING)
        self.store.set_scratch(name, True)
        self.store.set_instance(name, instance)
        self.store.save()
        return TransitionResult(name, TaskStatus.PENDING, TaskStatus.RUNNING, instance=instance)

    def cleanup(self, all_tasks: bool = False) -> list[TransitionResult]:
        """Release resources still held by merged tasks (or every task with ``all_tasks``).

        Statuses are left unchanged and only the instance is cleared, except
        for scratch entries, which are removed from the store.
        """
        results: list[TransitionResult] = []
        for name in self.store.names():
            instance = self.store.get_instance(name)
            if instance is None:
                continue
            status = self.store.get_status(name)
            if not all_tasks and status != TaskStatus.MERGED:
                continue
            warnings = run_steps(self._release_steps(name, instance))
            if self.store.is_scratch(name):
                self.store.remove(name)
                after = None
            else:
                self.store.set_instance(name, None)
                after = status
            results.append(TransitionResult(name, status, after, warnings))

        if all_tasks and tmux.session_exists(self.runner, self.config.tmux_session):
            session = self.config.tmux_session
            warnings = run_steps(
                [CleanupStep(f"Kill tmux session {session}",
                             lambda: tmux.kill_session(self.runner, session))]
            )
            if warnings and results:
                results[-1].warnings += warnings

        if results:
            self.store.save()
        return results

    def tmux_alive(self, name: str) -> bool:
        instance = self.store.get_instance(name)
        session, window, window_id = self._window_of(name, instance)
        if window_id is not None:
            return tmux.window_id_exists(self.runner, session, window_id)
        return tmux.window_exists(self.runner, session, window)

    def enter(self, name: str, inside_tmux: bool) -> None:
        """Attach the operator's terminal to the task's tmux window."""
        self._require_known(name)
        status = self.store.get_status(name)
        if status not in (TaskStatus.RUNNING, TaskStatus.DONE):
            raise TaskNotActive(name, status.value, "enter")
        instance = self.store.get_instance(name)
        if instance is None:
            raise TaskNotStarted(name)
        session = instance.tmux_session
        if not tmux.session_exists(self.runner, session):
            raise SessionNotFound(session)

        window_id = instance.tmux_window_id
        if window_id is None or not tmux.window_id_exists(self.runner, session, window_id):
            window_id = tmux.find_window_id(self.runner, session, instance.tmux_window)
        program, *args = tmux.attach_command(session, window_id, inside_tmux)
        returncode = self.runner.run_interactive(program, args)
        if returncode != 0:
            raise CommandFailed(program, args, "", returncode)

    def sync_running(self) -> list[str]:
        """Mark running tasks whose tmux window has gone away as done."""
        finished: list[str] = []
        for name in self.store.names():
            if self.store.get_status(name) != TaskStatus.RUNNING or self.store.is_scratch(name):
                continue
            if self.store.get_instance(name) is None or self.tmux_alive(name):
                continue
            self.store.set_status(name, TaskStatus.DONE)
            finished.append(name)
        if finished:
            log.debug(f"Auto-marked done: {', '.join(finished)}")
            self.store.save()
        return finished


def open_project(root: Path, runner: ProcessRunner | None = None) -> Orchestrator:
    """Wire the production orchestrator for the project rooted at *root*."""
    paths = Paths(root)
    config = load_config(paths)
    store = JsonStatusStore(paths.status_file)
    store.load()
    return Orchestrator(config, paths, store, runner or SubprocessRunner())
