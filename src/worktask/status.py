"""Per-task progress views for ``wt status`` and ``wt review``: git, tmux and transcript metrics."""

from __future__ import annotations

import shlex
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from worktask import git_ops, transcript
from worktask.errors import (
    StillRunning,
    TaskNotActive,
    TaskNotFound,
    TaskNotStarted,
    TranscriptNotFound,
    WorktreeNotFound,
)
from worktask.lifecycle import Orchestrator
from worktask.tasks.model import ResourceInstance, TaskStatus
from worktask.transcript import TranscriptMetrics

IDLE_THRESHOLD_SECS = 300


@dataclass
class TaskDisplay:
    name: str
    status: TaskStatus
    index: int | None = None
    scratch: bool = False
    duration: str | None = None
    duration_secs: int | None = None
    context_percent: int | None = None
    current_tool: str | None = None
    additions: int = 0
    deletions: int = 0
    commits: int = 0
    idle_secs: int | None = None
    active: bool | None = None
    tmux_alive: bool = False
    tmux_session: str | None = None
    tmux_window: str | None = None
    session_id: str | None = None
    transcript_exists: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class StatusSummary:
    running: int = 0
    done: int = 0
    total_additions: int = 0
    total_deletions: int = 0


@dataclass
class StatusReport:
    tasks: list[TaskDisplay] = field(default_factory=list)
    summary: StatusSummary = field(default_factory=StatusSummary)
    auto_done: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [t.to_dict() for t in self.tasks],
            "summary": asdict(self.summary),
        }


def format_duration(secs: int) -> str:
    """``45s``, ``2m``, ``2m 5s``, ``1h``, ``1h 30m``."""
    secs = max(0, int(secs))
    if secs < 60:
        return f"{secs}s"
    if secs < 3600:
        mins, rest = divmod(secs, 60)
        return f"{mins}m" if rest == 0 else f"{mins}m {rest}s"
    hours, rest = divmod(secs, 3600)
    mins = rest // 60
    return f"{hours}h" if mins == 0 else f"{hours}h {mins}m"


def _seconds_since(iso: str | None, now: float) -> int | None:
    if not iso:
        return None
    try:
        started = datetime.fromisoformat(iso)
    except ValueError:
        return None
    return max(0, int(now - started.timestamp()))


def _last_activity(orch: Orchestrator, worktree: Path, transcript_file: Path | None) -> float | None:
    stamps: list[float] = []
    commit_time = git_ops.last_commit_time(orch.runner, worktree) if worktree.exists() else None
    if commit_time is not None:
        stamps.append(float(commit_time))
    if transcript_file is not None and transcript_file.exists():
        stamps.append(transcript_file.stat().st_mtime)
    return max(stamps) if stamps else None


def project_task(
    orch: Orchestrator,
    name: str,
    instance: ResourceInstance | None,
    now: float | None = None,
) -> TaskDisplay:
    """Build one display row. Every git, tmux and transcript lookup is best effort."""
    now = time.time() if now is None else now
    listed = orch.listed_names()
    row = TaskDisplay(
        name=name,
        status=orch.store.get_status(name),
        index=listed.index(name) + 1 if name in listed else None,
        scratch=orch.store.is_scratch(name),
    )
    if instance is None:
        return row

    row.tmux_session = instance.tmux_session
    row.tmux_window = instance.tmux_window
    row.session_id = instance.session_id
    row.tmux_alive = orch.tmux_alive(name)

    transcript_file = transcript.find_transcript_for_instance(instance)
    row.transcript_exists = transcript_file is not None
    metrics = transcript.parse_transcript(transcript_file) if transcript_file else None
    if metrics is not None:
        row.context_percent = metrics.context_percent
        row.current_tool = metrics.current_tool
        row.duration_secs = metrics.duration_secs
    if row.duration_secs is None:
        row.duration_secs = _seconds_since(instance.started_at, now)
    if row.duration_secs is not None:
        row.duration = format_duration(row.duration_secs)

    worktree = Path(instance.worktree_path)
    if worktree.exists():
        stats = git_ops.diff_stats(orch.runner, worktree, orch.config.base_branch)
        row.additions, row.deletions, row.commits = stats.additions, stats.deletions, stats.commits

    last = _last_activity(orch, worktree, transcript_file)
    if last is not None:
        row.idle_secs = max(0, int(now - last))
        row.active = row.idle_secs < IDLE_THRESHOLD_SECS
    return row


def collect_status(orch: Orchestrator, now: float | None = None) -> StatusReport:
    """Rows for every running or done task, after auto-marking finished windows done."""
    report = StatusReport(auto_done=orch.sync_running())
    names = orch.listed_names() + [n for n in orch.store.names() if n not in orch.catalog]
    for name in names:
        status = orch.store.get_status(name)
        if status not in (TaskStatus.RUNNING, TaskStatus.DONE):
            continue
        row = project_task(orch, name, orch.store.get_instance(name), now=now)
        report.tasks.append(row)
        if status == TaskStatus.RUNNING:
            report.summary.running += 1
        else:
            report.summary.done += 1
        report.summary.total_additions += row.additions
        report.summary.total_deletions += row.deletions
    return report


# ── Review of a finished task ────────────────────────────────────────


@dataclass
class ReviewReport:
    name: str
    worktree_path: str
    session_id: str
    metrics: TranscriptMetrics | None = None
    additions: int = 0
    deletions: int = 0
    commits: int = 0
    auto_done: bool = False
    resume_command: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "task": self.name,
            "status": TaskStatus.DONE.value,
            "worktree_path": self.worktree_path,
            "session_id": self.session_id,
        }
        m = self.metrics
        if m is not None:
            metrics: dict[str, Any] = {
                "input_tokens": m.input_tokens,
                "output_tokens": m.output_tokens,
                "num_turns": m.num_turns,
                "context_percent": m.context_percent,
                "completed": m.completed,
            }
            if m.duration_secs is not None:
                metrics["duration_secs"] = m.duration_secs
            data["metrics"] = metrics
            if m.summary is not None:
                data["summary"] = m.summary
        if self.additions or self.deletions:
            data["code_changes"] = {
                "insertions": self.additions,
                "deletions": self.deletions,
                "commits": self.commits,
            }
        data["commands"] = {"resume": self.resume_command}
        return data


def collect_review(orch: Orchestrator, name: str) -> ReviewReport:
    """Transcript metrics and diff of a task whose agent has finished.

    A running task whose window has closed is marked done first.
    """
    if name not in orch.catalog and not orch.store.has_entry(name):
        raise TaskNotFound(name)
    instance = orch.store.get_instance(name)
    if instance is None:
        raise TaskNotStarted(name)
    if instance.session_id is None:
        raise TranscriptNotFound(name)

    status = orch.store.get_status(name)
    auto_done = False
    if status == TaskStatus.RUNNING:
        if orch.tmux_alive(name):
            raise StillRunning(name)
        orch.store.set_status(name, TaskStatus.DONE)
        orch.store.save()
        auto_done = True
    elif status != TaskStatus.DONE:
        raise TaskNotActive(name, status.value, "review")

    worktree = Path(instance.worktree_path)
    if not worktree.exists():
        raise WorktreeNotFound(name, str(worktree))
    path = transcript.transcript_path(worktree, instance.session_id)
    if not path.exists():
        raise TranscriptNotFound(name)

    stats = git_ops.diff_stats(orch.runner, worktree, orch.config.base_branch)
    return ReviewReport(
        name=name,
        worktree_path=str(worktree),
        session_id=instance.session_id,
        metrics=transcript.parse_transcript(path),
        additions=stats.additions,
        deletions=stats.deletions,
        commits=stats.commits,
        auto_done=auto_done,
        resume_command=(
            f"cd {shlex.quote(str(worktree))} && "
            f"{orch.config.agent_command} -r {instance.session_id}"
        ),
    )
