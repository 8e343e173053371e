"""Task definitions, lifecycle status and the resource instance of a started task."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    MERGED = "merged"
    ARCHIVED = "archived"

    def can_transition_to(self, target: TaskStatus) -> bool:
        """Forward edges of the lifecycle. Reset to pending is handled separately."""
        return (self, target) in _FORWARD_EDGES

    @property
    def icon(self) -> str:
        return _ICONS[self]


_FORWARD_EDGES = {
    (TaskStatus.PENDING, TaskStatus.RUNNING),
    (TaskStatus.RUNNING, TaskStatus.DONE),
    (TaskStatus.RUNNING, TaskStatus.MERGED),
    (TaskStatus.DONE, TaskStatus.MERGED),
    (TaskStatus.MERGED, TaskStatus.ARCHIVED),
}

_ICONS = {
    TaskStatus.PENDING: "○",
    TaskStatus.RUNNING: "●",
    TaskStatus.DONE: "◉",
    TaskStatus.MERGED: "✓",
    TaskStatus.ARCHIVED: "□",
}

# Statuses that satisfy a dependency.
SATISFIED = (TaskStatus.MERGED, TaskStatus.ARCHIVED)


@dataclass(frozen=True)
class TaskDefinition:
    name: str
    depends: tuple[str, ...] = ()
    description: str = ""
    file_path: Path | None = None

    def unique_depends(self) -> list[str]:
        """Dependencies in declaration order with duplicates collapsed."""
        seen: set[str] = set()
        ordered: list[str] = []
        for dep in self.depends:
            if dep in seen:
                continue
            seen.add(dep)
            ordered.append(dep)
        return ordered


@dataclass
class TaskCatalog:
    """All task definitions found on disk, plus files that failed to parse."""

    tasks: dict[str, TaskDefinition] = field(default_factory=dict)
    load_errors: list[tuple[str, str]] = field(default_factory=list)

    def get(self, name: str) -> TaskDefinition | None:
        return self.tasks.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.tasks

    def names(self) -> list[str]:
        return sorted(self.tasks)

    def dependents_of(self, name: str) -> list[str]:
        return sorted(t.name for t in self.tasks.values() if name in t.depends)


@dataclass
class ResourceInstance:
    """Live resources backing a started task."""

    branch: str
    worktree_path: str
    tmux_session: str
    tmux_window: str
    session_id: str | None = None
    started_at: str | None = None
    tmux_window_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "branch": self.branch,
            "worktree_path": self.worktree_path,
            "tmux_session": self.tmux_session,
            "tmux_window": self.tmux_window,
        }
        if self.session_id is not None:
            data["session_id"] = self.session_id
        if self.started_at is not None:
            data["started_at"] = self.started_at
        if self.tmux_window_id is not None:
            data["tmux_window_id"] = self.tmux_window_id
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ResourceInstance:
        return cls(
            branch=str(raw["branch"]),
            worktree_path=str(raw["worktree_path"]),
            tmux_session=str(raw["tmux_session"]),
            tmux_window=str(raw["tmux_window"]),
            session_id=raw.get("session_id"),
            started_at=raw.get("started_at"),
            tmux_window_id=raw.get("tmux_window_id"),
        )


@dataclass
class TaskRuntimeState:
    status: TaskStatus = TaskStatus.PENDING
    scratch: bool = False
    instance: ResourceInstance | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.scratch:
            data["scratch"] = True
        if self.instance is not None:
            data["instance"] = self.instance.to_dict()
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TaskRuntimeState:
        instance_raw = raw.get("instance")
        return cls(
            status=TaskStatus(raw.get("status", TaskStatus.PENDING.value)),
            scratch=bool(raw.get("scratch", False)),
            instance=ResourceInstance.from_dict(instance_raw) if instance_raw else None,
        )
