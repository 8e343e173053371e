"""Readiness view over the task graph: which pending tasks can start now."""

from __future__ import annotations

from dataclasses import dataclass, field

from worktask import log
from worktask.state import StatusStore
from worktask.tasks.model import SATISFIED, TaskCatalog, TaskStatus


@dataclass
class BlockedTask:
    name: str
    waiting_for: list[str] = field(default_factory=list)


@dataclass
class Readiness:
    ready: list[str] = field(default_factory=list)
    blocked: list[BlockedTask] = field(default_factory=list)


def waiting_for(catalog: TaskCatalog, store: StatusStore, name: str) -> list[str]:
    """Dependencies of *name* that are not yet merged or archived."""
    task = catalog.get(name)
    if task is None:
        return []
    return [dep for dep in task.unique_depends() if store.get_status(dep) not in SATISFIED]


def blocking_dependency(catalog: TaskCatalog, store: StatusStore, name: str) -> str | None:
    """First dependency of *name* that is not merged or archived, in declaration order."""
    blocked = waiting_for(catalog, store, name)
    return blocked[0] if blocked else None


def readiness(catalog: TaskCatalog, store: StatusStore) -> Readiness:
    """Split pending tasks into ready and blocked, both sorted by name."""
    report = Readiness()
    for name in catalog.names():
        if store.get_status(name) != TaskStatus.PENDING:
            continue
        blocking = waiting_for(catalog, store, name)
        if blocking:
            report.blocked.append(BlockedTask(name, blocking))
        else:
            report.ready.append(name)
    log.debug(f"ready={report.ready} blocked={[b.name for b in report.blocked]}")
    return report


def explain_block(catalog: TaskCatalog, store: StatusStore, name: str) -> str:
    """Human-readable explanation of why *name* cannot start."""
    parts = [f"{dep} ({store.get_status(dep).value})" for dep in waiting_for(catalog, store, name)]
    return f"waiting for: {', '.join(parts)}" if parts else ""
