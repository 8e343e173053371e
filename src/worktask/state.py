"""Persisted runtime state of tasks (``.wt/status.json``)."""

from __future__ import annotations

import copy
import json
from abc import ABC, abstractmethod
from pathlib import Path

from worktask import log
from worktask.errors import StateFileError, TaskNotFound
from worktask.io_utils import read_text, write_text_atomic
from worktask.tasks.model import ResourceInstance, TaskRuntimeState, TaskStatus


class StatusStore(ABC):
    """In-memory map of task name to runtime state, with pluggable persistence.

    Accessors never touch disk; callers persist with :meth:`save`.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, TaskRuntimeState] = {}

    @abstractmethod
    def load(self) -> None:
        ...

    @abstractmethod
    def save(self) -> None:
        ...

    # ── accessors ────────────────────────────────────────────────

    def has_entry(self, name: str) -> bool:
        return name in self._tasks

    def names(self) -> list[str]:
        return sorted(self._tasks)

    def _ensure(self, name: str) -> TaskRuntimeState:
        return self._tasks.setdefault(name, TaskRuntimeState())

    def get_status(self, name: str) -> TaskStatus:
        state = self._tasks.get(name)
        return state.status if state else TaskStatus.PENDING

    def set_status(self, name: str, status: TaskStatus) -> None:
        before = self.get_status(name)
        self._ensure(name).status = status
        log.debug(f"Task {name}: {before.value} -> {status.value}")

    def get_instance(self, name: str) -> ResourceInstance | None:
        state = self._tasks.get(name)
        return state.instance if state else None

    def set_instance(self, name: str, instance: ResourceInstance | None) -> None:
        self._ensure(name).instance = instance

    def is_scratch(self, name: str) -> bool:
        state = self._tasks.get(name)
        return bool(state and state.scratch)

    def set_scratch(self, name: str, scratch: bool) -> None:
        self._ensure(name).scratch = scratch

    def remove(self, name: str) -> None:
        self._tasks.pop(name, None)

    def resolve_ref(self, ref: str, listed_names: list[str]) -> str:
        """Turn a name or 1-based list index into a task name.

        A literal name (defined or present in the store) wins over an index.
        """
        if ref in listed_names or ref in self._tasks:
            return ref
        if ref.isdigit():
            idx = int(ref)
            if 1 <= idx <= len(listed_names):
                return listed_names[idx - 1]
        raise TaskNotFound(ref)

    # ── (de)serialization ───────────────────────────────────────

    def to_dict(self) -> dict[str, dict]:
        return {"tasks": {name: self._tasks[name].to_dict() for name in sorted(self._tasks)}}

    def _replace_from(self, raw: object, source: str) -> None:
        if not isinstance(raw, dict) or not isinstance(raw.get("tasks", {}), dict):
            raise StateFileError(f"Invalid status file {source}: expected {{\"tasks\": {{...}}}}")
        tasks: dict[str, TaskRuntimeState] = {}
        for name, entry in raw.get("tasks", {}).items():
            if not isinstance(entry, dict):
                raise StateFileError(f"Invalid status file {source}: entry '{name}' is not an object")
            try:
                tasks[name] = TaskRuntimeState.from_dict(entry)
            except (KeyError, ValueError, TypeError) as e:
                raise StateFileError(f"Invalid status file {source}: entry '{name}': {e}") from e
        self._tasks = tasks


class JsonStatusStore(StatusStore):
    """Production store: one JSON document replaced atomically on save."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path

    def load(self) -> None:
        if not self.path.exists():
            self._tasks = {}
            return
        try:
            raw = json.loads(read_text(self.path))
        except (OSError, UnicodeDecodeError) as e:
            raise StateFileError(f"Cannot read status file {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateFileError(f"Invalid status file {self.path}: {e}") from e
        self._replace_from(raw, str(self.path))

    def save(self) -> None:
        text = json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n"
        try:
            write_text_atomic(self.path, text)
        except OSError as e:
            raise StateFileError(f"Cannot write status file {self.path}: {e}") from e


class MemoryStatusStore(StatusStore):
    """Store kept entirely in memory; ``saved`` is the last persisted snapshot."""

    def __init__(self, initial: dict | None = None) -> None:
        super().__init__()
        self.saved: dict = {"tasks": {}}
        self.save_count = 0
        if initial is not None:
            self.saved = copy.deepcopy(initial)
            self.load()

    def load(self) -> None:
        self._replace_from(copy.deepcopy(self.saved), "<memory>")

    def save(self) -> None:
        self.saved = copy.deepcopy(self.to_dict())
        self.save_count += 1
