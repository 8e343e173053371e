"""Static checks over the task catalog: missing dependencies, name mismatches, cycles."""

from __future__ import annotations

from worktask.tasks.model import TaskCatalog


def detect_cycle(catalog: TaskCatalog, start: str) -> list[str] | None:
    """Return the first dependency cycle reachable from *start*, or ``None``.

    The cycle is reported as a path that begins and ends with the same
    task, e.g. ``["a", "b", "a"]``. Edges to undefined tasks are ignored.
    """
    visited: set[str] = set()
    path: list[str] = []
    return _visit(catalog, start, visited, path)


def _visit(
    catalog: TaskCatalog,
    current: str,
    visited: set[str],
    path: list[str],
) -> list[str] | None:
    if current in path:
        idx = path.index(current)
        return path[idx:] + [current]
    if current in visited:
        return None
    task = catalog.get(current)
    if task is None:
        return None

    visited.add(current)
    path.append(current)
    for dep in task.depends:
        cycle = _visit(catalog, dep, visited, path)
        if cycle is not None:
            return cycle
    path.pop()
    return None


def validate(catalog: TaskCatalog) -> list[tuple[str, str]]:
    """Return ``(subject, message)`` pairs for every problem found, sorted by subject.

    An empty list means the catalog is consistent.
    """
    problems: list[tuple[str, str]] = list(catalog.load_errors)

    for name in catalog.names():
        task = catalog.tasks[name]
        for dep in task.unique_depends():
            if dep not in catalog:
                problems.append((name, f"depends on '{dep}' which doesn't exist"))

        if task.file_path is not None and task.file_path.stem != name:
            problems.append(
                (
                    str(task.file_path),
                    f"frontmatter name '{name}' doesn't match filename '{task.file_path.stem}'",
                )
            )

        cycle = detect_cycle(catalog, name)
        if cycle is not None and name in cycle:
            problems.append((name, f"circular dependency detected: {' -> '.join(cycle)}"))

    problems.sort(key=lambda p: p[0])
    return problems
