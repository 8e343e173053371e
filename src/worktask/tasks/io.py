"""Read and write task definition files (markdown with YAML frontmatter)."""

from __future__ import annotations

from pathlib import Path

import yaml
from rich.markup import escape

from worktask import log
from worktask.errors import DependencyNotFound, InvalidTaskFile, InvalidTaskName, TaskExists
from worktask.io_utils import read_text, write_text
from worktask.tasks.model import TaskCatalog, TaskDefinition

FRONTMATTER_DELIM = "---"

# Characters git refuses in branch names (see git-check-ref-format).
_INVALID_NAME_CHARS = "~^:?*[\\@{"


def validate_task_name(name: str) -> None:
    """Raise :class:`InvalidTaskName` unless *name* is usable as a file and branch name."""
    if not name:
        raise InvalidTaskName(name, "name cannot be empty")
    if "/" in name or "\\" in name:
        raise InvalidTaskName(name, "name cannot contain path separators")
    if any(ch.isspace() for ch in name):
        raise InvalidTaskName(name, "name cannot contain whitespace")
    for ch in _INVALID_NAME_CHARS:
        if ch in name:
            raise InvalidTaskName(name, f"name cannot contain '{ch}'")
    if name.startswith(("-", ".")):
        raise InvalidTaskName(name, "name cannot start with '-' or '.'")
    if name.endswith(".") or name.endswith(".lock"):
        raise InvalidTaskName(name, "name cannot end with '.' or '.lock'")
    if ".." in name:
        raise InvalidTaskName(name, "name cannot contain '..'")


def parse_task_markdown(content: str, file_path: Path | None = None) -> TaskDefinition:
    """Parse a task file. Raises :class:`InvalidTaskFile` on malformed input."""
    where = str(file_path) if file_path else "<string>"
    text = content.strip()
    if not text.startswith(FRONTMATTER_DELIM):
        raise InvalidTaskFile(where, "Missing frontmatter (must start with ---)")

    rest = text[len(FRONTMATTER_DELIM):]
    end = rest.find(f"\n{FRONTMATTER_DELIM}")
    if end == -1:
        raise InvalidTaskFile(where, "Missing frontmatter end (---)")
    header = rest[:end]
    body = rest[end + len(FRONTMATTER_DELIM) + 1:].strip()

    try:
        meta = yaml.safe_load(header)
    except yaml.YAMLError as e:
        raise InvalidTaskFile(where, f"Invalid frontmatter YAML: {e}") from e
    if not isinstance(meta, dict):
        raise InvalidTaskFile(where, "Invalid frontmatter YAML: expected a mapping")

    name = meta.get("name")
    if not isinstance(name, str) or not name:
        raise InvalidTaskFile(where, "Invalid frontmatter YAML: missing 'name'")

    depends = meta.get("depends") or []
    if isinstance(depends, str):
        depends = [depends]
    if not isinstance(depends, list) or not all(isinstance(d, str) for d in depends):
        raise InvalidTaskFile(where, "Invalid frontmatter YAML: 'depends' must be a list of names")

    return TaskDefinition(
        name=name,
        depends=tuple(depends),
        description=body,
        file_path=file_path,
    )


def format_task_markdown(name: str, depends: list[str] | tuple[str, ...], description: str) -> str:
    meta: dict[str, object] = {"name": name}
    if depends:
        meta["depends"] = list(depends)
    header = yaml.safe_dump(meta, sort_keys=False, allow_unicode=True)
    return f"{FRONTMATTER_DELIM}\n{header}{FRONTMATTER_DELIM}\n\n{description.strip()}\n"


def load_catalog(tasks_dir: Path) -> TaskCatalog:
    """Load every ``*.md`` file in *tasks_dir*.

    Files that fail to parse are skipped with a warning and recorded in
    ``load_errors``. A missing directory yields an empty catalog.
    """
    catalog = TaskCatalog()
    if not tasks_dir.is_dir():
        return catalog

    for path in sorted(tasks_dir.glob("*.md")):
        try:
            task = parse_task_markdown(read_text(path), path)
        except InvalidTaskFile as e:
            log.warn(escape(f"Skipping {path.name}: {e.reason}"))
            catalog.load_errors.append((str(path), e.reason))
            continue
        except (OSError, UnicodeDecodeError) as e:
            log.warn(escape(f"Skipping {path.name}: {e}"))
            catalog.load_errors.append((str(path), str(e)))
            continue
        if task.name in catalog.tasks:
            other = catalog.tasks[task.name].file_path
            catalog.load_errors.append(
                (str(path), f"duplicate task name '{task.name}' (also in {other})")
            )
            continue
        catalog.tasks[task.name] = task
    return catalog


def create_task(
    tasks_dir: Path,
    catalog: TaskCatalog,
    name: str,
    depends: list[str] | None = None,
    description: str = "",
) -> Path:
    """Write a new task definition file and return its path."""
    validate_task_name(name)
    path = tasks_dir / f"{name}.md"
    if path.exists() or name in catalog:
        raise TaskExists(name)
    deps = depends or []
    for dep in deps:
        if dep not in catalog:
            raise DependencyNotFound(name, dep)

    tasks_dir.mkdir(parents=True, exist_ok=True)
    write_text(path, format_task_markdown(name, deps, description))
    log.debug(f"Wrote {path}")
    return path
