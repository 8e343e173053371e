"""Project layout and the ``.wt/config.yaml`` settings file."""

from __future__ import annotations

import subprocess
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from worktask.errors import ConfigError
from worktask.io_utils import read_text, write_text

WT_DIR = ".wt"
CONFIG_FILE = "config.yaml"
TASKS_DIR = "tasks"
STATUS_FILE = "status.json"
BACKUPS_DIR = "backups"
LOGS_DIR = "logs"

DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_START_ARGS = '"Read ${task_file} and complete the task described there."'
DEFAULT_TMUX_SESSION = "wt"
DEFAULT_WORKTREE_DIR = ".wt/worktrees"

BRANCH_PREFIX = "wt/"


@dataclass
class LogsConfig:
    """Filters applied when exporting agent transcripts with ``wt logs``."""

    exclude_types: list[str] = field(default_factory=lambda: ["progress", "file-history-snapshot"])
    exclude_fields: list[str] = field(default_factory=lambda: ["signature", "usage"])


@dataclass
class Config:
    agent_command: str = DEFAULT_AGENT_COMMAND
    start_args: str = DEFAULT_START_ARGS
    tmux_session: str = DEFAULT_TMUX_SESSION
    worktree_dir: str = DEFAULT_WORKTREE_DIR
    copy_files: list[str] = field(default_factory=list)
    init_script: str = ""
    archive_script: str = ""
    base_branch: str = ""
    logs: LogsConfig = field(default_factory=LogsConfig)

    def __post_init__(self) -> None:
        if not self.tmux_session.strip():
            raise ConfigError("tmux_session must not be empty")
        if not self.worktree_dir.strip():
            raise ConfigError("worktree_dir must not be empty")

    # ── YAML round-trip ──────────────────────────────────────────

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Config:
        """Build a config from parsed YAML, ignoring unknown keys."""
        kwargs: dict[str, Any] = {}
        for key in ("agent_command", "start_args", "tmux_session", "worktree_dir",
                    "init_script", "archive_script", "base_branch"):
            if key in raw and raw[key] is not None:
                kwargs[key] = _expect_str(raw, key)
        if raw.get("copy_files") is not None:
            kwargs["copy_files"] = _expect_str_list(raw, "copy_files")

        logs_raw = raw.get("logs")
        if logs_raw is not None:
            if not isinstance(logs_raw, dict):
                raise ConfigError("logs must be a mapping")
            logs = LogsConfig()
            if logs_raw.get("exclude_types") is not None:
                logs.exclude_types = _expect_str_list(logs_raw, "exclude_types")
            if logs_raw.get("exclude_fields") is not None:
                logs.exclude_fields = _expect_str_list(logs_raw, "exclude_fields")
            kwargs["logs"] = logs
        return cls(**kwargs)

    def to_yaml(self) -> str:
        data = asdict(self)
        for key in ("init_script", "archive_script", "base_branch"):
            if not data[key]:
                del data[key]
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)

    # ── Agent launch ─────────────────────────────────────────────

    def agent_launch_command(self, task: str, task_file: str, session_id: str) -> str:
        """Shell command typed into the task's tmux window."""
        args = self.start_args.replace("${task_file}", task_file).replace("${task}", task)
        parts = [self.agent_command, "--session-id", session_id]
        if args.strip():
            parts.append(args.strip())
        return " ".join(parts)


def _expect_str(raw: dict[str, Any], key: str) -> str:
    value = raw[key]
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _expect_str_list(raw: dict[str, Any], key: str) -> list[str]:
    value = raw[key]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{key} must be a list of strings")
    return list(value)


@dataclass
class Paths:
    """Every on-disk location the tool uses, derived from the repo root."""

    root: Path

    @property
    def wt_dir(self) -> Path:
        return self.root / WT_DIR

    @property
    def config_file(self) -> Path:
        return self.wt_dir / CONFIG_FILE

    @property
    def tasks_dir(self) -> Path:
        return self.wt_dir / TASKS_DIR

    @property
    def status_file(self) -> Path:
        return self.wt_dir / STATUS_FILE

    @property
    def backups_dir(self) -> Path:
        return self.wt_dir / BACKUPS_DIR

    @property
    def logs_dir(self) -> Path:
        return self.wt_dir / LOGS_DIR

    def task_file(self, name: str) -> Path:
        return self.tasks_dir / f"{name}.md"

    def worktree_path(self, config: Config, name: str) -> Path:
        base = Path(config.worktree_dir)
        if not base.is_absolute():
            base = self.root / base
        return base / name


def load_config(paths: Paths) -> Config:
    """Load ``.wt/config.yaml``; raise :class:`ConfigError` when absent or malformed."""
    path = paths.config_file
    if not path.exists():
        raise ConfigError(f"Config not found at {path}. Run `wt init` first.")
    try:
        raw = yaml.safe_load(read_text(path))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return Config.from_dict(raw)


def init_project(paths: Paths, config: Config | None = None) -> list[Path]:
    """Create the ``.wt`` layout. Existing files are left untouched.

    Returns the paths that were created.
    """
    created: list[Path] = []
    for d in (paths.wt_dir, paths.tasks_dir):
        if not d.exists():
            d.mkdir(parents=True)
            created.append(d)
    if not paths.config_file.exists():
        write_text(paths.config_file, (config or Config()).to_yaml())
        created.append(paths.config_file)
    return created


def resolve_repo_root() -> Path:
    """Return the git repository root, falling back to cwd."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path.cwd()
