"""Metrics and excerpts from agent JSONL transcripts.

Transcripts live under ``~/.claude/projects/<project-dir>/<session>.jsonl``
where ``<project-dir>`` is the worktree path with ``/`` and ``.`` replaced
by ``-``. Every line is one JSON record; unreadable lines are skipped.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from worktask.io_utils import open_text
from worktask.tasks.model import ResourceInstance

DEFAULT_CONTEXT_WINDOW = 200_000


@dataclass
class TranscriptMetrics:
    input_tokens: int = 0
    output_tokens: int = 0
    num_turns: int = 0
    context_window: int = DEFAULT_CONTEXT_WINDOW
    summary: str | None = None
    current_tool: str | None = None
    completed: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def context_percent(self) -> int:
        if self.context_window <= 0:
            return 0
        used = self.input_tokens + self.output_tokens
        return min(100, used * 100 // self.context_window)

    @property
    def duration_secs(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds())


# ── Locating transcripts ─────────────────────────────────────────────


def project_dir_name(path: str | Path) -> str:
    return str(path).replace("/", "-").replace(".", "-")


def claude_projects_dir() -> Path:
    return Path.home() / ".claude" / "projects"


def transcript_path(worktree_path: str | Path, session_id: str) -> Path:
    return claude_projects_dir() / project_dir_name(worktree_path) / f"{session_id}.jsonl"


def find_latest_transcript(worktree_path: str | Path) -> Path | None:
    """Most recently modified transcript for a worktree, if any."""
    project_dir = claude_projects_dir() / project_dir_name(worktree_path)
    if not project_dir.is_dir():
        return None
    candidates = [p for p in project_dir.glob("*.jsonl") if p.is_file()]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


def find_transcript_for_instance(instance: ResourceInstance) -> Path | None:
    if instance.session_id:
        path = transcript_path(instance.worktree_path, instance.session_id)
        if path.exists():
            return path
    return find_latest_transcript(instance.worktree_path)


# ── Parsing ──────────────────────────────────────────────────────────


def _iter_records(path: Path) -> Iterator[dict[str, Any]]:
    with open_text(path, errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                yield record


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _content_blocks(record: dict[str, Any]) -> list[dict[str, Any]]:
    message = record.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def parse_transcript(path: Path) -> TranscriptMetrics | None:
    """Scan a transcript once and derive usage metrics.

    Returns ``None`` when the file is missing or holds no usable record.
    """
    m = TranscriptMetrics()
    seen = False
    last_cache_read = 0
    last_input = 0
    saw_usage = False
    result_output: int | None = None
    result_input: int | None = None
    result_turns: int | None = None
    result_text: str | None = None
    max_window = 0

    try:
        for record in _iter_records(path):
            seen = True
            ts = _parse_timestamp(record.get("timestamp"))
            if ts is not None:
                if m.started_at is None:
                    m.started_at = ts
                m.finished_at = ts

            match record.get("type"):
                case "assistant":
                    message = record.get("message")
                    usage = message.get("usage") if isinstance(message, dict) else None
                    if isinstance(usage, dict):
                        saw_usage = True
                        last_cache_read = _int(usage.get("cache_read_input_tokens"))
                        last_input = _int(usage.get("input_tokens"))
                        m.output_tokens += _int(usage.get("output_tokens"))
                    for block in _content_blocks(record):
                        if block.get("type") == "text" and isinstance(block.get("text"), str):
                            m.summary = block["text"]
                        elif block.get("type") == "tool_use" and isinstance(block.get("name"), str):
                            m.current_tool = block["name"]
                    m.num_turns += 1
                case "result":
                    m.completed = True
                    if isinstance(record.get("num_turns"), int):
                        result_turns = record["num_turns"]
                    if isinstance(record.get("result"), str):
                        result_text = record["result"]
                    model_usage = record.get("modelUsage")
                    if isinstance(model_usage, dict):
                        outputs = inputs = 0
                        for usage in model_usage.values():
                            if not isinstance(usage, dict):
                                continue
                            outputs += _int(usage.get("outputTokens"))
                            inputs += _int(usage.get("inputTokens"))
                            max_window = max(max_window, _int(usage.get("contextWindow")))
                        result_output = outputs or None
                        result_input = inputs or None
                case _:
                    pass
    except OSError:
        return None
    if not seen:
        return None

    m.input_tokens = last_cache_read + last_input
    if not saw_usage and result_input is not None:
        m.input_tokens = result_input
    if result_output is not None:
        m.output_tokens = result_output
    if result_turns is not None:
        m.num_turns = result_turns
    if max_window:
        m.context_window = max_window
    if m.summary is None:
        m.summary = result_text
    return m


def last_messages(path: Path, n: int) -> list[str]:
    """The last *n* assistant messages, text blocks preferred over thinking."""
    messages: list[str] = []
    for record in _iter_records(path):
        if record.get("type") != "assistant":
            continue
        blocks = _content_blocks(record)
        texts = [b["text"] for b in blocks if b.get("type") == "text" and isinstance(b.get("text"), str)]
        if not texts:
            texts = [
                b["thinking"]
                for b in blocks
                if b.get("type") == "thinking" and isinstance(b.get("thinking"), str)
            ]
        if texts:
            messages.append("\n".join(texts))
    return messages[-n:] if n > 0 else []


def _strip_fields(value: Any, exclude: set[str]) -> Any:
    if isinstance(value, dict):
        return {k: _strip_fields(v, exclude) for k, v in value.items() if k not in exclude}
    if isinstance(value, list):
        return [_strip_fields(v, exclude) for v in value]
    return value


def extract_to_log(
    src: Path,
    dest: Path,
    exclude_types: list[str],
    exclude_fields: list[str],
) -> int:
    """Write a filtered copy of transcript *src* to *dest*; return records written."""
    types = set(exclude_types)
    fields = set(exclude_fields)
    dest.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open_text(dest, "w") as out:
        for record in _iter_records(src):
            if record.get("type") in types:
                continue
            out.write(json.dumps(_strip_fields(record, fields), ensure_ascii=False))
            out.write("\n")
            count += 1
    return count
