"""UTF-8 file helpers plus the atomic-replace write used for persisted state."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, TextIO

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict", **kwargs: Any) -> str:
    """Read path as text with UTF-8 encoding."""
    p = path if isinstance(path, Path) else Path(path)
    return p.read_text(encoding="utf-8", errors=errors, **kwargs)


def write_text(path: PathLike, text: str, **kwargs: Any) -> None:
    """Write text to path with UTF-8 encoding."""
    p = path if isinstance(path, Path) else Path(path)
    p.write_text(text, encoding="utf-8", **kwargs)


def open_text(path: PathLike, mode: str = "r", *, errors: str = "strict") -> TextIO:
    """Open path for line-oriented text I/O (transcripts, exported logs)."""
    return open(path, mode, encoding="utf-8", errors=errors)


def write_text_atomic(path: PathLike, text: str) -> None:
    """Write *text* to a sibling temp file, then rename it over *path*.

    Readers see either the old document or the new one, never a partial
    write. The parent directory is created when missing.
    """
    p = path if isinstance(path, Path) else Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        fh.write(text)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, p)


def copy_tree(src: Path, dest: Path, exclude: tuple[str, ...] = (".git",)) -> None:
    """Recursively copy *src* into *dest*, skipping entries named in *exclude*."""
    shutil.copytree(
        src,
        dest,
        symlinks=True,
        ignore=shutil.ignore_patterns(*exclude),
    )
