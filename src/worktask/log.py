"""Console output for the ``wt`` command, colored via Rich."""

from __future__ import annotations

from rich.console import Console

console = Console(highlight=False, soft_wrap=True)
_err_console = Console(highlight=False, soft_wrap=True, stderr=True)

_verbose = False


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def info(msg: str) -> None:
    console.print(f"[blue]\\[wt][/blue] {msg}")


def success(msg: str) -> None:
    console.print(f"[green]\\[ok][/green] {msg}")


def warn(msg: str) -> None:
    _err_console.print(f"[yellow]\\[warn][/yellow] {msg}")


def error(msg: str) -> None:
    _err_console.print(f"[red]\\[error][/red] {msg}")


def debug(msg: str) -> None:
    if _verbose:
        _err_console.print(f"[dim]\\[debug] {msg}[/dim]")
