"""tmux session and window management.

Windows are addressed by their tmux window ID (``@N``) once created. A
target such as ``session:v1.2`` would be read as pane 2 of window ``v1``,
so task names are only used to look windows up.
"""

from __future__ import annotations

from pathlib import Path

from worktask import log
from worktask.process import ProcessRunner

_WINDOW_FORMAT = "#{window_id}\t#{window_name}"


def _target(session: str, window_id: str) -> str:
    return f"{session}:{window_id}"


def session_exists(runner: ProcessRunner, session: str) -> bool:
    return runner.run("tmux", ["has-session", "-t", session]).ok


def ensure_session(runner: ProcessRunner, session: str, cwd: Path) -> None:
    """Create a detached session named *session* unless it already exists."""
    if session_exists(runner, session):
        return
    runner.check("tmux", ["new-session", "-d", "-s", session, "-c", str(cwd)])
    log.debug(f"Created tmux session {session}")


def kill_session(runner: ProcessRunner, session: str) -> None:
    runner.check("tmux", ["kill-session", "-t", session])


def list_window_ids(runner: ProcessRunner, session: str) -> list[tuple[str, str]]:
    """``(window_id, window_name)`` pairs for *session*; empty when it is gone."""
    r = runner.run("tmux", ["list-windows", "-t", session, "-F", _WINDOW_FORMAT])
    if not r.ok:
        return []
    windows: list[tuple[str, str]] = []
    for line in r.stdout.splitlines():
        window_id, sep, name = line.partition("\t")
        if sep and window_id.strip():
            windows.append((window_id.strip(), name))
    return windows


def find_window_id(runner: ProcessRunner, session: str, window: str) -> str | None:
    """ID of the first window in *session* named *window*."""
    for window_id, name in list_window_ids(runner, session):
        if name == window:
            return window_id
    return None


def window_exists(runner: ProcessRunner, session: str, window: str) -> bool:
    return find_window_id(runner, session, window) is not None


def window_id_exists(runner: ProcessRunner, session: str, window_id: str) -> bool:
    return any(wid == window_id for wid, _ in list_window_ids(runner, session))


def send_keys(runner: ProcessRunner, session: str, window_id: str, command: str) -> None:
    """Type *command* literally into the window and press Enter."""
    target = _target(session, window_id)
    runner.check("tmux", ["send-keys", "-t", target, "-l", command])
    runner.check("tmux", ["send-keys", "-t", target, "Enter"])


def create_window(
    runner: ProcessRunner,
    session: str,
    window: str,
    cwd: Path,
    command: str | None = None,
) -> str:
    """Open *window* in *session* at *cwd*, optionally running *command* in its shell.

    Returns the new window's ID.
    """
    r = runner.check(
        "tmux",
        ["new-window", "-d", "-P", "-F", "#{window_id}",
         "-t", session, "-n", window, "-c", str(cwd)],
    )
    window_id = r.stdout.strip()
    if command:
        send_keys(runner, session, window_id, command)
    return window_id


def kill_window(runner: ProcessRunner, session: str, window_id: str) -> None:
    runner.check("tmux", ["kill-window", "-t", _target(session, window_id)])


def kill_window_if_exists(
    runner: ProcessRunner,
    session: str,
    window: str,
    window_id: str | None = None,
) -> bool:
    """Kill the window by *window_id* when known, else the first one named *window*."""
    if window_id is None:
        window_id = find_window_id(runner, session, window)
    elif not window_id_exists(runner, session, window_id):
        window_id = None
    if window_id is None:
        return False
    kill_window(runner, session, window_id)
    return True


def attach_command(session: str, window_id: str | None, inside_tmux: bool) -> list[str]:
    """argv that brings the operator to a window (or just the session), inside or outside tmux."""
    target = _target(session, window_id) if window_id else session
    if inside_tmux:
        return ["tmux", "switch-client", "-t", target]
    return ["tmux", "attach-session", "-t", target]
