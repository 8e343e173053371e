"""CLI tests: every command runs in-process through click's CliRunner."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from worktask import __version__
from worktask.cli import main
from worktask.io_utils import read_text, write_text
from worktask.state import JsonStatusStore
from worktask.tasks.model import TaskStatus


@pytest.fixture
def cli_runner():
    """Click CliRunner for invoking the CLI in-process."""
    return CliRunner()


@pytest.fixture
def invoke(cli_runner, project):
    """Run ``wt`` against the project fixture with its fake process runner."""

    def _invoke(*args: str, input: str | None = None):
        return cli_runner.invoke(
            main,
            list(args),
            obj={"root": project.root, "runner": project.runner},
            input=input,
        )

    return _invoke


def _store(project) -> JsonStatusStore:
    store = JsonStatusStore(project.paths.status_file)
    store.load()
    return store


# ── Main entry and help ────────────────────────────────────────────────


class TestCliHelpAndVersion:
    def test_help_long(self, cli_runner):
        r = cli_runner.invoke(main, ["--help"])
        assert r.exit_code == 0
        assert "worktree" in r.output

    def test_help_short(self, cli_runner):
        assert cli_runner.invoke(main, ["-h"]).exit_code == 0

    def test_version(self, cli_runner):
        r = cli_runner.invoke(main, ["--version"])
        assert r.exit_code == 0
        assert __version__ in r.output

    @pytest.mark.parametrize(
        "cmd",
        ["init", "create", "list", "next", "validate", "start", "done", "merged",
         "archive", "reset", "new", "cleanup", "status", "enter", "review", "tail",
         "logs"],
    )
    def test_subcommand_help(self, cli_runner, cmd):
        assert cli_runner.invoke(main, [cmd, "--help"]).exit_code == 0


# ── Init and create ────────────────────────────────────────────────────


class TestInitAndCreate:
    def test_init_in_git_repo(self, cli_runner, git_repo: Path, monkeypatch):
        monkeypatch.chdir(git_repo)
        r = cli_runner.invoke(main, ["init"])
        assert r.exit_code == 0, r.output
        assert (git_repo / ".wt" / "config.yaml").exists()
        assert (git_repo / ".wt" / "tasks").is_dir()

        again = cli_runner.invoke(main, ["init"])
        assert again.exit_code == 0
        assert "Already initialized" in again.output

    def test_create_with_options(self, invoke, project):
        assert invoke("create", "auth", "-m", "Add login").exit_code == 0
        r = invoke("create", "api", "-d", "auth", "-m", "REST")
        assert r.exit_code == 0, r.output
        assert "depends:\n- auth" in read_text(project.paths.task_file("api"))

    def test_create_with_json(self, invoke, project):
        payload = json.dumps({"name": "db", "depends": [], "description": "Schema"})
        r = invoke("create", "--json", payload)
        assert r.exit_code == 0, r.output
        assert project.paths.task_file("db").exists()

    def test_create_json_from_stdin(self, invoke, project):
        r = invoke("create", "--json", "-", input='{"name": "x", "description": "d"}')
        assert r.exit_code == 0, r.output
        assert project.paths.task_file("x").exists()

    def test_create_duplicate_fails(self, invoke):
        invoke("create", "auth")
        r = invoke("create", "auth")
        assert r.exit_code == 1
        assert "already exists" in r.output

    def test_create_missing_dependency_fails(self, invoke):
        r = invoke("create", "api", "-d", "ghost")
        assert r.exit_code == 1
        assert "ghost" in r.output

    def test_create_bad_json(self, invoke):
        assert invoke("create", "--json", "{nope").exit_code == 2

    def test_create_needs_name(self, invoke):
        assert invoke("create").exit_code == 2


# ── Listing, readiness, validation ───────────────────────────────────────


class TestListNextValidate:
    def test_list_json(self, invoke, project):
        project.add_task("b", ["a"])
        project.add_task("a")
        r = invoke("list", "--json")
        assert r.exit_code == 0, r.output
        data = json.loads(r.output)
        assert [(t["index"], t["name"]) for t in data] == [(1, "a"), (2, "b")]
        assert data[1]["waiting_for"] == ["a"]

    def test_list_table_and_tree(self, invoke, project):
        project.add_task("a")
        project.add_task("b", ["a"])
        r = invoke("list")
        assert r.exit_code == 0
        assert "pending" in r.output
        tree = invoke("ls", "--tree")
        assert tree.exit_code == 0
        assert "b" in tree.output

    def test_list_empty(self, invoke):
        r = invoke("list")
        assert r.exit_code == 0
        assert "No tasks" in r.output

    def test_next_json(self, invoke, project):
        project.add_task("a")
        project.add_task("b", ["a"])
        data = json.loads(invoke("next", "--json").output)
        assert data == {"ready": ["a"], "blocked": [{"name": "b", "waiting_for": ["a"]}]}

    def test_validate_ok(self, invoke, project):
        project.add_task("a")
        r = invoke("validate")
        assert r.exit_code == 0
        assert "All tasks valid" in r.output

    def test_validate_cycle(self, invoke, project):
        project.add_task("a", ["b"])
        project.add_task("b", ["a"])
        r = invoke("validate")
        assert r.exit_code == 1
        assert "circular dependency" in r.output

    def test_validate_single_task(self, invoke, project):
        project.add_task("a")
        project.add_task("b", ["ghost"])
        assert invoke("validate", "a").exit_code == 0
        assert invoke("validate", "b").exit_code == 1


# ── Lifecycle commands ──────────────────────────────────────────────────


class TestLifecycleCommands:
    def test_full_lifecycle_by_index(self, invoke, project):
        project.add_task("auth")
        r = invoke("start", "1")
        assert r.exit_code == 0, r.output
        assert "wt/auth-" in r.output
        assert _store(project).get_status("auth") == TaskStatus.RUNNING

        assert invoke("done", "auth").exit_code == 0
        assert invoke("merged", "auth").exit_code == 0
        r = invoke("archive", "auth")
        assert r.exit_code == 0, r.output
        store = _store(project)
        assert store.get_status("auth") == TaskStatus.ARCHIVED
        assert store.get_instance("auth") is None

    def test_start_twice_reports_error(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        r = invoke("start", "auth")
        assert r.exit_code == 1
        assert "already running" in r.output

    def test_start_all(self, invoke, project):
        project.add_task("a")
        project.add_task("b")
        project.add_task("c", ["a"])
        r = invoke("start", "--all")
        assert r.exit_code == 0, r.output
        store = _store(project)
        assert store.get_status("a") == TaskStatus.RUNNING
        assert store.get_status("c") == TaskStatus.PENDING

    def test_start_requires_ref(self, invoke):
        assert invoke("start").exit_code == 2

    def test_start_without_config(self, invoke, project):
        project.add_task("a")
        project.paths.config_file.unlink()
        r = invoke("start", "a")
        assert r.exit_code == 1
        assert "wt init" in r.output

    def test_archive_not_merged_fails(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        r = invoke("archive", "auth")
        assert r.exit_code == 1
        assert "Invalid state transition" in r.output

    def test_reset(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        r = invoke("reset", "auth")
        assert r.exit_code == 0, r.output
        assert _store(project).get_status("auth") == TaskStatus.PENDING
        assert any(project.paths.backups_dir.iterdir())

    def test_unknown_ref(self, invoke):
        r = invoke("done", "ghost")
        assert r.exit_code == 1
        assert "not found" in r.output

    def test_scratch_new_and_archive(self, invoke, project):
        r = invoke("new")
        assert r.exit_code == 0, r.output
        assert "s1" in r.output
        assert _store(project).is_scratch("s1")
        assert invoke("done", "s1").exit_code == 1
        assert invoke("rm", "s1").exit_code == 0
        assert not _store(project).has_entry("s1")

    def test_cleanup(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        invoke("merged", "auth")
        r = invoke("cleanup")
        assert r.exit_code == 0, r.output
        store = _store(project)
        assert store.get_status("auth") == TaskStatus.MERGED
        assert store.get_instance("auth") is None


# ── Monitoring ───────────────────────────────────────────────────────────


class TestMonitoring:
    @pytest.fixture(autouse=True)
    def _home(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path / "home"))

    def _transcript(self, project, name: str) -> Path:
        from worktask import transcript

        inst = _store(project).get_instance(name)
        path = transcript.transcript_path(inst.worktree_path, inst.session_id)
        path.parent.mkdir(parents=True)
        write_text(path, "\n".join(json.dumps(r) for r in [
            {"type": "progress"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "All done"}],
                                              "usage": {"input_tokens": 1}}},
        ]) + "\n")
        return path

    def test_status_json(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        r = invoke("status", "--json")
        assert r.exit_code == 0, r.output
        data = json.loads(r.output)
        assert data["tasks"][0]["name"] == "auth"
        assert data["summary"]["running"] == 1

    def test_status_table(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        r = invoke("st")
        assert r.exit_code == 0, r.output
        assert "auth" in r.output
        assert "1 running" in r.output

    def test_status_empty(self, invoke):
        r = invoke("status")
        assert r.exit_code == 0
        assert "No running or done tasks" in r.output

    def test_tail(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        self._transcript(project, "auth")
        r = invoke("tail", "auth")
        assert r.exit_code == 0, r.output
        assert "All done" in r.output

    def test_tail_not_started(self, invoke, project):
        project.add_task("auth")
        r = invoke("tail", "auth")
        assert r.exit_code == 1
        assert "no running instance" in r.output

    def test_logs_export(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        src = self._transcript(project, "auth")
        r = invoke("logs", "auth")
        assert r.exit_code == 0, r.output
        dest = project.paths.logs_dir / "auth" / f"{src.stem[:8]}.jsonl"
        lines = read_text(dest).splitlines()
        assert len(lines) == 1
        assert "usage" not in lines[0]

    def test_review_json_after_agent_exit(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        self._transcript(project, "auth")
        project.runner.close_window("test-wt", "auth")
        r = invoke("review", "auth", "--json")
        assert r.exit_code == 0, r.output
        data = json.loads(r.output)
        assert data["task"] == "auth"
        assert data["metrics"]["num_turns"] == 1
        assert data["summary"] == "All done"
        assert data["commands"]["resume"].startswith("cd ")
        assert _store(project).get_status("auth") == TaskStatus.DONE

    def test_review_text(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        invoke("done", "auth")
        self._transcript(project, "auth")
        r = invoke("review", "1")
        assert r.exit_code == 0, r.output
        assert "Task: auth" in r.output
        assert "## Statistics" in r.output
        assert "All done" in r.output
        session_id = _store(project).get_instance("auth").session_id
        assert f"-r {session_id}" in r.output

    def test_review_still_running(self, invoke, project):
        project.add_task("auth")
        invoke("start", "auth")
        self._transcript(project, "auth")
        r = invoke("review", "auth")
        assert r.exit_code == 1
        assert "still running" in r.output

    def test_enter_attaches_to_window(self, invoke, project, monkeypatch):
        monkeypatch.delenv("TMUX", raising=False)
        project.add_task("auth")
        invoke("start", "auth")
        window_id = _store(project).get_instance("auth").tmux_window_id
        r = invoke("enter", "auth")
        assert r.exit_code == 0, r.output
        assert project.runner.attached == [
            ["tmux", "attach-session", "-t", f"test-wt:{window_id}"]
        ]

    def test_enter_pending_task_fails(self, invoke, project):
        project.add_task("auth")
        r = invoke("enter", "auth")
        assert r.exit_code == 1
        assert "need running or done" in r.output
        assert project.runner.attached == []
