"""Tests for worktask.tasks.validate: missing dependencies, name mismatches, cycles."""

from __future__ import annotations

from pathlib import Path

from worktask.io_utils import write_text
from worktask.tasks.io import format_task_markdown, load_catalog
from worktask.tasks.model import TaskCatalog, TaskDefinition
from worktask.tasks.validate import detect_cycle, validate


# ── Helpers ─────────────────────────────────────────────────────────


def _catalog(*tasks: tuple[str, list[str]]) -> TaskCatalog:
    return TaskCatalog(tasks={n: TaskDefinition(n, tuple(deps)) for n, deps in tasks})


# ═══════════════════════════════════════════════════════════════════
#  Cycle Detection
# ═══════════════════════════════════════════════════════════════════


class TestDetectCycle:
    def test_chain_has_no_cycle(self):
        """A straight chain is acyclic."""
        c = _catalog(("a", []), ("b", ["a"]), ("c", ["b"]))
        assert all(detect_cycle(c, n) is None for n in "abc")

    def test_diamond_has_no_cycle(self):
        """Shared dependencies are not a cycle."""
        c = _catalog(("a", []), ("b", ["a"]), ("c", ["a"]), ("d", ["b", "c"]))
        assert all(detect_cycle(c, n) is None for n in "abcd")

    def test_direct_cycle(self):
        """Two tasks depending on each other form a cycle."""
        c = _catalog(("a", ["b"]), ("b", ["a"]))
        assert detect_cycle(c, "a") == ["a", "b", "a"]

    def test_self_dependency(self):
        """A task depending on itself is a cycle."""
        assert detect_cycle(_catalog(("a", ["a"])), "a") == ["a", "a"]

    def test_cycle_reached_from_outside(self):
        """A cycle is found when entered from an acyclic task."""
        c = _catalog(("x", ["a"]), ("a", ["b"]), ("b", ["a"]))
        assert detect_cycle(c, "x") == ["a", "b", "a"]

    def test_back_edge_contains_both_endpoints(self):
        """The reported cycle includes both ends of the back edge."""
        c = _catalog(("a", ["c"]), ("b", ["a"]), ("c", ["b"]))
        cycle = detect_cycle(c, "c")
        assert cycle is not None
        assert {"a", "c"} <= set(cycle)

    def test_missing_dependency_ignored(self):
        """Unknown dependencies do not count as cycles."""
        assert detect_cycle(_catalog(("a", ["ghost"])), "a") is None


# ═══════════════════════════════════════════════════════════════════
#  validate()
# ═══════════════════════════════════════════════════════════════════


class TestValidate:
    def test_clean(self):
        """A valid catalog has no issues."""
        assert validate(_catalog(("a", []), ("b", ["a"]))) == []

    def test_missing_dependency(self):
        """Unknown dependencies are reported."""
        problems = validate(_catalog(("a", ["ghost", "ghost"])))
        assert problems == [("a", "depends on 'ghost' which doesn't exist")]

    def test_cycle_names_both_members(self):
        """Every cycle member gets an issue."""
        problems = validate(_catalog(("a", ["b"]), ("b", ["a"])))
        subjects = {s for s, msg in problems if "circular dependency" in msg}
        assert subjects == {"a", "b"}

    def test_outsider_not_reported_as_cycle_member(self):
        """Tasks only leading into a cycle are not members."""
        problems = validate(_catalog(("x", ["a"]), ("a", ["b"]), ("b", ["a"])))
        assert "x" not in {s for s, _ in problems}

    def test_name_mismatch(self, tmp_path: Path):
        """A name field differing from the file name is reported."""
        write_text(tmp_path / "b.md", format_task_markdown("a", [], ""))
        problems = validate(load_catalog(tmp_path))
        assert problems == [
            (str(tmp_path / "b.md"), "frontmatter name 'a' doesn't match filename 'b'")
        ]

    def test_load_errors_reported(self, tmp_path: Path):
        """Unreadable task files become issues."""
        write_text(tmp_path / "bad.md", "oops")
        problems = validate(load_catalog(tmp_path))
        assert len(problems) == 1
        assert problems[0][0] == str(tmp_path / "bad.md")

    def test_sorted_by_subject(self):
        """Issues are sorted by task name."""
        problems = validate(_catalog(("z", ["q"]), ("a", ["q"])))
        assert [s for s, _ in problems] == ["a", "z"]
