"""``wt`` command line: create tasks, start agents in worktrees, track them to archive.

Installed as ``wt`` console_script.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from worktask import __version__
from worktask.config import Paths, init_project, resolve_repo_root
from worktask.errors import TaskNotStarted, TranscriptNotFound, WtError


# ── Custom Click group: short aliases and uniform error reporting ────

class WtGroup(click.Group):
    """Resolve command aliases and turn :class:`WtError` into a one-line error."""

    _ALIASES: dict[str, str] = {
        "ls": "list",
        "st": "status",
        "rm": "archive",
    }

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        return super().get_command(ctx, self._ALIASES.get(cmd_name, cmd_name))

    def invoke(self, ctx: click.Context):
        from worktask import log

        try:
            return super().invoke(ctx)
        except WtError as e:
            log.error(escape(str(e)))
            ctx.exit(1)


CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def _root(ctx: click.Context) -> Path:
    return ctx.obj["root"]


def _orchestrator(ctx: click.Context):
    """Open the project once per invocation."""
    from worktask.lifecycle import open_project

    if "orchestrator" not in ctx.obj:
        ctx.obj["orchestrator"] = open_project(_root(ctx), runner=ctx.obj.get("runner"))
    return ctx.obj["orchestrator"]


def _read_only_view(ctx: click.Context):
    """Catalog and store without requiring a config file."""
    from worktask.state import JsonStatusStore
    from worktask.tasks.io import load_catalog

    paths = Paths(_root(ctx))
    store = JsonStatusStore(paths.status_file)
    store.load()
    return paths, load_catalog(paths.tasks_dir), store


def _emit_json(data: object) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _report_warnings(result) -> None:
    from worktask import log

    if result.warnings:
        log.warn(f"{result.name}: completed with {len(result.warnings)} warning(s)")


@click.group(cls=WtGroup, context_settings=CONTEXT_SETTINGS)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, "-V", "--version", prog_name="wt")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """wt: run dependent coding-agent tasks in git worktrees and tmux windows.

    \b
    WORKFLOW:
      1. wt init                             # create .wt/ with a config
      2. wt create auth -m "Add login"       # define tasks and dependencies
      3. wt create api -d auth -m "REST API"
      4. wt start auth                       # worktree + branch + tmux window
      5. wt done auth / wt merged auth       # track progress
      6. wt archive auth                     # release resources
    """
    from worktask import log

    log.set_verbose(verbose)
    ctx.ensure_object(dict)
    ctx.obj.setdefault("root", resolve_repo_root())


# ── Project and task definitions ───────────────────────────────────


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create .wt/ with tasks/ and a default config.yaml."""
    from worktask import log

    paths = Paths(_root(ctx))
    created = init_project(paths)
    if not created:
        log.info(f"Already initialized: {paths.wt_dir}")
        return
    for path in created:
        log.success(f"Created {path.relative_to(paths.root)}")


@main.command()
@click.argument("name", required=False)
@click.option("--depends", "-d", multiple=True, help="Dependency task name (repeatable)")
@click.option("--description", "-m", default="", help="Task description")
@click.option("--json", "json_input", default=None,
              help='JSON object {"name", "depends", "description"}; "-" reads stdin')
@click.pass_context
def create(
    ctx: click.Context,
    name: str | None,
    depends: tuple[str, ...],
    description: str,
    json_input: str | None,
) -> None:
    """Define a new task."""
    from worktask import log
    from worktask.tasks.io import create_task

    if json_input is not None:
        raw = sys.stdin.read() if json_input == "-" else json_input
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"invalid JSON: {e}", param_hint="--json") from e
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise click.BadParameter('expected an object with a "name" string', param_hint="--json")
        name = data["name"]
        depends = tuple(data.get("depends") or ())
        description = str(data.get("description") or "")
    elif not name:
        raise click.UsageError("Provide a task NAME or --json.")

    paths, catalog, _ = _read_only_view(ctx)
    path = create_task(paths.tasks_dir, catalog, name, list(depends), description)
    log.success(f"Task '{name}' created: {path.relative_to(paths.root)}")
    if depends:
        log.info(f"  Depends: {', '.join(depends)}")


def _dependency_tree(catalog, store) -> Tree:
    tree = Tree("[bold]tasks[/bold]")

    def add(node: Tree, name: str, path: tuple[str, ...]) -> None:
        status = store.get_status(name)
        branch = node.add(f"{status.icon} {name} [dim]({status.value})[/dim]")
        if name in path:
            branch.add("[red]cycle[/red]")
            return
        for child in catalog.dependents_of(name):
            add(branch, child, path + (name,))

    for name in catalog.names():
        task = catalog.get(name)
        if not any(dep in catalog for dep in task.depends):
            add(tree, name, ())
    return tree


@main.command("list")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.option("--tree", is_flag=True, help="Show tasks as a dependency tree")
@click.pass_context
def list_cmd(ctx: click.Context, as_json: bool, tree: bool) -> None:
    """List tasks with their status and dependencies."""
    from worktask import log
    from worktask.scheduler import waiting_for

    _, catalog, store = _read_only_view(ctx)
    names = catalog.names()

    if as_json:
        _emit_json([
            {
                "index": i,
                "name": name,
                "status": store.get_status(name).value,
                "depends": list(catalog.tasks[name].depends),
                "waiting_for": waiting_for(catalog, store, name),
            }
            for i, name in enumerate(names, start=1)
        ])
        return

    if not names:
        log.info("No tasks. Create one with `wt create`.")
        return

    if tree:
        log.console.print(_dependency_tree(catalog, store))
        return

    table = Table(box=None, pad_edge=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Depends")
    for i, name in enumerate(names, start=1):
        status = store.get_status(name)
        deps = ", ".join(catalog.tasks[name].depends) or "-"
        table.add_row(str(i), name, f"{status.icon} {status.value}", deps)
    log.console.print(table)


@main.command("next")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def next_cmd(ctx: click.Context, as_json: bool) -> None:
    """Show pending tasks that can start now and what blocks the rest."""
    from worktask import log
    from worktask.scheduler import explain_block, readiness

    _, catalog, store = _read_only_view(ctx)
    report = readiness(catalog, store)

    if as_json:
        _emit_json({
            "ready": report.ready,
            "blocked": [{"name": b.name, "waiting_for": b.waiting_for} for b in report.blocked],
        })
        return

    if not report.ready and not report.blocked:
        log.info("No pending tasks.")
        return
    if report.ready:
        log.console.print("[bold green]Ready:[/bold green]")
        for name in report.ready:
            log.console.print(f"  {name}")
    if report.blocked:
        log.console.print("[bold yellow]Blocked:[/bold yellow]")
        for blocked in report.blocked:
            log.console.print(
                f"  {blocked.name} [dim]{explain_block(catalog, store, blocked.name)}[/dim]"
            )


@main.command()
@click.argument("ref", required=False)
@click.pass_context
def validate(ctx: click.Context, ref: str | None) -> None:
    """Check definitions for missing dependencies, name mismatches and cycles."""
    from worktask import log
    from worktask.tasks.validate import validate as validate_catalog

    _, catalog, store = _read_only_view(ctx)
    problems = validate_catalog(catalog)
    if ref is not None:
        name = store.resolve_ref(ref, catalog.names())
        task = catalog.get(name)
        subjects = {name}
        if task is not None and task.file_path is not None:
            subjects.add(str(task.file_path))
        problems = [p for p in problems if p[0] in subjects]

    if not problems:
        log.success("All tasks valid.")
        return
    for subject, message in problems:
        log.error(f"{escape(subject)}: {escape(message)}")
    ctx.exit(1)


# ── Lifecycle ──────────────────────────────────────────────────────


@main.command()
@click.argument("ref", required=False)
@click.option("--all", "start_all", is_flag=True, help="Start every ready task")
@click.pass_context
def start(ctx: click.Context, ref: str | None, start_all: bool) -> None:
    """Start a task: worktree, branch, tmux window and agent."""
    from worktask import log

    orch = _orchestrator(ctx)
    if start_all:
        batch = orch.start_ready()
        if not batch.started and not batch.failed:
            log.info("No ready tasks.")
        for result in batch.started:
            log.success(f"Started '{result.name}' on {result.instance.branch}")
        if batch.failed:
            ctx.exit(1)
        return
    if ref is None:
        raise click.UsageError("Provide a task REF or --all.")

    result = orch.start(orch.resolve(ref))
    instance = result.instance
    log.success(f"Task '{result.name}' started.")
    log.console.print(f"  Worktree: {instance.worktree_path}")
    log.console.print(f"  Branch:   {instance.branch}")
    log.console.print(f"  Window:   {instance.tmux_session}:{instance.tmux_window}")


@main.command()
@click.argument("ref")
@click.pass_context
def done(ctx: click.Context, ref: str) -> None:
    """Mark a running task done and close its window."""
    from worktask import log

    orch = _orchestrator(ctx)
    result = orch.done(orch.resolve(ref))
    _report_warnings(result)
    log.success(f"Task '{result.name}' marked done.")


@main.command()
@click.argument("ref")
@click.pass_context
def merged(ctx: click.Context, ref: str) -> None:
    """Mark a task merged; its worktree and branch stay for review."""
    from worktask import log

    orch = _orchestrator(ctx)
    result = orch.merged(orch.resolve(ref))
    _report_warnings(result)
    log.success(f"Task '{result.name}' marked merged.")


@main.command()
@click.argument("ref")
@click.pass_context
def archive(ctx: click.Context, ref: str) -> None:
    """Release a merged task's worktree, branch and window."""
    from worktask import log

    orch = _orchestrator(ctx)
    result = orch.archive(orch.resolve(ref))
    _report_warnings(result)
    if result.removed:
        log.success(f"Scratch task '{result.name}' removed.")
    else:
        log.success(f"Task '{result.name}' archived.")


@main.command()
@click.argument("ref")
@click.pass_context
def reset(ctx: click.Context, ref: str) -> None:
    """Back up and discard a task's worktree and return it to pending."""
    from worktask import log

    orch = _orchestrator(ctx)
    result = orch.reset(orch.resolve(ref))
    if result.message:
        return
    _report_warnings(result)
    if result.removed:
        log.success(f"Scratch task '{result.name}' removed.")
    else:
        log.success(f"Task '{result.name}' reset to pending.")


@main.command()
@click.argument("name", required=False)
@click.pass_context
def new(ctx: click.Context, name: str | None) -> None:
    """Open a scratch worktree and window with no task definition."""
    from worktask import log

    orch = _orchestrator(ctx)
    result = orch.new_scratch(name)
    log.success(f"Scratch task '{result.name}' created.")
    log.console.print(f"  Worktree: {result.instance.worktree_path}")
    log.console.print(f"  Window:   {result.instance.tmux_session}:{result.instance.tmux_window}")


@main.command()
@click.option("--all", "all_tasks", is_flag=True,
              help="Release every task's resources and kill the tmux session")
@click.pass_context
def cleanup(ctx: click.Context, all_tasks: bool) -> None:
    """Release resources still held by merged tasks."""
    from worktask import log

    orch = _orchestrator(ctx)
    results = orch.cleanup(all_tasks=all_tasks)
    if not results:
        log.info("Nothing to clean up.")
        return
    for result in results:
        _report_warnings(result)
        log.success(f"Released resources of '{result.name}'")


# ── Monitoring ─────────────────────────────────────────────────────


def _status_table(report) -> Table:
    table = Table(box=None, pad_edge=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Time", justify="right")
    table.add_column("Ctx", justify="right")
    table.add_column("+/-", justify="right")
    table.add_column("Tool")
    for row in report.tasks:
        icon = row.status.icon
        if row.status.value == "running" and row.active is False:
            icon = f"[yellow]{icon}[/yellow]"
        elif row.status.value == "running":
            icon = f"[green]{icon}[/green]"
        table.add_row(
            str(row.index) if row.index else "-",
            row.name + (" [dim](scratch)[/dim]" if row.scratch else ""),
            f"{icon} {row.status.value}",
            row.duration or "-",
            f"{row.context_percent}%" if row.context_percent is not None else "-",
            f"[green]+{row.additions}[/green] [red]-{row.deletions}[/red]",
            escape(row.current_tool) if row.current_tool else "",
        )
    return table


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Progress of running and done tasks."""
    from worktask import log
    from worktask.status import collect_status

    report = collect_status(_orchestrator(ctx))
    if as_json:
        _emit_json(report.to_dict())
        return
    for name in report.auto_done:
        log.info(f"Task '{name}' window closed; marked done.")
    if not report.tasks:
        log.info("No running or done tasks.")
        return
    log.console.print(_status_table(report))
    s = report.summary
    log.console.print(
        f"[dim]{s.running} running, {s.done} done, "
        f"+{s.total_additions} -{s.total_deletions}[/dim]"
    )


def _transcript_for(orch, name: str) -> Path:
    from worktask import transcript

    instance = orch.store.get_instance(name)
    if instance is None:
        raise TaskNotStarted(name)
    path = transcript.find_transcript_for_instance(instance)
    if path is None:
        raise TranscriptNotFound(name)
    return path


@main.command()
@click.argument("ref")
@click.pass_context
def enter(ctx: click.Context, ref: str) -> None:
    """Enter a task's tmux window to view/interact with the agent."""
    orch = _orchestrator(ctx)
    orch.enter(orch.resolve(ref), inside_tmux=bool(os.environ.get("TMUX")))


SUMMARY_DISPLAY_LIMIT = 2000


@main.command()
@click.argument("ref")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def review(ctx: click.Context, ref: str, as_json: bool) -> None:
    """Show what a finished agent did: tokens, turns, diff and its last words."""
    from worktask import log
    from worktask.status import collect_review, format_duration

    orch = _orchestrator(ctx)
    report = collect_review(orch, orch.resolve(ref))
    if as_json:
        _emit_json(report.to_dict())
        return

    if report.auto_done:
        log.info(f"Agent of '{report.name}' has exited; marked done.")
    console = log.console
    console.print(f"[bold]Task: {report.name}[/bold] (done)")
    m = report.metrics
    if m is None:
        console.print("[dim](Unable to parse transcript)[/dim]")
    else:
        if m.duration_secs is not None:
            console.print(f"Duration: {format_duration(m.duration_secs)}")
        console.print()
        console.print("[bold]## Statistics[/bold]")
        console.print(
            f"  Input: {m.input_tokens} tokens | Output: {m.output_tokens} tokens "
            f"| Turns: {m.num_turns}"
        )
        console.print(f"  Context usage: {m.context_percent}%")
    if report.additions or report.deletions:
        console.print()
        console.print("[bold]## Code Changes[/bold]")
        console.print(
            f"  [green]+{report.additions}[/green] [red]-{report.deletions}[/red] "
            f"in {report.commits} commit(s)"
        )
    if m is not None and m.summary:
        summary = m.summary
        if len(summary) > SUMMARY_DISPLAY_LIMIT:
            summary = summary[:SUMMARY_DISPLAY_LIMIT] + "..."
        console.print()
        console.print("[bold]## Result[/bold]")
        click.echo(summary)
    console.print()
    console.print("[dim]# Resume the conversation:[/dim]")
    click.echo(report.resume_command)


@main.command()
@click.argument("ref")
@click.option("-n", "count", type=int, default=1, show_default=True,
              help="Number of assistant messages")
@click.pass_context
def tail(ctx: click.Context, ref: str, count: int) -> None:
    """Print the agent's last messages for a task."""
    from worktask import log, transcript

    orch = _orchestrator(ctx)
    name = orch.resolve(ref)
    messages = transcript.last_messages(_transcript_for(orch, name), count)
    if not messages:
        log.info(f"No assistant messages yet for '{name}'.")
        return
    for i, message in enumerate(messages):
        if i:
            log.console.print("[dim]───[/dim]")
        click.echo(message)


@main.command()
@click.argument("ref", required=False)
@click.pass_context
def logs(ctx: click.Context, ref: str | None) -> None:
    """Export filtered transcripts to .wt/logs/<task>/."""
    from worktask import log, transcript

    orch = _orchestrator(ctx)
    if ref is not None:
        names = [orch.resolve(ref)]
    else:
        names = [n for n in orch.store.names() if orch.store.get_instance(n) is not None]
    if not names:
        log.info("No tasks with transcripts.")
        return

    for name in names:
        src = _transcript_for(orch, name)
        dest = orch.paths.logs_dir / name / f"{src.stem[:8]}.jsonl"
        written = transcript.extract_to_log(
            src,
            dest,
            orch.config.logs.exclude_types,
            orch.config.logs.exclude_fields,
        )
        log.success(f"{name}: {written} records -> {dest.relative_to(orch.root)}")
