"""CLI entrypoint for nofx."""

from __future__ import annotations

import asyncio
import dataclasses
import shlex
import shutil
from pathlib import Path
from typing import TextIO

import click
from rich.console import Console
from rich.table import Table

from nofx.adapters.base import SubprocessChannelProvider
from nofx.commands import CommandSurface, Notification, Runtime, build_runtime
from nofx.config.loader import DEFAULT_CONFIG_PATH, load_config
from nofx.config.schema import NofxConfig
from nofx.config.templates import TemplateCatalog
from nofx.errors import NofxError
from nofx.persistence.store import snapshot_problems
from nofx.protocol.models import TaskStatus
from nofx.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

_STATUS_STYLE = {
    "idle": "green",
    "working": "yellow",
    "error": "red",
    "offline": "dim",
    "queued": "dim",
    "ready": "cyan",
    "assigned": "yellow",
    "in-progress": "yellow",
    "completed": "green",
    "failed": "red",
    "blocked": "magenta",
}

_SAMPLE_CONFIG = """version: 1
run:
  name: {name}
  state_dir: .nofx
scheduler:
  auto_assign: true
  fallback_to_any_idle: false
lifecycle:
  max_agents: 3
  spawn_attempts: 3
backend:
  name: claude
templates:
  - template_id: api-worker
    name: API Worker
    type: backend
    capabilities: [python, apis, database]
    system_prompt: You implement and test HTTP endpoints.
"""


def _console() -> Console:
    return Console(width=120, highlight=False)


def _config(ctx: click.Context) -> NofxConfig:
    return ctx.obj["config"]


def _echo_note(note: Notification) -> None:
    click.echo(("[OK] " if note.ok else "[FAIL] ") + note.message)


def _offline(ctx: click.Context, *, read_only: bool = False) -> tuple[Runtime, CommandSurface]:
    try:
        rt = build_runtime(_config(ctx), read_only=read_only)
    except NofxError as exc:
        raise click.ClickException(str(exc)) from exc
    rt.lifecycle.load_offline()
    return rt, CommandSurface(rt.scheduler, rt.lifecycle)


def _finish(note: Notification) -> None:
    _echo_note(note)
    if not note.ok:
        raise SystemExit(1)


@click.group()
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Config file (default: {DEFAULT_CONFIG_PATH})",
)
@click.option("--state-dir", default=None, help="Override run.state_dir from config")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path | None,
    state_dir: str | None,
    debug: bool,
    json_logs: bool,
) -> None:
    """nofx: schedule tasks across a pool of terminal coding agents."""
    try:
        cfg = load_config(config_path)
    except NofxError as exc:
        raise click.ClickException(str(exc)) from exc
    if state_dir:
        cfg.run.state_dir = state_dir
    setup_logging(debug=debug or cfg.run.debug, json_output=json_logs or cfg.run.json_logs)
    ctx.obj = {"config": cfg}


@main.command("init")
@click.argument("target_dir", type=click.Path(file_okay=False, path_type=Path), required=False)
@click.option("--force", is_flag=True, help="Overwrite an existing config")
def init_command(target_dir: Path | None, force: bool) -> None:
    """Write a starter .nofx/nofx.yaml."""
    root = target_dir or Path.cwd()
    path = root / DEFAULT_CONFIG_PATH
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force)")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_SAMPLE_CONFIG.format(name=root.resolve().name or "nofx"), encoding="utf-8")
    click.echo(f"Wrote {path}")


@main.command("doctor")
@click.pass_context
def doctor_command(ctx: click.Context) -> None:
    """Check that the configured backend can be started."""
    cfg = _config(ctx)
    ok = True
    try:
        cmd = SubprocessChannelProvider(cfg.backend).build_command()
    except NofxError as exc:
        click.echo(f"[FAIL] backend: {exc}")
        raise SystemExit(1) from exc
    if shutil.which(cmd[0]) is None:
        click.echo(f"[FAIL] {cmd[0]} not found on PATH")
        ok = False
    else:
        click.echo(f"[OK] {cmd[0]} found")
    state_dir = Path(cfg.run.working_dir) / cfg.run.state_dir
    click.echo(f"[OK] state dir: {state_dir}")
    if not ok:
        raise SystemExit(1)


@main.command("templates")
@click.pass_context
def templates_command(ctx: click.Context) -> None:
    """List agent templates."""
    catalog = TemplateCatalog(_config(ctx).templates)
    table = Table(title="Agent templates")
    table.add_column("id")
    table.add_column("type")
    table.add_column("capabilities")
    for tid in catalog.ids():
        t = catalog.get(tid)
        table.add_row(tid, t.type, ", ".join(t.capabilities))
    _console().print(table)


@main.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """Show agents and tasks from the saved state."""
    rt, _ = _offline(ctx, read_only=True)
    _print_status(rt, _console())


def _print_status(rt: Runtime, console: Console) -> None:
    agents = Table(title="Agents")
    for col in ("id", "name", "type", "status", "task", "done"):
        agents.add_column(col)
    for agent in rt.scheduler.registry.list():
        style = _STATUS_STYLE.get(agent.status.value, "")
        agents.add_row(
            agent.agent_id,
            agent.name,
            agent.agent_type,
            f"[{style}]{agent.status.value}[/]" if style else agent.status.value,
            agent.current_task.task_id if agent.current_task else "-",
            str(agent.tasks_completed),
        )
    console.print(agents)

    tasks = Table(title="Tasks")
    for col in ("id", "title", "priority", "status", "agent", "depends on"):
        tasks.add_column(col)
    for task in rt.scheduler.list_tasks():
        style = _STATUS_STYLE.get(task.status.value, "")
        tasks.add_row(
            task.task_id,
            task.title,
            task.priority.value,
            f"[{style}]{task.status.value}[/]" if style else task.status.value,
            task.assigned_agent_id or "-",
            ", ".join(task.depends_on) or "-",
        )
    console.print(tasks)
    stats = rt.scheduler.stats()
    console.print(
        f"{stats['tasks']['total']} task(s), {stats['queue']['size']} ready; "
        f"{stats['agents']['total']} agent(s), {stats['agents']['idle']} idle"
    )


@main.command("add-task")
@click.argument("title")
@click.option("--description", "-d", default=None, help="Defaults to the title")
@click.option("--priority", "-p", type=click.Choice(["low", "medium", "high", "critical"]), default="medium")
@click.option("--requires", "-r", multiple=True, help="Required capability (repeatable)")
@click.option("--depends-on", multiple=True, help="Task id this task waits for (repeatable)")
@click.option("--conflicts-with", multiple=True, help="Task id that must not run concurrently")
@click.option("--file", "files", multiple=True, help="File or directory the task touches")
@click.pass_context
def add_task_command(
    ctx: click.Context,
    title: str,
    description: str | None,
    priority: str,
    requires: tuple[str, ...],
    depends_on: tuple[str, ...],
    conflicts_with: tuple[str, ...],
    files: tuple[str, ...],
) -> None:
    """Queue a task in the saved state."""
    _, surface = _offline(ctx)
    _finish(surface.add_task({
        "title": title,
        "description": description or title,
        "priority": priority,
        "required_capabilities": list(requires),
        "depends_on": list(depends_on),
        "conflicts_with": list(conflicts_with),
        "files": list(files),
    }))


@main.command("depend")
@click.argument("task_id")
@click.argument("depends_on_id")
@click.pass_context
def depend_command(ctx: click.Context, task_id: str, depends_on_id: str) -> None:
    """Make TASK_ID wait for DEPENDS_ON_ID."""
    _, surface = _offline(ctx)
    _finish(surface.add_dependency(task_id, depends_on_id))


@main.command("retry")
@click.argument("task_id")
@click.pass_context
def retry_command(ctx: click.Context, task_id: str) -> None:
    """Reopen a blocked or failed task."""
    _, surface = _offline(ctx)
    _finish(surface.retry_task(task_id))


@main.command("fail")
@click.argument("task_id")
@click.option("--reason", default="", help="Recorded on the task")
@click.pass_context
def fail_command(ctx: click.Context, task_id: str, reason: str) -> None:
    """Mark a task failed; its dependents become blocked."""
    _, surface = _offline(ctx)
    _finish(surface.fail_task(task_id, reason))


@main.command("resolve")
@click.argument("task_id")
@click.argument("other_id")
@click.argument("resolution", type=click.Choice(["block", "allow"]))
@click.pass_context
def resolve_command(ctx: click.Context, task_id: str, other_id: str, resolution: str) -> None:
    """Keep two tasks serialized (block) or let them overlap (allow)."""
    _, surface = _offline(ctx)
    _finish(surface.resolve_conflict(task_id, other_id, resolution))


@main.command("priority")
@click.argument("task_id")
@click.argument("level", type=click.Choice(["low", "medium", "high", "critical"]))
@click.pass_context
def priority_command(ctx: click.Context, task_id: str, level: str) -> None:
    """Change a task's priority."""
    _, surface = _offline(ctx)
    _finish(surface.set_priority(task_id, level))


@main.command("plan")
@click.pass_context
def plan_command(ctx: click.Context) -> None:
    """Print tasks in dependency order and the current ready queue."""
    rt, _ = _offline(ctx, read_only=True)
    sched = rt.scheduler
    click.echo("Dependency order:")
    for i, tid in enumerate(sched.graph.topological_order(), 1):
        task = sched.require_task(tid)
        click.echo(f"  {i}. {tid} [{task.status}] {task.title}")
    click.echo("Ready queue:")
    for task in sched.queue.peek_ready():
        click.echo(f"  - {task.task_id} ({task.priority}) {task.title}")
    blocked = sched.list_tasks(TaskStatus.BLOCKED)
    if blocked:
        click.echo("Blocked:")
        for task in blocked:
            click.echo(f"  - {task.task_id}: {task.blocked_reason or 'no reason recorded'}")


@main.command("validate")
@click.pass_context
def validate_command(ctx: click.Context) -> None:
    """Check the saved state for consistency problems."""
    rt, _ = _offline(ctx, read_only=True)
    try:
        raw_agents = rt.store.load_agent_snapshot()
        raw_tasks = rt.store.load_task_snapshot()
    except NofxError as exc:
        raise click.ClickException(str(exc)) from exc
    problems = snapshot_problems(raw_agents, raw_tasks) + rt.scheduler.check_invariants()
    logger.info("snapshot_validated", tasks=len(raw_tasks), agents=len(raw_agents), problems=len(problems))
    if not problems:
        click.echo(f"[OK] {len(rt.scheduler.list_tasks())} task(s), no problems")
        return
    for problem in problems:
        click.echo(f"[FAIL] {problem}")
    raise SystemExit(1)


@main.command("run")
@click.option("--agent", "agents", multiple=True, help="Template id to spawn (repeatable)")
@click.option("--backend", default=None, help="Override backend.name from config")
@click.option("--no-restore", is_flag=True, help="Ignore the saved state")
@click.pass_context
def run_command(ctx: click.Context, agents: tuple[str, ...], backend: str | None, no_restore: bool) -> None:
    """Start agents and accept completion signals on stdin.

    Console commands: status, add TITLE [:: DESCRIPTION], done TASK_ID,
    fail TASK_ID [REASON], retry TASK_ID, assign TASK_ID AGENT_ID,
    remove AGENT_ID, quit.
    """
    cfg = _config(ctx)
    if backend:
        cfg = dataclasses.replace(cfg, backend=dataclasses.replace(cfg.backend, name=backend))
    if no_restore:
        cfg = dataclasses.replace(cfg, lifecycle=dataclasses.replace(cfg.lifecycle, restore_on_start=False))
    try:
        rt = build_runtime(cfg)
    except NofxError as exc:
        raise click.ClickException(str(exc)) from exc
    stream = click.get_text_stream("stdin")
    asyncio.run(_run_session(rt, agents, stream))


async def _run_session(rt: Runtime, templates: tuple[str, ...], stream: TextIO) -> None:
    surface = CommandSurface(rt.scheduler, rt.lifecycle)
    logger.info("session_started", backend=rt.config.backend.name, templates=list(templates))
    if rt.config.lifecycle.restore_on_start:
        restored = await rt.lifecycle.restore()
        if restored:
            click.echo(f"Restored {len(restored)} agent(s)")
    for template_id in templates:
        _echo_note(await surface.add_agent(template_id))
    loop = asyncio.get_running_loop()
    try:
        while True:
            await rt.lifecycle.drain()
            line = await loop.run_in_executor(None, stream.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line in ("quit", "exit"):
                break
            reply = await _console_command(rt, surface, line)
            if isinstance(reply, Notification):
                _echo_note(reply)
            elif reply:
                click.echo(reply)
    finally:
        await rt.lifecycle.shutdown()
        logger.info("session_stopped", tasks=rt.scheduler.stats()["tasks"])


async def _console_command(rt: Runtime, surface: CommandSurface, line: str) -> Notification | str:
    verb, _, rest = line.partition(" ")
    rest = rest.strip()
    if verb == "status":
        _print_status(rt, _console())
        return ""
    if verb == "add":
        title, _, description = rest.partition("::")
        return surface.add_task({"title": title.strip(), "description": (description or title).strip()})
    try:
        args: list[str] = shlex.split(rest)
    except ValueError as exc:
        return Notification(ok=False, message=f"Cannot parse '{line}': {exc}")
    if verb == "done" and len(args) == 1:
        return surface.complete_task(args[0])
    if verb == "fail" and args:
        return surface.fail_task(args[0], " ".join(args[1:]))
    if verb == "retry" and len(args) == 1:
        return surface.retry_task(args[0])
    if verb == "assign" and len(args) == 2:
        return surface.assign_task(args[0], args[1])
    if verb == "remove" and len(args) == 1:
        return await surface.delete_agent(args[0])
    return Notification(ok=False, message=f"Unknown command: {line}")

