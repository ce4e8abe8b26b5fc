"""CLI entry point for the build orchestrator."""

import json
import logging
import os
import signal
import sqlite3
import sys
import threading
from datetime import timedelta

import click

from build_orchestrator.config import get_config
from build_orchestrator.core import counters as counters_mod
from build_orchestrator.core import events as events_mod
from build_orchestrator.core import leases as leases_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import recovery as recovery_mod
from build_orchestrator.core import sessions as sessions_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.db.engine import get_db, parse_ts

logger = logging.getLogger(__name__)


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _log_thread_exception(args):
    logger.error(
        "Unhandled exception in thread %s",
        args.thread.name if args.thread else "?",
        exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
    )


def _parse_timestamp(ctx, param, value):
    if value is None:
        return None
    try:
        return parse_ts(value)
    except ValueError:
        raise click.BadParameter(f"not an ISO timestamp: {value}")


def _require_project(db, project_id):
    project = projects_mod.get_project(db, project_id)
    if not project:
        click.echo(f"Project not found: {project_id}", err=True)
        sys.exit(1)
    return project


@click.group()
def main():
    """bo - Build Orchestrator CLI"""
    _configure_logging(get_config().log_level)


# ── Project Commands ──────────────────────────────────────────────────────────


_SETTING_OPTIONS = [
    click.option("--max-coders", "max_concurrent_coders", type=int, default=None, help="Concurrent agent slots"),
    click.option("--mode", "git_working_mode", type=click.Choice(projects_mod.GIT_WORKING_MODES), default=None),
    click.option(
        "--scope-strategy",
        "unknown_scope_strategy",
        type=click.Choice(projects_mod.UNKNOWN_SCOPE_STRATEGIES),
        default=None,
    ),
    click.option("--review-mode", type=click.Choice(projects_mod.REVIEW_MODES), default=None),
    click.option("--test-command", default=None, help="Shell command run in the task's work dir"),
    click.option("--simple-agent", default=None, help="Agent for complexity <= 5 (model name or JSON)"),
    click.option("--complex-agent", default=None, help="Agent for complexity > 5 (model name or JSON)"),
    click.option("--slack-channel", default=None, help="Slack channel for notifications"),
]


def _setting_options(fn):
    for option in reversed(_SETTING_OPTIONS):
        fn = option(fn)
    return fn


@main.command("init")
@click.argument("project_name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--id", "project_id", default=None, help="Project ID (default: slug of the name)")
@_setting_options
def init_project(project_name, repo_path, branch, project_id, **settings):
    """Initialize a new project."""
    repo_path = os.path.abspath(repo_path)
    project_id = project_id or tasks_mod.slugify(project_name)

    with _get_db() as db:
        try:
            project = projects_mod.create_project(db, project_id, project_name, repo_path, branch, **settings)
        except sqlite3.IntegrityError:
            click.echo(f"Project already exists: {project_id}", err=True)
            sys.exit(1)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")
        click.echo(f"  Mode: {project.git_working_mode}, slots: {project.max_concurrent_coders}")


@main.command("configure")
@click.argument("project_id")
@_setting_options
def configure_project(project_id, **settings):
    """Change a project's orchestrator settings."""
    with _get_db() as db:
        _require_project(db, project_id)
        try:
            project = projects_mod.update_project(db, project_id, **settings)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Updated {project.id}")
        click.echo(f"  Mode: {project.git_working_mode}, slots: {project.max_concurrent_coders}")
        click.echo(f"  Review: {project.review_mode}, scope: {project.unknown_scope_strategy}")
        if project.test_command:
            click.echo(f"  Tests: {project.test_command}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--priority", "-p", default=2, type=click.IntRange(0, 4), help="0 (most urgent) to 4")
@click.option("--complexity", "-c", default=5, type=click.IntRange(1, 10))
@click.option("--kind", type=click.Choice(tasks_mod.KINDS), default="task")
@click.option("--files", default=None, help="Comma-separated file scope (omit if unknown)")
def task_add(title, project, description, depends_on, priority, complexity, kind, files):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None
    scope = [f.strip() for f in files.split(",")] if files else None

    with _get_db() as db:
        _require_project(db, project)
        try:
            task = tasks_mod.create_task(
                db, title, project, description,
                depends_on=deps, priority=priority, complexity=complexity, kind=kind, file_scope=scope,
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("list")
@click.option("--project", default="default", help="Project ID")
@click.option("--status", type=click.Choice(tasks_mod.STATUSES), default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "open": "○",
            "in_progress": "●",
            "closed": "✓",
            "blocked": "✗",
        }

        for task in tasks:
            icon = status_icons.get(task.status, "?")
            deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
            who = f" @{task.assignee}" if task.assignee else ""
            click.echo(f"  {icon} P{task.priority} {task.id}: {task.title} ({task.status}){who}{deps}")


@task_group.command("ready")
@click.option("--project", default="default", help="Project ID")
def task_ready(project):
    """List tasks that can be dispatched now."""
    with _get_db() as db:
        ready = tasks_mod.get_ready_tasks(db, project)
        if not ready:
            click.echo("No ready tasks.")
            return
        for task in ready:
            click.echo(f"  P{task.priority} {task.id}: {task.title}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Project: {task.project_id}")
        click.echo(f"  Complexity: {task.complexity}  Attempts: {task.attempts}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.block_reason:
            click.echo(f"  Blocked: {task.block_reason} (since {task.blocked_at})")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
            blockers = tasks_mod.get_blockers(db, task.id)
            if blockers:
                click.echo(f"  Waiting on: {', '.join(blockers)}")
        if task.file_scope is not None:
            click.echo(f"  Files: {', '.join(task.file_scope) or '(none)'}")

        comments = tasks_mod.list_comments(db, task_id)
        if comments:
            click.echo("  Comments:")
            for c in comments:
                click.echo(f"    [{c.created_at}] {c.author or '-'}: {c.body.splitlines()[0]}")

        sessions = sessions_mod.list_sessions(db, task_id)
        if sessions:
            click.echo("  Sessions:")
            for s in sessions:
                reason = f" - {s.failure_reason}" if s.failure_reason else ""
                click.echo(f"    #{s.attempt} {s.status} by {s.agent_name}{reason}")


@task_group.command("close")
@click.argument("task_id")
@click.option("--reason", default="Closed manually")
def task_close(task_id, reason):
    """Close a task (also how gates are approved)."""
    with _get_db() as db:
        task = tasks_mod.close_task(db, task_id, reason)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Closed task: {task_id}")


@task_group.command("reopen")
@click.argument("task_id")
def task_reopen(task_id):
    """Reopen a blocked or closed task."""
    with _get_db() as db:
        task = tasks_mod.reopen_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        counters_mod.clear_task_counters(db, task.project_id, task_id)
        click.echo(f"Reopened task: {task_id}")


@task_group.command("priority")
@click.argument("task_id")
@click.argument("priority", type=click.IntRange(0, 4))
def task_priority(task_id, priority):
    """Set a task's priority (0 most urgent to 4)."""
    with _get_db() as db:
        task = tasks_mod.update_task_priority(db, task_id, priority)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Updated {task_id} priority to P{task.priority}")


@task_group.command("dep")
@click.argument("task_id")
@click.argument("depends_on_id")
@click.option("--remove", is_flag=True, help="Remove the dependency instead")
def task_dep(task_id, depends_on_id, remove):
    """Add (or remove) a dependency between tasks."""
    with _get_db() as db:
        try:
            if remove:
                task = tasks_mod.remove_dependency(db, task_id, depends_on_id)
            else:
                task = tasks_mod.add_dependency(db, task_id, depends_on_id)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"{task_id} depends on: {', '.join(task.depends_on) or '(nothing)'}")


# ── Orchestrator Commands ────────────────────────────────────────────────────


@main.command("run")
@click.option("--project", "project_ids", multiple=True, help="Project ID (default: all projects)")
def run_command(project_ids):
    """Run the orchestrator in the foreground until SIGINT/SIGTERM."""
    from build_orchestrator.core.orchestrator import Orchestrator
    from build_orchestrator.integrations.slack import SlackNotifier

    config = get_config()
    with _get_db() as db:
        if not project_ids:
            project_ids = [p.id for p in projects_mod.list_projects(db)]
        for pid in project_ids:
            _require_project(db, pid)
    if not project_ids:
        click.echo("No projects. Create one with 'bo init'.", err=True)
        sys.exit(1)

    threading.excepthook = _log_thread_exception
    orchestrator = Orchestrator(config, notifier=SlackNotifier(config.slack_bot_token))
    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Received signal %s; shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    for pid in project_ids:
        if orchestrator.ensure_running(pid):
            click.echo(f"Orchestrating {pid}")
        else:
            click.echo(f"Skipping {pid}: another orchestrator is running it", err=True)

    while not stop.wait(1.0):
        pass
    orchestrator.stop_all()
    click.echo("Stopped.")


@main.command("status")
@click.option("--project", default="default", help="Project ID")
def status_command(project):
    """Show persisted orchestrator state for a project."""
    with _get_db() as db:
        _require_project(db, project)
        total_done, total_failed = counters_mod.get_project_totals(db, project)
        in_flight = tasks_mod.list_in_progress_with_agent_assignee(db, project)
        ready = tasks_mod.get_ready_tasks(db, project)
        blocked = tasks_mod.list_blocked_tasks(db, project)

        click.echo(f"Project: {project}")
        click.echo(f"  Done: {total_done}  Failed: {total_failed}")
        click.echo(f"  Ready: {len(ready)}  Blocked: {len(blocked)}")
        for task in in_flight:
            click.echo(f"  ● {task.id} ({task.assignee})")
        for task in blocked:
            click.echo(f"  ✗ {task.id}: {task.block_reason or 'blocked'}")


@main.command("events")
@click.option("--project", default="default", help="Project ID")
@click.option("--count", "-n", default=20, type=int, help="Number of recent events")
@click.option(
    "--since", default=None, callback=_parse_timestamp, help="ISO timestamp; show events at or after it"
)
@click.option("--task", "task_id", default=None, help="Only events for this task")
def events_command(project, count, since, task_id):
    """Show orchestrator events."""
    with _get_db() as db:
        if task_id:
            evts = events_mod.read_for_task(db, project, task_id)
        elif since:
            evts = events_mod.read_since(db, project, since)
        else:
            evts = events_mod.read_recent(db, project, count)
        if not evts:
            click.echo("No events.")
            return
        for e in evts:
            data = f" {json.dumps(e.data)}" if e.data else ""
            click.echo(f"  [{e.timestamp.isoformat()}] {e.event} {e.task_id or '-'}{data}")


@main.command("recover")
@click.option("--project", default="default", help="Project ID")
@click.option("--exclude", default=None, help="Task ID to leave alone")
@click.option("--force", is_flag=True, help="Recover even while an orchestrator holds the project")
def recover_command(project, exclude, force):
    """Reset tasks left in progress by a dead orchestrator."""
    config = get_config()
    with _get_db() as db:
        proj = _require_project(db, project)
        owner = leases_mod.live_holder(db, project, timedelta(seconds=config.lease_ttl_seconds))
        if owner and not force:
            click.echo(
                f"Project {project} is being run by orchestrator {owner}; its tasks are not orphans.", err=True
            )
            sys.exit(1)
        recovered = recovery_mod.recover_orphaned_tasks(db, proj, config.worktree_base, exclude)
        if not recovered:
            click.echo("No orphaned tasks.")
            return
        for task_id in recovered:
            click.echo(f"  Recovered: {task_id}")


@main.command("retry-blocked")
@click.option("--project", default="default", help="Project ID")
@click.option("--now", "force", is_flag=True, help="Ignore the retry interval")
def retry_blocked_command(project, force):
    """Reopen tasks blocked by technical failures."""
    with _get_db() as db:
        _require_project(db, project)
        kwargs = {"interval": timedelta(0)} if force else {}
        retried = recovery_mod.run_blocked_auto_retry_pass(db, project, **kwargs)
        if not retried:
            click.echo("Nothing to retry.")
            return
        for task_id in retried:
            click.echo(f"  Reopened: {task_id}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--start/--no-start", default=True, help="Start orchestrating every project at startup")
def serve_command(host, port, start):
    """Run the HTTP API (and the orchestrator behind it)."""
    from build_orchestrator.core.orchestrator import Orchestrator
    from build_orchestrator.integrations.slack import SlackNotifier
    from build_orchestrator.web.app import run_server

    config = get_config()
    threading.excepthook = _log_thread_exception
    orchestrator = Orchestrator(config, notifier=SlackNotifier(config.slack_bot_token))
    if start:
        with _get_db() as db:
            for project in projects_mod.list_projects(db):
                orchestrator.ensure_running(project.id)

    click.echo(f"Serving on http://{host}:{port}")
    try:
        run_server(host=host, port=port, orchestrator=orchestrator)
    finally:
        orchestrator.stop_all()


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from build_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": f"P{task.priority}",
        "project": task.project_id,
        "assignee": task.assignee,
        "complexity": task.complexity,
        "kind": task.kind,
        "attempts": task.attempts,
        "block_reason": task.block_reason,
        "depends_on": task.depends_on,
    }


if __name__ == "__main__":
    main()
