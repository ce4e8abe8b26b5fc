"""MCP server exposing task-graph and orchestrator tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from build_orchestrator.config import Config, get_config
from build_orchestrator.core import events as events_mod
from build_orchestrator.core import leases as leases_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.orchestrator import Orchestrator
from build_orchestrator.db.engine import init_db
from build_orchestrator.integrations.slack import SlackNotifier


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    orchestrator: Orchestrator


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the DB and an orchestrator on startup; stop both on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    orchestrator = Orchestrator(config, notifier=SlackNotifier(config.slack_bot_token))

    try:
        yield AppContext(db=db, config=config, orchestrator=orchestrator)
    finally:
        orchestrator.stop_all()
        db.close()


mcp = FastMCP("build-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    project: str = "default",
    description: str = "",
    depends_on: list[str] | None = None,
    priority: int = 2,
    complexity: int = 5,
    file_scope: list[str] | None = None,
) -> dict:
    """Create a new task. Priority: 0 (most urgent) to 4, default 2.

    file_scope lists the paths the task will touch; leave it out when unknown.
    """
    app = _ctx(ctx)
    if not projects_mod.get_project(app.db, project):
        return {"error": f"Project not found: {project}"}
    try:
        task = tasks_mod.create_task(
            app.db, title, project, description,
            depends_on=depends_on, priority=priority, complexity=complexity, file_scope=file_scope,
        )
    except ValueError as e:
        return {"error": str(e)}
    # Wakes a loop hosted by this server; an orchestrator in another process
    # picks the task up on its next poll.
    app.orchestrator.nudge(project)
    return _task_to_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    project: str = "default",
    status: str | None = None,
) -> list[dict]:
    """List tasks in a project, optionally filtered by status (open, in_progress, blocked, closed)."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(app.db, project, status=status)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task including blockers and comments."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    d = _task_to_dict(task)
    d["blockers"] = tasks_mod.get_blockers(app.db, task_id)
    d["comments"] = [
        {"author": c.author, "body": c.body, "created_at": c.created_at.isoformat() if c.created_at else None}
        for c in tasks_mod.list_comments(app.db, task_id)
    ]
    return d


@mcp.tool()
def get_ready_tasks(ctx: Context, project: str = "default") -> list[dict]:
    """Get tasks the orchestrator may dispatch now (open, no open dependencies)."""
    app = _ctx(ctx)
    tasks = tasks_mod.get_ready_tasks(app.db, project)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def update_task_priority(ctx: Context, task_id: str, priority: int) -> dict:
    """Update a task's priority. 0 (most urgent) to 4."""
    app = _ctx(ctx)
    if not 0 <= priority <= 4:
        return {"error": "Priority must be between 0 and 4"}
    task = tasks_mod.update_task_priority(app.db, task_id, priority)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return _task_to_dict(task)


@mcp.tool()
def add_dependency(ctx: Context, task_id: str, depends_on_id: str) -> dict:
    """Add a dependency to a task. The task is not ready until the dependency is closed."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.add_dependency(app.db, task_id, depends_on_id)
        if not task:
            return {"error": f"Task not found: {task_id}"}
        return _task_to_dict(task)
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def close_task(ctx: Context, task_id: str, reason: str = "Closed manually") -> dict:
    """Close a task. Closing a gate releases the tasks that depend on it."""
    app = _ctx(ctx)
    task = tasks_mod.close_task(app.db, task_id, reason)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    # Only reaches a loop hosted by this server, as in create_task.
    app.orchestrator.nudge(task.project_id)
    return _task_to_dict(task)


# ── Orchestrator Tools ────────────────────────────────────────────────────────


@mcp.tool()
def orchestrator_status(ctx: Context, project: str = "default") -> dict:
    """In-memory orchestrator status: running, slots in flight, queue depth, totals."""
    app = _ctx(ctx)
    return app.orchestrator.get_status(project).to_dict()


@mcp.tool()
def nudge_orchestrator(ctx: Context, project: str = "default") -> dict:
    """Start the project's orchestrator here if no other process runs it, and ask for a dispatch pass.

    A project already run by another orchestrator (`bo run`, `bo serve`) is
    left to it: started is false and running_elsewhere names its owner.
    """
    app = _ctx(ctx)
    if not projects_mod.get_project(app.db, project):
        return {"error": f"Project not found: {project}"}
    started = app.orchestrator.ensure_running(project)
    app.orchestrator.nudge(project)
    result = {"nudged": project, "started": started}
    owner = leases_mod.holder(app.db, project)
    if owner and owner != app.orchestrator.owner_id:
        result["running_elsewhere"] = owner
    return result


@mcp.tool()
def recent_events(
    ctx: Context,
    project: str = "default",
    count: int = 50,
    task_id: str | None = None,
) -> list[dict]:
    """Most recent orchestrator events, oldest first. Optionally only one task's."""
    app = _ctx(ctx)
    if task_id:
        evts = events_mod.read_for_task(app.db, project, task_id)[-count:]
    else:
        evts = events_mod.read_recent(app.db, project, count)
    return [events_mod.to_dict(e) for e in evts]


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    d = {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "project": task.project_id,
        "description": task.description,
        "complexity": task.complexity,
        "kind": task.kind,
        "attempts": task.attempts,
    }
    if task.assignee:
        d["assignee"] = task.assignee
    if task.block_reason:
        d["block_reason"] = task.block_reason
    if task.depends_on:
        d["depends_on"] = task.depends_on
    if task.file_scope is not None:
        d["file_scope"] = task.file_scope
    return d
