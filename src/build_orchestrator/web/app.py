"""HTTP API for the build orchestrator."""

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from build_orchestrator.config import Config, get_config
from build_orchestrator.core import events as events_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.orchestrator import Orchestrator
from build_orchestrator.db.engine import init_db, parse_ts


def _get_db(request: Request):
    return init_db(request.app.state.config.db_path)


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db(request)
    try:
        return JSONResponse([_project_dict(p) for p in projects_mod.list_projects(db)])
    finally:
        db.close()


async def api_orchestrator_status(request: Request):
    project_id = request.path_params["project_id"]
    return JSONResponse(_orchestrator(request).get_status(project_id).to_dict())


async def api_orchestrator_nudge(request: Request):
    project_id = request.path_params["project_id"]
    orchestrator = _orchestrator(request)
    db = _get_db(request)
    try:
        if not projects_mod.get_project(db, project_id):
            return JSONResponse({"error": "Project not found"}, status_code=404)
    finally:
        db.close()
    # Starting a loop may run orphan recovery, which shells out to git.
    await run_in_threadpool(orchestrator.ensure_running, project_id)
    orchestrator.nudge(project_id)
    return JSONResponse({"nudged": project_id}, status_code=202)


async def api_live_output(request: Request):
    project_id = request.path_params["project_id"]
    task_id = request.path_params["task_id"]
    output = _orchestrator(request).get_live_output(project_id, task_id)
    return JSONResponse({"task_id": task_id, "output": output})


async def api_events(request: Request):
    project_id = request.path_params["project_id"]
    since = request.query_params.get("since")
    task_id = request.query_params.get("task_id")
    try:
        count = int(request.query_params.get("count", "100"))
    except ValueError:
        return JSONResponse({"error": "count must be an integer"}, status_code=400)

    db = _get_db(request)
    try:
        if task_id:
            evts = events_mod.read_for_task(db, project_id, task_id)
        elif since:
            try:
                since_dt = parse_ts(since)
            except ValueError:
                return JSONResponse({"error": f"Invalid since timestamp: {since}"}, status_code=400)
            evts = events_mod.read_since(db, project_id, since_dt)
        else:
            evts = events_mod.read_recent(db, project_id, count)
        if task_id or since:
            evts = evts[-count:] if count else evts
        return JSONResponse([events_mod.to_dict(e) for e in evts])
    finally:
        db.close()


async def api_project_tasks(request: Request):
    project_id = request.path_params["project_id"]
    status_filter = request.query_params.get("status")
    db = _get_db(request)
    try:
        tasks = tasks_mod.list_tasks(db, project_id, status=status_filter)
        ready_ids = {t.id for t in tasks_mod.get_ready_tasks(db, project_id)}
        result = []
        for task in tasks:
            td = _task_dict(task)
            td["ready"] = task.id in ready_ids
            td["blockers"] = tasks_mod.get_blockers(db, task.id)
            result.append(td)
        return JSONResponse(result)
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "repo_path": p.repo_path,
        "default_branch": p.default_branch,
        "max_concurrent_coders": p.max_concurrent_coders,
        "git_working_mode": p.git_working_mode,
        "review_mode": p.review_mode,
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "status": t.status,
        "priority": t.priority,
        "assignee": t.assignee,
        "complexity": t.complexity,
        "kind": t.kind,
        "attempts": t.attempts,
        "block_reason": t.block_reason,
        "depends_on": t.depends_on,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None, orchestrator: Orchestrator | None = None) -> Starlette:
    config = config or get_config()
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}/tasks", api_project_tasks),
        Route("/api/projects/{project_id}/orchestrator/status", api_orchestrator_status),
        Route("/api/projects/{project_id}/orchestrator/nudge", api_orchestrator_nudge, methods=["POST"]),
        Route("/api/projects/{project_id}/tasks/{task_id}/live-output", api_live_output),
        Route("/api/projects/{project_id}/events", api_events),
    ]
    app = Starlette(routes=routes)
    app.state.config = config
    app.state.orchestrator = orchestrator or Orchestrator(config)
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, orchestrator: Orchestrator | None = None):
    app = create_app(orchestrator=orchestrator)
    uvicorn.run(app, host=host, port=port)
