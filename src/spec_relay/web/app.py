"""Read-only web dashboard API for spec-relay."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from spec_relay.config import get_config
from spec_relay.core.operations import Operations
from spec_relay.db.engine import init_db
from spec_relay.db.models import TASK_STATUSES
from spec_relay.errors import WorkflowError
from spec_relay.web.dashboard import get_dashboard_html

ERROR_STATUS = {
    "validation_error": 400,
    "not_found": 404,
    "constraint_error": 409,
    "invalid_state": 409,
}


def _run(func, *args, **kwargs) -> JSONResponse:
    """Call an operation with a fresh connection and render the result."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        ops = Operations.from_config(db, config)
        return JSONResponse(func(ops, *args, **kwargs))
    except WorkflowError as e:
        return JSONResponse(e.to_dict(), status_code=ERROR_STATUS.get(e.code, 500))
    finally:
        db.close()


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_list_projects(request: Request):
    params = request.query_params
    return _run(
        Operations.project_list,
        status=params.get("status"),
        phase=params.get("phase"),
        name=params.get("name"),
    )


async def api_get_project(request: Request):
    return _run(Operations.project_get, request.path_params["project_id"])


async def api_project_tasks(request: Request):
    params = request.query_params
    return _run(
        Operations.task_query,
        project_id=request.path_params["project_id"],
        status=params.get("status"),
        phase=params.get("phase"),
        include_hierarchy=True,
    )


def _summary(ops: Operations, project_id: str) -> dict:
    project = ops.project_get(project_id)
    counts = project["task_counts"]
    total = sum(counts.values())
    progress = (counts["completed"] / total * 100) if total > 0 else 0
    return {
        "project_id": project_id,
        "current_phase": project["current_phase"],
        "status": project["status"],
        "counts": {s: counts.get(s, 0) for s in TASK_STATUSES},
        "total": total,
        "progress_pct": round(progress, 1),
    }


async def api_project_summary(request: Request):
    return _run(_summary, request.path_params["project_id"])


async def api_project_resume(request: Request):
    return _run(Operations.workflow_resume, request.path_params["project_id"])


async def api_project_checkpoints(request: Request):
    return _run(
        Operations.workflow_checkpoints,
        request.path_params["project_id"],
        request.query_params.get("phase"),
    )


async def api_project_contexts(request: Request):
    return _run(Operations.session_load_all, request.path_params["project_id"])


async def api_project_history(request: Request):
    return _run(Operations.project_history, request.path_params["project_id"])


def _task_detail(ops: Operations, task_id: str) -> dict:
    task = ops.task_get(task_id)
    deps = ops.task_dependencies(task_id)
    task["dependencies_satisfied"] = deps["satisfied"]
    task["blocking"] = [t["id"] for t in deps["blocking"]]
    task["events"] = ops.task_events(task_id)
    return task


async def api_get_task(request: Request):
    return _run(_task_detail, request.path_params["task_id"])


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/", index),
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/tasks", api_project_tasks),
        Route("/api/projects/{project_id}/summary", api_project_summary),
        Route("/api/projects/{project_id}/resume", api_project_resume),
        Route("/api/projects/{project_id}/checkpoints", api_project_checkpoints),
        Route("/api/projects/{project_id}/contexts", api_project_contexts),
        Route("/api/projects/{project_id}/history", api_project_history),
        Route("/api/tasks/{task_id}", api_get_task),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
