"""MCP server exposing the spec-relay operations as tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from spec_relay.config import Config, get_config
from spec_relay.core.operations import Operations
from spec_relay.db.engine import init_db
from spec_relay.errors import WorkflowError
from spec_relay.logging_config import setup_logging


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    ops: Operations


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the store on startup, close it on shutdown."""
    config = get_config()
    setup_logging(config.log_level, config.log_format)
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config, ops=Operations.from_config(db, config))
    finally:
        db.close()


mcp = FastMCP("spec-relay", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _ops(ctx: Context) -> Operations:
    return _ctx(ctx).ops


def _call(func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except WorkflowError as e:
        return e.to_dict()


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def project_create(ctx: Context, name: str, description: str | None = None) -> dict:
    """Create a project in the requirements phase and scaffold its documents."""
    return _call(_ops(ctx).project_create, name, description)


@mcp.tool()
def project_update(ctx: Context, project_id: str, fields: dict) -> dict:
    """Update name, description, status (active/paused/completed) or current_phase."""
    return _call(_ops(ctx).project_update, project_id, fields)


@mcp.tool()
def project_get(ctx: Context, project_id: str) -> dict:
    """Get a project with task counts by status."""
    return _call(_ops(ctx).project_get, project_id)


@mcp.tool()
def project_list(
    ctx: Context,
    status: str | None = None,
    phase: str | None = None,
    name: str | None = None,
) -> list[dict] | dict:
    """List projects, newest first. ``name`` matches a substring."""
    return _call(_ops(ctx).project_list, status=status, phase=phase, name=name)


@mcp.tool()
def project_history(ctx: Context, project_id: str) -> dict:
    """Overview, phase documents and handoffs as one markdown narrative."""
    return _call(_ops(ctx).project_history, project_id)


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def task_create(
    ctx: Context,
    project_id: str,
    title: str,
    phase: str,
    description: str | None = None,
    parent_id: str | None = None,
    assignee_type: str | None = None,
    priority: int = 1,
    requirements_refs: list[str] | None = None,
    dependencies: list[str] | None = None,
) -> dict:
    """Create a task. Higher priority sorts first; dependencies are task ids."""
    return _call(
        _ops(ctx).task_create,
        project_id,
        title,
        phase,
        description=description,
        parent_id=parent_id,
        assignee_type=assignee_type,
        priority=priority,
        requirements_refs=requirements_refs,
        dependencies=dependencies,
    )


@mcp.tool()
def task_get(ctx: Context, task_id: str) -> dict:
    """Get a task by ID."""
    return _call(_ops(ctx).task_get, task_id)


@mcp.tool()
def task_update(ctx: Context, task_id: str, fields: dict) -> dict:
    """Update task fields (title, description, phase, status, assignee_type, priority, ...)."""
    return _call(_ops(ctx).task_update, task_id, fields)


@mcp.tool()
def task_progress(
    ctx: Context,
    task_id: str,
    status: str,
    notes: str,
    deliverables: dict | None = None,
    next_steps: str | None = None,
) -> dict:
    """Report progress on a task: new status plus notes, logged to its progress file."""
    return _call(_ops(ctx).task_progress, task_id, status, notes, deliverables, next_steps)


@mcp.tool()
def task_query(
    ctx: Context,
    project_id: str | None = None,
    status: str | None = None,
    phase: str | None = None,
    assignee_type: str | None = None,
    include_hierarchy: bool = False,
) -> list[dict] | dict:
    """Query tasks. With include_hierarchy, returns trees with depth and children."""
    return _call(
        _ops(ctx).task_query,
        project_id=project_id,
        status=status,
        phase=phase,
        assignee_type=assignee_type,
        include_hierarchy=include_hierarchy,
    )


@mcp.tool()
def task_delete(ctx: Context, task_id: str) -> dict:
    """Delete a task and all of its subtasks."""
    return _call(_ops(ctx).task_delete, task_id)


@mcp.tool()
def task_dependencies(ctx: Context, task_id: str) -> dict:
    """Whether a task's dependencies are satisfied, and which ones block it."""
    return _call(_ops(ctx).task_dependencies, task_id)


# ── Context Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def context_save(
    ctx: Context,
    project_id: str,
    agent_type: str,
    context: dict,
    summary: str | None = None,
) -> dict:
    """Merge context into the agent's session. Existing keys not in ``context`` are kept."""
    return _call(_ops(ctx).session_save, project_id, agent_type, context, summary)


@mcp.tool()
def context_load(ctx: Context, project_id: str) -> dict:
    """Load every agent type's context for a project."""
    return _call(_ops(ctx).session_load_all, project_id)


@mcp.tool()
def context_assign(ctx: Context, task_id: str, agent_type: str) -> dict:
    """Point an agent type's session at a task."""
    return _call(_ops(ctx).session_assign, task_id, agent_type)


# ── Workflow Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def workflow_handoff(
    ctx: Context,
    project_id: str,
    current_phase: str,
    deliverables: dict,
    notes: str,
    completed_task_ids: list[str] | None = None,
) -> dict:
    """Close the current phase: checkpoint, advance the project, write the handoff document."""
    return _call(
        _ops(ctx).workflow_handoff,
        project_id,
        current_phase,
        deliverables,
        notes,
        completed_task_ids,
    )


@mcp.tool()
def workflow_resume(ctx: Context, project_id: str) -> dict:
    """Where a project stands: phase, latest checkpoint, pending and completed tasks."""
    return _call(_ops(ctx).workflow_resume, project_id)


@mcp.tool()
def workflow_checkpoint(
    ctx: Context, project_id: str, phase: str, deliverables: dict | None = None
) -> dict:
    """Snapshot a phase's completed and in-progress tasks without advancing."""
    return _call(_ops(ctx).workflow_checkpoint, project_id, phase, deliverables)


@mcp.tool()
def workflow_start_next(ctx: Context, project_id: str, task_id: str | None = None) -> dict:
    """Start a task (or the highest-priority ready one) and enter the execute phase."""
    return _call(_ops(ctx).workflow_start_next, project_id, task_id)


# ── Document Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def document_status(ctx: Context, project_id: str, file_name: str) -> dict:
    """Check whether requirements.md, design.md or tasks.md still looks like a template."""
    return _call(_ops(ctx).document_status, project_id, file_name)


@mcp.tool()
def document_write(ctx: Context, project_id: str, file_name: str, content: str) -> dict:
    """Write requirements.md, design.md or tasks.md, replacing the copy already in use."""
    return _call(_ops(ctx).document_write, project_id, file_name, content)


@mcp.tool()
def reconcile(ctx: Context, project_id: str) -> dict:
    """Repair the document mirror from the store and report what is out of line."""
    return _call(_ops(ctx).reconcile, project_id)


@mcp.tool()
def import_spec_tasks(ctx: Context, project_id: str, phase: str = "execute") -> dict:
    """Create tasks from new tasks.md checklist items and complete ticked ones."""
    return _call(_ops(ctx).import_spec_tasks, project_id, phase)
