"""CLI entry point for spec-relay."""

import json
import sys
from contextlib import contextmanager

import click

from spec_relay.config import get_config
from spec_relay.core.operations import Operations
from spec_relay.db.engine import get_db
from spec_relay.db.models import AGENT_TYPES, PHASES, PROJECT_STATUSES, TASK_STATUSES
from spec_relay.errors import WorkflowError
from spec_relay.logging_config import setup_logging

STATUS_ICONS = {
    "pending": "○",
    "in_progress": "●",
    "blocked": "✗",
    "completed": "✓",
}


@contextmanager
def _operations():
    config = get_config()
    with get_db(config.db_path) as db:
        try:
            yield Operations.from_config(db, config)
        except WorkflowError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2))


def _echo_warnings(result: dict) -> None:
    for warning in result.get("warnings", []):
        click.echo(f"Warning: {warning}", err=True)


def _parse_json(value: str | None, name: str) -> dict | None:
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=name)
    if not isinstance(parsed, dict):
        raise click.BadParameter("must be a JSON object", param_hint=name)
    return parsed


def _split(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


@click.group()
def main():
    """sr - spec-relay: phased workflow state for agent sessions"""
    config = get_config()
    setup_logging(config.log_level, config.log_format)


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("name")
@click.option("--description", "-d", default=None, help="Project description")
def init_project(name, description):
    """Create a project and scaffold its documents."""
    with _operations() as ops:
        result = ops.project_create(name, description)
        project = result["project"]
        click.echo(f"Project created: {project['id']} ({project['name']})")
        click.echo(f"  Phase: {project['current_phase']}")
        _echo_warnings(result)


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("list")
@click.option("--status", type=click.Choice(PROJECT_STATUSES), default=None)
@click.option("--phase", type=click.Choice(PHASES), default=None)
@click.option("--name", default=None, help="Substring of the project name")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(status, phase, name, json_output):
    """List projects."""
    with _operations() as ops:
        projects = ops.project_list(status=status, phase=phase, name=name)
        if json_output:
            _echo_json(projects)
            return
        if not projects:
            click.echo("No projects found.")
            return
        for p in projects:
            click.echo(f"  {p['id']}  {p['name']}  [{p['status']}, {p['current_phase']}]")


@project_group.command("show")
@click.argument("project_id")
def project_show(project_id):
    """Show project details."""
    with _operations() as ops:
        project = ops.project_get(project_id)
        click.echo(f"Project: {project['id']}")
        click.echo(f"  Name: {project['name']}")
        click.echo(f"  Status: {project['status']}")
        click.echo(f"  Phase: {project['current_phase']}")
        if project["description"]:
            click.echo(f"  Description: {project['description']}")
        counts = ", ".join(f"{k}={v}" for k, v in project["task_counts"].items())
        click.echo(f"  Tasks: {counts}")


@project_group.command("update")
@click.argument("project_id")
@click.option("--name", default=None)
@click.option("--description", "-d", default=None)
@click.option("--status", type=click.Choice(PROJECT_STATUSES), default=None)
@click.option("--phase", type=click.Choice(PHASES), default=None)
def project_update(project_id, name, description, status, phase):
    """Update project fields."""
    fields = {
        "name": name,
        "description": description,
        "status": status,
        "current_phase": phase,
    }
    fields = {k: v for k, v in fields.items() if v is not None}
    with _operations() as ops:
        result = ops.project_update(project_id, fields)
        project = result["project"]
        click.echo(f"Updated {project['id']}: {project['name']} [{project['status']}, {project['current_phase']}]")
        _echo_warnings(result)


@project_group.command("delete")
@click.argument("project_id")
@click.confirmation_option(prompt="Delete the project with all its tasks, sessions and checkpoints?")
def project_delete(project_id):
    """Delete a project from the store. Its documents stay on disk."""
    with _operations() as ops:
        ops.project_delete(project_id)
        click.echo(f"Deleted project {project_id}")


@project_group.command("history")
@click.argument("project_id")
def project_history(project_id):
    """Print the overview, phase documents and handoffs."""
    with _operations() as ops:
        result = ops.project_history(project_id)
        click.echo(result["history"] or "No documents found.")
        _echo_warnings(result)


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("project_id")
@click.argument("title")
@click.option("--phase", type=click.Choice(PHASES), required=True)
@click.option("--description", "-d", default=None)
@click.option("--parent", default=None, help="Parent task ID")
@click.option("--priority", "-p", default=1, type=int, help="Higher runs first")
@click.option("--assignee", default=None, help="Assignee type")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--refs", default=None, help="Comma-separated requirement references")
def task_add(project_id, title, phase, description, parent, priority, assignee, depends_on, refs):
    """Create a new task."""
    with _operations() as ops:
        task = ops.task_create(
            project_id,
            title,
            phase,
            description=description,
            parent_id=parent,
            assignee_type=assignee,
            priority=priority,
            requirements_refs=_split(refs),
            dependencies=_split(depends_on),
        )
        click.echo(f"Created task: {task['id']}")
        click.echo(f"  Title: {task['title']}")
        click.echo(f"  Phase: {task['phase']}")
        click.echo(f"  Priority: {task['priority']}")
        if task["dependencies"]:
            click.echo(f"  Depends on: {', '.join(task['dependencies'])}")


@task_group.command("list")
@click.argument("project_id", required=False)
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None)
@click.option("--phase", type=click.Choice(PHASES), default=None)
@click.option("--assignee", default=None, help="Filter by assignee type")
@click.option("--tree", is_flag=True, help="Show the task hierarchy")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project_id, status, phase, assignee, tree, json_output):
    """List tasks of a project, or of every project."""
    with _operations() as ops:
        tasks = ops.task_query(
            project_id=project_id,
            status=status,
            phase=phase,
            assignee_type=assignee,
            include_hierarchy=tree,
        )
        if json_output:
            _echo_json(tasks)
            return
        if not tasks:
            click.echo("No tasks found.")
            return
        if tree:
            _echo_tree(tasks)
            return
        for task in tasks:
            click.echo(_task_line(task))


def _task_line(task: dict, indent: int = 1) -> str:
    icon = STATUS_ICONS.get(task["status"], "?")
    deps = f" [depends: {', '.join(task['dependencies'])}]" if task["dependencies"] else ""
    pad = "  " * indent
    return f"{pad}{icon} {task['id']}: {task['title']} ({task['phase']}, {task['status']}, p{task['priority']}){deps}"


def _echo_tree(nodes: list[dict]) -> None:
    stack = list(reversed(nodes))
    while stack:
        node = stack.pop()
        click.echo(_task_line(node, indent=node["depth"] + 1))
        stack.extend(reversed(node["children"]))


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details and its event history."""
    with _operations() as ops:
        task = ops.task_get(task_id)
        deps = ops.task_dependencies(task_id)
        click.echo(f"Task: {task['id']}")
        click.echo(f"  Title: {task['title']}")
        click.echo(f"  Project: {task['project_id']}")
        click.echo(f"  Phase: {task['phase']}")
        click.echo(f"  Status: {task['status']}")
        click.echo(f"  Priority: {task['priority']}")
        if task["parent_id"]:
            click.echo(f"  Parent: {task['parent_id']}")
        if task["description"]:
            click.echo(f"  Description: {task['description']}")
        if task["assignee_type"]:
            click.echo(f"  Assignee: {task['assignee_type']}")
        if task["requirements_refs"]:
            click.echo(f"  Requirements: {', '.join(task['requirements_refs'])}")
        if task["dependencies"]:
            state = "satisfied" if deps["satisfied"] else "blocked"
            click.echo(f"  Depends on: {', '.join(task['dependencies'])} ({state})")

        events = ops.task_events(task_id)
        if events:
            click.echo("  History:")
            for e in events:
                change = f"{e['old_value']} -> {e['new_value']}" if e["old_value"] else e["new_value"]
                click.echo(f"    {e['created_at']}  {e['event_type']}: {change}")


@task_group.command("update")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--phase", type=click.Choice(PHASES), default=None)
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None)
@click.option("--priority", "-p", type=int, default=None)
@click.option("--assignee", default=None)
@click.option("--depends-on", default=None, help="Comma-separated task IDs (replaces the list)")
def task_update(task_id, title, description, phase, status, priority, assignee, depends_on):
    """Update task fields."""
    fields = {
        "title": title,
        "description": description,
        "phase": phase,
        "status": status,
        "priority": priority,
        "assignee_type": assignee,
        "dependencies": _split(depends_on),
    }
    with _operations() as ops:
        task = ops.task_update(task_id, {k: v for k, v in fields.items() if v is not None})
        click.echo(_task_line(task, indent=0))


@task_group.command("progress")
@click.argument("task_id")
@click.argument("status", type=click.Choice(TASK_STATUSES))
@click.argument("notes")
@click.option("--deliverables", default=None, help="JSON object")
@click.option("--next-steps", default=None)
def task_progress(task_id, status, notes, deliverables, next_steps):
    """Report progress: new status plus notes."""
    deliverables = _parse_json(deliverables, "--deliverables")
    with _operations() as ops:
        result = ops.task_progress(task_id, status, notes, deliverables, next_steps)
        click.echo(_task_line(result["task"], indent=0))
        _echo_warnings(result)


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task and its subtasks."""
    with _operations() as ops:
        ops.task_delete(task_id)
        click.echo(f"Deleted task {task_id}")


@task_group.command("deps")
@click.argument("task_id")
def task_deps(task_id):
    """Show whether a task's dependencies are satisfied."""
    with _operations() as ops:
        result = ops.task_dependencies(task_id)
        if not result["dependencies"]:
            click.echo("No dependencies.")
            return
        click.echo("Satisfied" if result["satisfied"] else "Blocked")
        for task in result["blocking"]:
            click.echo(_task_line(task))
        for dep in result["dangling"]:
            click.echo(f"  ? {dep}: not found")


# ── Context Commands ──────────────────────────────────────────────────────────


@main.group("context")
def context_group():
    """Manage agent session context."""
    pass


@context_group.command("save")
@click.argument("project_id")
@click.argument("agent_type", type=click.Choice(AGENT_TYPES))
@click.argument("context")
@click.option("--summary", default=None)
def context_save(project_id, agent_type, context, summary):
    """Merge a JSON object into the agent's saved context."""
    context = _parse_json(context, "CONTEXT")
    with _operations() as ops:
        result = ops.session_save(project_id, agent_type, context, summary)
        session = result["session"]
        click.echo(f"Saved {agent_type} context ({len(session['context'])} keys)")
        _echo_warnings(result)


@context_group.command("load")
@click.argument("project_id")
def context_load(project_id):
    """Print every agent type's context."""
    with _operations() as ops:
        _echo_json(ops.session_load_all(project_id)["contexts"])


@context_group.command("assign")
@click.argument("task_id")
@click.argument("agent_type", type=click.Choice(AGENT_TYPES))
def context_assign(task_id, agent_type):
    """Point an agent type's session at a task."""
    with _operations() as ops:
        session = ops.session_assign(task_id, agent_type)
        click.echo(f"Session {session['id']} ({agent_type}) -> task {task_id}")


# ── Workflow Commands ─────────────────────────────────────────────────────────


@main.group("workflow")
def workflow_group():
    """Phase handoff, checkpoints and resume."""
    pass


@workflow_group.command("handoff")
@click.argument("project_id")
@click.argument("phase", type=click.Choice(PHASES))
@click.option("--notes", "-n", default="", help="Handoff notes")
@click.option("--deliverables", default=None, help="JSON object")
@click.option("--complete", "completed", multiple=True, help="Task ID to mark completed (repeatable)")
def workflow_handoff(project_id, phase, notes, deliverables, completed):
    """Close PHASE and advance the project."""
    deliverables = _parse_json(deliverables, "--deliverables")
    with _operations() as ops:
        result = ops.workflow_handoff(project_id, phase, deliverables, notes, list(completed))
        project = result["project"]
        click.echo(f"Checkpoint {result['checkpoint']['id']} ({phase})")
        if result["next_phase"] == "complete":
            click.echo(f"Project {project['name']} completed")
        else:
            click.echo(f"Project {project['name']} now in phase: {result['next_phase']}")
        _echo_warnings(result)


@workflow_group.command("resume")
@click.argument("project_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def workflow_resume(project_id, json_output):
    """Show where a project stands."""
    with _operations() as ops:
        state = ops.workflow_resume(project_id)
        if json_output:
            _echo_json(state)
            return
        project = state["project"]
        click.echo(f"Project: {project['name']} [{project['status']}]")
        click.echo(f"  Phase: {state['current_phase']}")
        checkpoint = state["checkpoint"]
        if checkpoint:
            click.echo(f"  Last checkpoint: {checkpoint['phase']} at {checkpoint['created_at']}")
        click.echo(f"  Completed: {len(state['completed_tasks'])}")
        click.echo(f"  Pending: {len(state['pending_tasks'])}")
        for task in state["pending_tasks"]:
            click.echo(_task_line(task, indent=2))


@workflow_group.command("checkpoint")
@click.argument("project_id")
@click.argument("phase")
@click.option("--deliverables", default=None, help="JSON object")
def workflow_checkpoint(project_id, phase, deliverables):
    """Snapshot PHASE without advancing the project."""
    deliverables = _parse_json(deliverables, "--deliverables")
    with _operations() as ops:
        checkpoint = ops.workflow_checkpoint(project_id, phase, deliverables)
        click.echo(f"Checkpoint {checkpoint['id']}: {len(checkpoint['completed_tasks'])} completed")


@workflow_group.command("checkpoints")
@click.argument("project_id")
@click.option("--phase", default=None)
def workflow_checkpoints(project_id, phase):
    """List checkpoints."""
    with _operations() as ops:
        checkpoints = ops.workflow_checkpoints(project_id, phase)
        if not checkpoints:
            click.echo("No checkpoints.")
            return
        for c in checkpoints:
            current = f", current {c['current_task']}" if c["current_task"] else ""
            click.echo(f"  {c['created_at']}  {c['phase']}: {len(c['completed_tasks'])} completed{current}")


@workflow_group.command("next")
@click.argument("project_id")
@click.option("--task", "task_id", default=None, help="Start this task instead of the next ready one")
def workflow_next(project_id, task_id):
    """Start the next ready task."""
    with _operations() as ops:
        result = ops.workflow_start_next(project_id, task_id)
        click.echo(f"Started: {result['task']['id']} ({result['task']['title']})")
        _echo_warnings(result)


# ── Document Commands ─────────────────────────────────────────────────────────


@main.group("doc")
def doc_group():
    """Inspect and repair the document mirror."""
    pass


@doc_group.command("status")
@click.argument("project_id")
@click.argument("file_name", required=False)
def doc_status(project_id, file_name):
    """Check whether spec documents still look like templates."""
    names = [file_name] if file_name else ["requirements.md", "design.md", "tasks.md"]
    with _operations() as ops:
        for name in names:
            status = ops.document_status(project_id, name)
            mark = "✓" if status["is_complete"] else "✗"
            reason = f" - {status['reason']}" if status["reason"] else ""
            click.echo(f"  {mark} {name}{reason}")


@doc_group.command("write")
@click.argument("project_id")
@click.argument("file_name", type=click.Choice(["requirements.md", "design.md", "tasks.md"]))
@click.argument("source", type=click.File("r"))
def doc_write(project_id, file_name, source):
    """Write FILE_NAME from SOURCE (a path, or - for stdin)."""
    content = source.read()
    with _operations() as ops:
        result = ops.document_write(project_id, file_name, content)
        if result["path"]:
            mark = "✓" if result["is_complete"] else "✗"
            reason = f" - {result['reason']}" if result["reason"] else ""
            click.echo(f"  {mark} Wrote {result['path']}{reason}")
        _echo_warnings(result)


@doc_group.command("reconcile")
@click.argument("project_id")
def doc_reconcile(project_id):
    """Rewrite the mirror from the store and report drift."""
    with _operations() as ops:
        report = ops.reconcile(project_id)
        if not report["file_sync"]:
            click.echo("File sync is disabled.")
        for path in report["created"]:
            click.echo(f"  Created {path}")
        if report["overview_updated"]:
            click.echo("  Overview updated")
        for task_id, missing in report["dangling_dependencies"].items():
            click.echo(f"  Task {task_id} depends on missing: {', '.join(missing)}")
        for name, reason in report["incomplete_documents"].items():
            click.echo(f"  {name}: {reason}")
        _echo_warnings(report)


@doc_group.command("import-tasks")
@click.argument("project_id")
@click.option("--phase", type=click.Choice(PHASES), default="execute")
def doc_import_tasks(project_id, phase):
    """Create tasks from the tasks.md checklist."""
    with _operations() as ops:
        result = ops.import_spec_tasks(project_id, phase)
        click.echo(f"Created {len(result['created'])}, completed {len(result['updated'])}")
        _echo_warnings(result)


# ── Dashboard ─────────────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=True, help="Open browser automatically")
def ui_command(host, port, open):
    """Launch the web dashboard."""
    import webbrowser

    from spec_relay.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from spec_relay.mcp.server import mcp
    from spec_relay.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
