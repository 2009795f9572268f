"""Task management: hierarchy, dependency gating and the task audit trail."""

import json
import sqlite3
from datetime import datetime

from spec_relay.core.validation import (
    check_enum,
    check_str_list,
    load_json_list,
    require_text,
)
from spec_relay.db.engine import NOW, new_id, transaction
from spec_relay.db.models import PHASES, TASK_STATUSES, Task, TaskEvent, TaskNode
from spec_relay.errors import (
    ConstraintError,
    NotFoundError,
    ValidationError,
    translate_integrity_error,
)

# Distinguishes "no parent filter" from "top-level only" (parent_id=None).
UNSET = object()


def create_task(
    db: sqlite3.Connection,
    project_id: str,
    title: str,
    phase: str,
    description: str | None = None,
    parent_id: str | None = None,
    status: str = "pending",
    assignee_type: str | None = None,
    priority: int = 1,
    requirements_refs: list[str] | None = None,
    dependencies: list[str] | None = None,
) -> Task:
    """Create a new task.

    Dependencies are stored as given; unresolved ids are tolerated and
    simply never block (see check_dependencies).
    """
    require_text("project_id", project_id)
    require_text("title", title)
    check_enum("phase", phase, PHASES)
    check_enum("status", status, TASK_STATUSES)
    _check_priority(priority)
    refs = check_str_list("requirements_refs", requirements_refs)
    deps = check_str_list("dependencies", dependencies)

    if parent_id:
        parent = db.execute(
            "SELECT project_id FROM tasks WHERE id = ?", (parent_id,)
        ).fetchone()
        if not parent or parent["project_id"] != project_id:
            raise ConstraintError(f"Parent task not found in project: {parent_id}")

    task_id = new_id()
    try:
        with transaction(db):
            db.execute(
                """INSERT INTO tasks (
                       id, project_id, parent_id, title, description, phase,
                       status, assignee_type, priority, requirements_refs, dependencies
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    task_id,
                    project_id,
                    parent_id,
                    title,
                    description,
                    phase,
                    status,
                    assignee_type,
                    priority,
                    json.dumps(refs),
                    json.dumps(deps),
                ),
            )
            _log_event(db, task_id, "created", None, status)
    except sqlite3.IntegrityError as e:
        raise translate_integrity_error(e, f"Task for project '{project_id}'") from e
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    phase: str | None = None,
    assignee_type: str | None = None,
    parent_id=UNSET,
) -> list[Task]:
    """List a project's tasks, highest priority first, then oldest first."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    if phase:
        query += " AND phase = ?"
        params.append(phase)

    if assignee_type:
        query += " AND assignee_type = ?"
        params.append(assignee_type)

    if parent_id is None:
        query += " AND parent_id IS NULL"
    elif parent_id is not UNSET:
        query += " AND parent_id = ?"
        params.append(parent_id)

    query += " ORDER BY priority DESC, created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def get_children(db: sqlite3.Connection, parent_id: str) -> list[Task]:
    rows = db.execute(
        "SELECT * FROM tasks WHERE parent_id = ? ORDER BY priority DESC, created_at ASC, rowid ASC",
        (parent_id,),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


def update_task(
    db: sqlite3.Connection,
    task_id: str,
    **kwargs,
) -> Task | None:
    """Update task fields. Returns None when the task does not exist.

    ``None`` leaves a field unchanged. An empty string clears
    ``description`` or ``assignee_type``.
    """
    allowed = {
        "title", "description", "phase", "status", "assignee_type",
        "priority", "requirements_refs", "dependencies",
    }
    unknown = set(kwargs) - allowed
    if unknown:
        raise ValidationError(sorted(unknown)[0], "cannot be updated")
    updates = {k: v for k, v in kwargs.items() if v is not None}
    for key in ("description", "assignee_type"):
        if updates.get(key) == "":
            updates[key] = None

    if "title" in updates:
        require_text("title", updates["title"])
    if "phase" in updates:
        check_enum("phase", updates["phase"], PHASES)
    if "status" in updates:
        check_enum("status", updates["status"], TASK_STATUSES)
    if "priority" in updates:
        _check_priority(updates["priority"])
    for key in ("requirements_refs", "dependencies"):
        if key in updates:
            updates[key] = json.dumps(check_str_list(key, updates[key]))

    task = get_task(db, task_id)
    if not task:
        return None
    if not updates:
        return task

    set_parts = [f"{k} = ?" for k in updates]
    values = list(updates.values()) + [task_id]
    with transaction(db):
        db.execute(
            f"UPDATE tasks SET {', '.join(set_parts)}, updated_at = {NOW} WHERE id = ?",
            values,
        )
        if "status" in updates and updates["status"] != task.status:
            _log_event(db, task_id, "status_changed", task.status, updates["status"])
        other = sorted(k for k in updates if k != "status")
        if other:
            _log_event(db, task_id, "updated", None, ", ".join(other))
    return get_task(db, task_id)


def update_task_status(db: sqlite3.Connection, task_id: str, status: str) -> Task | None:
    return update_task(db, task_id, status=status)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task and every task below it.

    Tasks that merely depend on the deleted task are left alone; their
    dependency on it becomes dangling and stops blocking.
    """
    if not get_task(db, task_id):
        return False
    with transaction(db):
        db.execute(
            """WITH RECURSIVE subtree(id) AS (
                   SELECT id FROM tasks WHERE parent_id = ?
                   UNION
                   SELECT t.id FROM tasks t JOIN subtree s ON t.parent_id = s.id
               )
               DELETE FROM tasks WHERE id IN (SELECT id FROM subtree)""",
            (task_id,),
        )
        db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    return True


# ── Hierarchy ─────────────────────────────────────────────────────────────────


def build_task_tree(tasks: list[Task]) -> list[TaskNode]:
    """Arrange a flat task list into parent/child trees.

    Two passes over an id -> node index, so input order does not matter.
    Tasks whose parent is missing from the list become roots.
    """
    nodes = {t.id: TaskNode(task=t) for t in tasks}
    roots: list[TaskNode] = []
    parent_of: dict[str, str] = {}

    for t in tasks:
        node = nodes[t.id]
        if t.parent_id and t.parent_id in nodes and t.parent_id != t.id:
            nodes[t.parent_id].children.append(node)
            parent_of[t.id] = t.parent_id
        else:
            roots.append(node)

    visited: set[str] = set()
    _assign_depths(roots, visited)

    # Anything unreached sits on a parent cycle; cut it loose as a root.
    for t in tasks:
        if t.id in visited:
            continue
        node = nodes[t.id]
        parent = nodes[parent_of.pop(t.id)]
        parent.children.remove(node)
        roots.append(node)
        _assign_depths([node], visited)

    return roots


def _assign_depths(start: list[TaskNode], visited: set[str]) -> None:
    stack = [(node, 0) for node in start]
    while stack:
        node, depth = stack.pop()
        if node.task.id in visited:
            continue
        visited.add(node.task.id)
        node.depth = depth
        stack.extend((child, depth + 1) for child in node.children)


def get_task_tree(db: sqlite3.Connection, project_id: str, **filters) -> list[TaskNode]:
    return build_task_tree(list_tasks(db, project_id, **filters))


def iter_tree(roots: list[TaskNode]):
    """Depth-first walk yielding every node once."""
    stack = list(reversed(roots))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


# ── Dependencies ──────────────────────────────────────────────────────────────


def check_dependencies(db: sqlite3.Connection, task_id: str) -> bool:
    """True when every dependency that resolves to a task is completed."""
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError("task", task_id)
    if not task.dependencies:
        return True

    placeholders = ", ".join("?" for _ in task.dependencies)
    row = db.execute(
        f"""SELECT COUNT(*) AS incomplete FROM tasks
            WHERE id IN ({placeholders}) AND status != 'completed'""",
        task.dependencies,
    ).fetchone()
    return row["incomplete"] == 0


def get_blocking_tasks(db: sqlite3.Connection, task_id: str) -> list[Task]:
    """Dependencies of a task that are not yet completed."""
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError("task", task_id)
    if not task.dependencies:
        return []
    placeholders = ", ".join("?" for _ in task.dependencies)
    rows = db.execute(
        f"SELECT * FROM tasks WHERE id IN ({placeholders}) AND status != 'completed'",
        task.dependencies,
    ).fetchall()
    return [_row_to_task(r) for r in rows]


def get_ready_tasks(
    db: sqlite3.Connection,
    project_id: str,
    phase: str | None = None,
) -> list[Task]:
    """Pending tasks whose dependencies are all completed."""
    tasks = list_tasks(db, project_id, status="pending", phase=phase)
    return [t for t in tasks if check_dependencies(db, t.id)]


def find_dangling_dependencies(db: sqlite3.Connection, project_id: str) -> dict[str, list[str]]:
    """Map of task id -> dependency ids that resolve to no task."""
    tasks = list_tasks(db, project_id)
    wanted = sorted({d for t in tasks for d in t.dependencies})
    if not wanted:
        return {}
    placeholders = ", ".join("?" for _ in wanted)
    existing = {
        r["id"]
        for r in db.execute(f"SELECT id FROM tasks WHERE id IN ({placeholders})", wanted)
    }
    dangling = {}
    for t in tasks:
        missing = [d for d in t.dependencies if d not in existing]
        if missing:
            dangling[t.id] = missing
    return dangling


# ── Audit trail ───────────────────────────────────────────────────────────────


def log_progress(db: sqlite3.Connection, task_id: str, notes: str) -> None:
    with transaction(db):
        _log_event(db, task_id, "progress", None, notes)


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _check_priority(priority) -> None:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError("priority", "must be an integer")


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        parent_id=row["parent_id"],
        title=row["title"],
        description=row["description"],
        phase=row["phase"],
        status=row["status"],
        assignee_type=row["assignee_type"],
        priority=row["priority"] if row["priority"] is not None else 1,
        requirements_refs=load_json_list(row["requirements_refs"]),
        dependencies=load_json_list(row["dependencies"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
