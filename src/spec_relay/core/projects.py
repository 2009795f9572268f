"""Project management operations and the phase sequence."""

import sqlite3
from datetime import datetime

from spec_relay.core.validation import check_enum, require_text
from spec_relay.db.engine import NOW, new_id, transaction
from spec_relay.db.models import COMPLETE, PHASES, PROJECT_STATUSES, Project
from spec_relay.errors import NotFoundError, translate_integrity_error


def next_phase(phase: str) -> str:
    """Phase following ``phase``, or ``"complete"`` after the last one."""
    check_enum("phase", phase, PHASES)
    index = PHASES.index(phase)
    if index == len(PHASES) - 1:
        return COMPLETE
    return PHASES[index + 1]


def create_project(
    db: sqlite3.Connection,
    name: str,
    description: str | None = None,
) -> Project:
    """Create a new project in the requirements phase."""
    require_text("name", name)
    project_id = new_id()
    try:
        with transaction(db):
            db.execute(
                "INSERT INTO projects (id, name, description) VALUES (?, ?, ?)",
                (project_id, name, description or None),
            )
    except sqlite3.IntegrityError as e:
        raise translate_integrity_error(e, f"Project with name '{name}'") from e
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def get_project_by_name(db: sqlite3.Connection, name: str) -> Project | None:
    row = db.execute("SELECT * FROM projects WHERE name = ?", (name,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(
    db: sqlite3.Connection,
    status: str | None = None,
    phase: str | None = None,
    name: str | None = None,
) -> list[Project]:
    """List projects, newest first, optionally filtered."""
    query = "SELECT * FROM projects WHERE 1=1"
    params: list = []

    if status:
        query += " AND status = ?"
        params.append(status)

    if phase:
        query += " AND current_phase = ?"
        params.append(phase)

    if name:
        query += " AND name LIKE ?"
        params.append(f"%{name}%")

    query += " ORDER BY created_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields. Status and phase are re-validated on every write.

    ``None`` leaves a field unchanged; an empty description clears it.
    """
    allowed = {"name", "description", "status", "current_phase"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if updates.get("description") == "":
        updates["description"] = None

    if "name" in updates:
        require_text("name", updates["name"])
    if "status" in updates:
        check_enum("status", updates["status"], PROJECT_STATUSES)
    if "current_phase" in updates:
        check_enum("current_phase", updates["current_phase"], PHASES)

    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    try:
        with transaction(db):
            cur = db.execute(
                f"UPDATE projects SET {set_clause}, updated_at = {NOW} WHERE id = ?",
                values,
            )
    except sqlite3.IntegrityError as e:
        raise translate_integrity_error(e, f"Project with name '{updates.get('name')}'") from e
    if cur.rowcount == 0:
        return None
    return get_project(db, project_id)


def update_project_status(db: sqlite3.Connection, project_id: str, status: str) -> Project:
    check_enum("status", status, PROJECT_STATUSES)
    project = update_project(db, project_id, status=status)
    if not project:
        raise NotFoundError("project", project_id)
    return project


def delete_project(db: sqlite3.Connection, project_id: str) -> bool:
    """Delete a project; tasks, sessions and checkpoints cascade."""
    with transaction(db):
        cur = db.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    return cur.rowcount > 0


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        status=row["status"],
        current_phase=row["current_phase"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
