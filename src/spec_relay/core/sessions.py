"""Agent sessions: per-(project, agent type) context with merge-on-save.

Context updates are read-modify-write. Two writers saving to the same
session at once can lose keys; sessions are expected to have a single
writer at a time.
"""

import json
import sqlite3
from datetime import datetime

from spec_relay.core.validation import check_enum, check_json_map, load_json_map, require_text
from spec_relay.db.engine import NOW, new_id, transaction
from spec_relay.db.models import AGENT_TYPES, AgentSession
from spec_relay.errors import NotFoundError, translate_integrity_error


def create_session(
    db: sqlite3.Connection,
    project_id: str,
    agent_type: str,
    task_id: str | None = None,
    context_data: dict | None = None,
) -> AgentSession:
    """Start a session for an agent type on a project."""
    require_text("project_id", project_id)
    check_enum("agent_type", agent_type, AGENT_TYPES)
    context = check_json_map("context", context_data)

    session_id = new_id()
    try:
        with transaction(db):
            db.execute(
                """INSERT INTO agent_sessions (id, project_id, task_id, agent_type, context_data)
                   VALUES (?, ?, ?, ?, ?)""",
                (session_id, project_id, task_id, agent_type, json.dumps(context)),
            )
    except sqlite3.IntegrityError as e:
        raise translate_integrity_error(e, f"Session for project '{project_id}'") from e
    return get_session(db, session_id)


def get_session(db: sqlite3.Connection, session_id: str) -> AgentSession | None:
    row = db.execute(
        "SELECT * FROM agent_sessions WHERE id = ?", (session_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def list_sessions(db: sqlite3.Connection, project_id: str) -> list[AgentSession]:
    """Sessions of a project, most recently active first."""
    rows = db.execute(
        """SELECT * FROM agent_sessions WHERE project_id = ?
           ORDER BY last_active DESC, rowid DESC""",
        (project_id,),
    ).fetchall()
    return [_row_to_session(r) for r in rows]


def find_session(
    db: sqlite3.Connection, project_id: str, agent_type: str
) -> AgentSession | None:
    """Most recently active session for (project, agent type)."""
    row = db.execute(
        """SELECT * FROM agent_sessions WHERE project_id = ? AND agent_type = ?
           ORDER BY last_active DESC, rowid DESC LIMIT 1""",
        (project_id, agent_type),
    ).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def update_context(
    db: sqlite3.Connection, session_id: str, context: dict
) -> AgentSession:
    """Merge ``context`` into the session's blob; new keys win."""
    context = check_json_map("context", context)
    session = get_session(db, session_id)
    if not session:
        raise NotFoundError("session", session_id)

    merged = {**session.context_data, **context}
    with transaction(db):
        db.execute(
            f"UPDATE agent_sessions SET context_data = ?, last_active = {NOW} WHERE id = ?",
            (json.dumps(merged), session_id),
        )
    return get_session(db, session_id)


def save_context(
    db: sqlite3.Connection,
    project_id: str,
    agent_type: str,
    context: dict,
) -> AgentSession:
    """Merge into the (project, agent type) session, creating it on first save."""
    check_enum("agent_type", agent_type, AGENT_TYPES)
    context = check_json_map("context", context)
    with transaction(db):
        existing = find_session(db, project_id, agent_type)
        if existing:
            return update_context(db, existing.id, context)
        return create_session(db, project_id, agent_type, context_data=context)


def touch_session(db: sqlite3.Connection, session_id: str) -> AgentSession:
    """Resume a session: refresh its liveness timestamp."""
    with transaction(db):
        cur = db.execute(
            f"UPDATE agent_sessions SET last_active = {NOW} WHERE id = ?",
            (session_id,),
        )
    if cur.rowcount == 0:
        raise NotFoundError("session", session_id)
    return get_session(db, session_id)


def load_all_contexts(db: sqlite3.Connection, project_id: str) -> dict[str, dict]:
    """Context blobs keyed by agent type; the most recent session wins."""
    contexts: dict[str, dict] = {}
    for session in list_sessions(db, project_id):
        contexts.setdefault(session.agent_type, session.context_data)
    return contexts


def assign_agent(db: sqlite3.Connection, task_id: str, agent_type: str) -> AgentSession:
    """Point the (task's project, agent type) session at ``task_id``."""
    check_enum("agent_type", agent_type, AGENT_TYPES)
    row = db.execute("SELECT project_id FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        raise NotFoundError("task", task_id)

    with transaction(db):
        existing = find_session(db, row["project_id"], agent_type)
        if not existing:
            return create_session(db, row["project_id"], agent_type, task_id=task_id)
        db.execute(
            f"UPDATE agent_sessions SET task_id = ?, last_active = {NOW} WHERE id = ?",
            (task_id, existing.id),
        )
    return get_session(db, existing.id)


def _row_to_session(row: sqlite3.Row) -> AgentSession:
    return AgentSession(
        id=row["id"],
        project_id=row["project_id"],
        task_id=row["task_id"],
        agent_type=row["agent_type"],
        context_data=load_json_map(row["context_data"]),
        last_active=_parse_dt(row["last_active"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
