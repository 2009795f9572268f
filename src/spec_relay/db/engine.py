"""SQLite database connection management and schema initialization."""

import secrets
import sqlite3
from contextlib import contextmanager
from pathlib import Path

# Millisecond ISO-8601 timestamps; datetime.fromisoformat() parses them.
NOW = "strftime('%Y-%m-%dT%H:%M:%f', 'now')"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'paused', 'completed')),
    current_phase TEXT NOT NULL DEFAULT 'requirements'
        CHECK (current_phase IN ('requirements', 'design', 'tasks', 'execute')),
    created_at TEXT DEFAULT ({NOW}),
    updated_at TEXT DEFAULT ({NOW})
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    parent_id TEXT REFERENCES tasks(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    phase TEXT NOT NULL
        CHECK (phase IN ('requirements', 'design', 'tasks', 'execute')),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'in_progress', 'blocked', 'completed')),
    assignee_type TEXT,
    priority INTEGER NOT NULL DEFAULT 1,
    requirements_refs TEXT,
    dependencies TEXT,
    created_at TEXT DEFAULT ({NOW}),
    updated_at TEXT DEFAULT ({NOW})
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT ({NOW})
);

CREATE TABLE IF NOT EXISTS agent_sessions (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
    agent_type TEXT NOT NULL
        CHECK (agent_type IN ('requirements', 'design', 'tasks', 'implementation')),
    context_data TEXT,
    last_active TEXT DEFAULT ({NOW})
);

CREATE TABLE IF NOT EXISTS workflow_checkpoints (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    phase TEXT NOT NULL,
    checkpoint_data TEXT NOT NULL,
    created_at TEXT DEFAULT ({NOW})
);

CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_id);
CREATE INDEX IF NOT EXISTS idx_task_events_task ON task_events(task_id);
CREATE INDEX IF NOT EXISTS idx_sessions_project ON agent_sessions(project_id);
CREATE INDEX IF NOT EXISTS idx_checkpoints_project ON workflow_checkpoints(project_id);
"""

# Checkpoints are snapshots; refuse UPDATE even from code that bypasses
# the workflow module.
TRIGGERS = """
CREATE TRIGGER IF NOT EXISTS workflow_checkpoints_immutable
BEFORE UPDATE ON workflow_checkpoints
BEGIN
    SELECT RAISE(ABORT, 'workflow checkpoints are immutable');
END;
"""


def new_id() -> str:
    """Opaque 32-character hex identifier."""
    return secrets.token_hex(16)


def init_db(db_path: Path | str) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed.

    ``":memory:"`` gives a private in-process store.
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    if str(db_path) != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.executescript(SCHEMA)
    conn.executescript(TRIGGERS)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path | str):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db: sqlite3.Connection):
    """Run a block of statements atomically.

    Nested use joins the enclosing transaction; only the outermost block
    commits or rolls back.
    """
    if db.in_transaction:
        yield db
        return
    db.execute("BEGIN")
    try:
        yield db
    except BaseException:
        db.rollback()
        raise
    else:
        db.commit()
