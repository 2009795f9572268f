"""Workflow checkpoints, resume, and phase handoff."""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from spec_relay.core import projects as projects_mod
from spec_relay.core import tasks as tasks_mod
from spec_relay.core.validation import (
    check_enum,
    check_json_map,
    check_str_list,
    load_json_map,
    require_text,
)
from spec_relay.db.engine import new_id, transaction
from spec_relay.db.models import (
    COMPLETE,
    PHASES,
    CheckpointData,
    Project,
    Task,
    WorkflowCheckpoint,
    WorkflowState,
)
from spec_relay.errors import (
    ImmutableCheckpointError,
    InvalidStateError,
    NotFoundError,
    translate_integrity_error,
)

logger = logging.getLogger(__name__)


@dataclass
class HandoffResult:
    checkpoint: WorkflowCheckpoint
    from_phase: str
    next_phase: str
    project: Project
    phase_mismatch: bool = False


# ── Checkpoints ───────────────────────────────────────────────────────────────


def create_checkpoint(
    db: sqlite3.Connection,
    project_id: str,
    phase: str,
    deliverables: dict | None = None,
) -> WorkflowCheckpoint:
    """Snapshot which tasks of ``phase`` are completed and in progress.

    The phase label is stored as given; handoff() is what restricts it to
    the known phases.
    """
    require_text("phase", phase)
    deliverables = check_json_map("deliverables", deliverables)

    checkpoint_id = new_id()
    try:
        with transaction(db):
            completed = tasks_mod.list_tasks(db, project_id, status="completed", phase=phase)
            in_progress = tasks_mod.list_tasks(db, project_id, status="in_progress", phase=phase)
            data = CheckpointData(
                completed_tasks=[t.id for t in completed],
                current_task=in_progress[0].id if in_progress else None,
                phase_deliverables=deliverables,
            )
            db.execute(
                """INSERT INTO workflow_checkpoints (id, project_id, phase, checkpoint_data)
                   VALUES (?, ?, ?, ?)""",
                (checkpoint_id, project_id, phase, _dump_data(data)),
            )
    except sqlite3.IntegrityError as e:
        raise translate_integrity_error(e, f"Checkpoint for project '{project_id}'") from e
    return get_checkpoint(db, checkpoint_id)


def get_checkpoint(db: sqlite3.Connection, checkpoint_id: str) -> WorkflowCheckpoint | None:
    row = db.execute(
        "SELECT * FROM workflow_checkpoints WHERE id = ?", (checkpoint_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_checkpoint(row)


def get_latest_checkpoint(db: sqlite3.Connection, project_id: str) -> WorkflowCheckpoint | None:
    row = db.execute(
        """SELECT * FROM workflow_checkpoints WHERE project_id = ?
           ORDER BY created_at DESC, rowid DESC LIMIT 1""",
        (project_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_checkpoint(row)


def list_checkpoints(
    db: sqlite3.Connection,
    project_id: str,
    phase: str | None = None,
) -> list[WorkflowCheckpoint]:
    """Checkpoints oldest first; a phase filter returns newest first."""
    if phase:
        rows = db.execute(
            """SELECT * FROM workflow_checkpoints WHERE project_id = ? AND phase = ?
               ORDER BY created_at DESC, rowid DESC""",
            (project_id, phase),
        ).fetchall()
    else:
        rows = db.execute(
            """SELECT * FROM workflow_checkpoints WHERE project_id = ?
               ORDER BY created_at ASC, rowid ASC""",
            (project_id,),
        ).fetchall()
    return [_row_to_checkpoint(r) for r in rows]


def update_checkpoint(db: sqlite3.Connection, checkpoint_id: str, **kwargs) -> WorkflowCheckpoint:
    """Checkpoints are immutable; this always raises."""
    raise ImmutableCheckpointError(checkpoint_id)


def delete_checkpoint(db: sqlite3.Connection, checkpoint_id: str) -> bool:
    with transaction(db):
        cur = db.execute("DELETE FROM workflow_checkpoints WHERE id = ?", (checkpoint_id,))
    return cur.rowcount > 0


def purge_checkpoints(db: sqlite3.Connection, project_id: str) -> int:
    """Delete every checkpoint of a project. Returns the count removed."""
    with transaction(db):
        cur = db.execute(
            "DELETE FROM workflow_checkpoints WHERE project_id = ?", (project_id,)
        )
    logger.info("Purged %d checkpoints for project %s", cur.rowcount, project_id)
    return cur.rowcount


# ── Resume ────────────────────────────────────────────────────────────────────


def resume_workflow(db: sqlite3.Connection, project_id: str) -> WorkflowState:
    """Rebuild where a project stands. Read-only."""
    project = projects_mod.get_project(db, project_id)
    if not project:
        raise NotFoundError("project", project_id)

    checkpoint = get_latest_checkpoint(db, project_id)
    phase_tasks = tasks_mod.list_tasks(db, project_id, phase=project.current_phase)

    return WorkflowState(
        project=project,
        current_phase=project.current_phase,
        checkpoint=checkpoint,
        pending_tasks=[t for t in phase_tasks if t.status != "completed"],
        completed_tasks=[t for t in phase_tasks if t.status == "completed"],
    )


# ── Handoff ───────────────────────────────────────────────────────────────────


def handoff(
    db: sqlite3.Connection,
    project_id: str,
    current_phase: str,
    deliverables: dict | None = None,
    completed_task_ids: list[str] | None = None,
    strict: bool = False,
) -> HandoffResult:
    """Close ``current_phase`` and advance the project.

    Creates a checkpoint for the declared phase, then moves the project to
    the next phase, or marks it completed after the last one. A declared
    phase that differs from the project's actual phase is accepted unless
    ``strict`` is set.
    """
    check_enum("current_phase", current_phase, PHASES)
    deliverables = check_json_map("deliverables", deliverables)
    completed_task_ids = check_str_list("completed_task_ids", completed_task_ids)

    project = projects_mod.get_project(db, project_id)
    if not project:
        raise NotFoundError("project", project_id)

    mismatch = project.current_phase != current_phase
    if mismatch:
        if strict:
            raise InvalidStateError(
                f"Project {project_id} is in phase '{project.current_phase}', "
                f"not '{current_phase}'"
            )
        logger.warning(
            "Handoff of phase '%s' for project %s which is in phase '%s'",
            current_phase, project_id, project.current_phase,
        )

    following = projects_mod.next_phase(current_phase)

    with transaction(db):
        for task_id in completed_task_ids:
            task = tasks_mod.get_task(db, task_id)
            if not task or task.project_id != project_id:
                raise NotFoundError("task", task_id)
            tasks_mod.update_task(db, task_id, status="completed")

        checkpoint = create_checkpoint(db, project_id, current_phase, deliverables)

        if following == COMPLETE:
            projects_mod.update_project(db, project_id, status="completed")
        else:
            projects_mod.update_project(db, project_id, current_phase=following)

    logger.info(
        "Project %s handed off '%s' -> '%s' (checkpoint %s)",
        project_id, current_phase, following, checkpoint.id,
    )
    return HandoffResult(
        checkpoint=checkpoint,
        from_phase=current_phase,
        next_phase=following,
        project=projects_mod.get_project(db, project_id),
        phase_mismatch=mismatch,
    )


def start_next_task(
    db: sqlite3.Connection,
    project_id: str,
    task_id: str | None = None,
) -> tuple[Task, Project]:
    """Put a task in progress and move the project into the execute phase.

    Without ``task_id`` the highest-priority ready task is chosen.
    """
    project = projects_mod.get_project(db, project_id)
    if not project:
        raise NotFoundError("project", project_id)

    if task_id:
        task = tasks_mod.get_task(db, task_id)
        if not task or task.project_id != project_id:
            raise NotFoundError("task", task_id)
        if not tasks_mod.check_dependencies(db, task_id):
            blocking = ", ".join(t.id for t in tasks_mod.get_blocking_tasks(db, task_id))
            raise InvalidStateError(f"Task {task_id} is blocked by: {blocking}")
    else:
        ready = tasks_mod.get_ready_tasks(db, project_id)
        if not ready:
            raise InvalidStateError(f"No ready tasks in project {project_id}")
        task = ready[0]

    with transaction(db):
        task = tasks_mod.update_task(db, task.id, status="in_progress")
        if project.current_phase != "execute":
            project = projects_mod.update_project(db, project_id, current_phase="execute")
    return task, project


def _dump_data(data: CheckpointData) -> str:
    return json.dumps({
        "completed_tasks": data.completed_tasks,
        "current_task": data.current_task,
        "phase_deliverables": data.phase_deliverables,
    })


def _row_to_checkpoint(row: sqlite3.Row) -> WorkflowCheckpoint:
    raw = load_json_map(row["checkpoint_data"])
    return WorkflowCheckpoint(
        id=row["id"],
        project_id=row["project_id"],
        phase=row["phase"],
        checkpoint_data=CheckpointData(
            completed_tasks=list(raw.get("completed_tasks") or []),
            current_task=raw.get("current_task"),
            phase_deliverables=dict(raw.get("phase_deliverables") or {}),
        ),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
