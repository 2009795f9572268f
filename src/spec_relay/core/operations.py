"""Operation surface shared by the MCP server, the CLI and the web API.

Each operation validates its input, changes the store, then mirrors the
change to the document tree. Results are JSON-ready dicts. Mirror
failures never undo a store change; they are logged and returned under
``warnings``.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from datetime import datetime, timezone

from spec_relay.core import projects as projects_mod
from spec_relay.core import sessions as sessions_mod
from spec_relay.core import tasks as tasks_mod
from spec_relay.core import workflow as workflow_mod
from spec_relay.core.validation import check_enum, check_json_map, require_text
from spec_relay.db.engine import transaction
from spec_relay.db.models import (
    PHASES,
    PROJECT_STATUSES,
    TASK_STATUSES,
    AgentSession,
    Project,
    Task,
    TaskNode,
    TaskUpdate,
    WorkflowCheckpoint,
)
from spec_relay.errors import (
    ConstraintError,
    InternalError,
    MirrorError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from spec_relay.sync.file_sync import SPEC_DOCUMENTS, FileSync, mirror_key

logger = logging.getLogger(__name__)

PROJECT_FIELDS = {"name", "description", "status", "current_phase"}


def operation(func):
    """Pass taxonomy errors through; wrap anything else in InternalError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except WorkflowError:
            raise
        except Exception as e:
            logger.exception("Operation %s failed", func.__name__)
            raise InternalError(func.__name__, e) from e

    return wrapper


class Operations:
    def __init__(
        self,
        db: sqlite3.Connection,
        sync: FileSync,
        strict_handoff: bool = False,
    ):
        self.db = db
        self.sync = sync
        self.strict_handoff = strict_handoff

    @classmethod
    def from_config(cls, db: sqlite3.Connection, config) -> Operations:
        return cls(db, FileSync.from_config(config), strict_handoff=config.strict_handoff)

    # ── Projects ──

    @operation
    def project_create(self, name: str, description: str | None = None) -> dict:
        require_text("name", name)
        self._check_mirror_key(name)
        project = projects_mod.create_project(self.db, name, description)
        warnings: list[str] = []
        self._mirror(warnings, self.sync.create_project_files, project)
        self._mirror(warnings, self.sync.create_spec_files, project)
        return {"project": project_to_dict(project), "warnings": warnings}

    @operation
    def project_update(self, project_id: str, fields: dict) -> dict:
        if not isinstance(fields, dict):
            raise ValidationError("fields", "must be an object")
        unknown = set(fields) - PROJECT_FIELDS
        if unknown:
            raise ValidationError(sorted(unknown)[0], "cannot be updated")

        before = self._require_project(project_id)
        if isinstance(fields.get("name"), str):
            self._check_mirror_key(fields["name"], project_id)
        project = projects_mod.update_project(self.db, project_id, **fields)
        if not project:
            raise NotFoundError("project", project_id)

        warnings: list[str] = []
        if project.name != before.name:
            self._mirror(warnings, self.sync.rename_project, before.name, project.name)
        if (project.status, project.current_phase) != (before.status, before.current_phase):
            self._mirror(
                warnings, self.sync.write_overview_status, project, completed_phases(project)
            )
        return {"project": project_to_dict(project), "warnings": warnings}

    @operation
    def project_get(self, project_id: str) -> dict:
        project = self._require_project(project_id)
        d = project_to_dict(project)
        counts = dict.fromkeys(TASK_STATUSES, 0)
        for row in self.db.execute(
            "SELECT status, COUNT(*) AS n FROM tasks WHERE project_id = ? GROUP BY status",
            (project_id,),
        ):
            counts[row["status"]] = row["n"]
        d["task_counts"] = counts
        return d

    @operation
    def project_list(
        self,
        status: str | None = None,
        phase: str | None = None,
        name: str | None = None,
    ) -> list[dict]:
        if status:
            check_enum("status", status, PROJECT_STATUSES)
        if phase:
            check_enum("phase", phase, PHASES)
        return [
            project_to_dict(p)
            for p in projects_mod.list_projects(self.db, status=status, phase=phase, name=name)
        ]

    @operation
    def project_delete(self, project_id: str) -> dict:
        if not projects_mod.delete_project(self.db, project_id):
            raise NotFoundError("project", project_id)
        return {"deleted": project_id}

    # ── Tasks ──

    @operation
    def task_create(
        self,
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
    ) -> dict:
        task = tasks_mod.create_task(
            self.db,
            project_id,
            title,
            phase,
            description=description,
            parent_id=parent_id,
            status=status,
            assignee_type=assignee_type,
            priority=priority,
            requirements_refs=requirements_refs,
            dependencies=dependencies,
        )
        return task_to_dict(task)

    @operation
    def task_get(self, task_id: str) -> dict:
        task = tasks_mod.get_task(self.db, task_id)
        if not task:
            raise NotFoundError("task", task_id)
        return task_to_dict(task)

    @operation
    def task_update(self, task_id: str, fields: dict) -> dict:
        if not isinstance(fields, dict):
            raise ValidationError("fields", "must be an object")
        task = tasks_mod.update_task(self.db, task_id, **fields)
        if not task:
            raise NotFoundError("task", task_id)
        return task_to_dict(task)

    @operation
    def task_progress(
        self,
        task_id: str,
        status: str,
        notes: str,
        deliverables: dict | None = None,
        next_steps: str | None = None,
    ) -> dict:
        """Record a status change with notes in the store and the task's progress log."""
        check_enum("status", status, TASK_STATUSES)
        require_text("notes", notes)
        deliverables = check_json_map("deliverables", deliverables)

        if not tasks_mod.get_task(self.db, task_id):
            raise NotFoundError("task", task_id)
        with transaction(self.db):
            task = tasks_mod.update_task(self.db, task_id, status=status)
            tasks_mod.log_progress(self.db, task_id, notes)

        project = projects_mod.get_project(self.db, task.project_id)
        update = TaskUpdate(
            timestamp=datetime.now(timezone.utc),
            status=status,
            notes=notes,
            deliverables=deliverables or None,
            next_steps=next_steps,
        )
        warnings: list[str] = []
        self._mirror(warnings, self.sync.append_task_update, project.name, task_id, update)
        return {"task": task_to_dict(task), "warnings": warnings}

    @operation
    def task_query(
        self,
        project_id: str | None = None,
        status: str | None = None,
        phase: str | None = None,
        assignee_type: str | None = None,
        include_hierarchy: bool = False,
    ) -> list[dict]:
        if status:
            check_enum("status", status, TASK_STATUSES)
        if phase:
            check_enum("phase", phase, PHASES)

        if project_id:
            self._require_project(project_id)
            project_ids = [project_id]
        else:
            project_ids = [p.id for p in projects_mod.list_projects(self.db)]

        tasks: list[Task] = []
        for pid in project_ids:
            tasks.extend(
                tasks_mod.list_tasks(
                    self.db, pid, status=status, phase=phase, assignee_type=assignee_type
                )
            )
        if include_hierarchy:
            return [node_to_dict(n) for n in tasks_mod.build_task_tree(tasks)]
        return [task_to_dict(t) for t in tasks]

    @operation
    def task_delete(self, task_id: str) -> dict:
        if not tasks_mod.delete_task(self.db, task_id):
            raise NotFoundError("task", task_id)
        return {"deleted": task_id}

    @operation
    def task_dependencies(self, task_id: str) -> dict:
        task = tasks_mod.get_task(self.db, task_id)
        if not task:
            raise NotFoundError("task", task_id)
        blocking = tasks_mod.get_blocking_tasks(self.db, task_id)
        dangling = [d for d in task.dependencies if not tasks_mod.get_task(self.db, d)]
        return {
            "task_id": task_id,
            "satisfied": tasks_mod.check_dependencies(self.db, task_id),
            "dependencies": task.dependencies,
            "blocking": [task_to_dict(t) for t in blocking],
            "dangling": dangling,
        }

    @operation
    def task_events(self, task_id: str) -> list[dict]:
        if not tasks_mod.get_task(self.db, task_id):
            raise NotFoundError("task", task_id)
        return [
            {
                "event_type": e.event_type,
                "old_value": e.old_value,
                "new_value": e.new_value,
                "created_at": _dt(e.created_at),
            }
            for e in tasks_mod.get_task_events(self.db, task_id)
        ]

    # ── Sessions ──

    @operation
    def session_save(
        self,
        project_id: str,
        agent_type: str,
        context: dict,
        summary: str | None = None,
    ) -> dict:
        """Merge ``context`` into the agent's session for the project."""
        project = self._require_project(project_id)
        session = sessions_mod.save_context(self.db, project_id, agent_type, context)
        warnings: list[str] = []
        self._mirror(
            warnings,
            self.sync.write_agent_context,
            project.name,
            agent_type,
            summary,
            session.context_data,
        )
        return {"session": session_to_dict(session), "warnings": warnings}

    @operation
    def session_load_all(self, project_id: str) -> dict:
        self._require_project(project_id)
        return {
            "project_id": project_id,
            "contexts": sessions_mod.load_all_contexts(self.db, project_id),
            "sessions": [session_to_dict(s) for s in sessions_mod.list_sessions(self.db, project_id)],
        }

    @operation
    def session_assign(self, task_id: str, agent_type: str) -> dict:
        return session_to_dict(sessions_mod.assign_agent(self.db, task_id, agent_type))

    # ── Workflow ──

    @operation
    def workflow_handoff(
        self,
        project_id: str,
        current_phase: str,
        deliverables: dict | None = None,
        notes: str = "",
        completed_task_ids: list[str] | None = None,
    ) -> dict:
        if not isinstance(notes, str):
            raise ValidationError("notes", "must be a string")
        result = workflow_mod.handoff(
            self.db,
            project_id,
            current_phase,
            deliverables,
            completed_task_ids=completed_task_ids,
            strict=self.strict_handoff,
        )
        warnings: list[str] = []
        if result.phase_mismatch:
            warnings.append(
                f"Declared phase '{current_phase}' did not match the project's phase "
                f"before handoff"
            )
        self._mirror(
            warnings,
            self.sync.complete_phase,
            result.project.name,
            result.from_phase,
            result.checkpoint.checkpoint_data.phase_deliverables,
            notes,
        )
        return {
            "checkpoint": checkpoint_to_dict(result.checkpoint),
            "next_phase": result.next_phase,
            "project": project_to_dict(result.project),
            "warnings": warnings,
        }

    @operation
    def workflow_resume(self, project_id: str) -> dict:
        state = workflow_mod.resume_workflow(self.db, project_id)
        return {
            "project": project_to_dict(state.project),
            "current_phase": state.current_phase,
            "checkpoint": checkpoint_to_dict(state.checkpoint) if state.checkpoint else None,
            "pending_tasks": [task_to_dict(t) for t in state.pending_tasks],
            "completed_tasks": [task_to_dict(t) for t in state.completed_tasks],
        }

    @operation
    def workflow_checkpoint(
        self, project_id: str, phase: str, deliverables: dict | None = None
    ) -> dict:
        self._require_project(project_id)
        checkpoint = workflow_mod.create_checkpoint(self.db, project_id, phase, deliverables)
        return checkpoint_to_dict(checkpoint)

    @operation
    def workflow_checkpoints(self, project_id: str, phase: str | None = None) -> list[dict]:
        self._require_project(project_id)
        return [
            checkpoint_to_dict(c)
            for c in workflow_mod.list_checkpoints(self.db, project_id, phase=phase)
        ]

    @operation
    def workflow_start_next(self, project_id: str, task_id: str | None = None) -> dict:
        task, project = workflow_mod.start_next_task(self.db, project_id, task_id)
        warnings: list[str] = []
        update = TaskUpdate(
            timestamp=datetime.now(timezone.utc),
            status=task.status,
            notes=f"Started: {task.title}",
        )
        self._mirror(warnings, self.sync.append_task_update, project.name, task.id, update)
        self._mirror(
            warnings, self.sync.write_overview_status, project, completed_phases(project)
        )
        return {
            "task": task_to_dict(task),
            "project": project_to_dict(project),
            "warnings": warnings,
        }

    # ── Documents ──

    @operation
    def document_status(self, project_id: str, file_name: str) -> dict:
        check_enum("file_name", file_name, SPEC_DOCUMENTS)
        project = self._require_project(project_id)
        status = self.sync.validate_document_completion(project.name, file_name)
        return {
            "file_name": status.file_name,
            "is_complete": status.is_complete,
            "reason": status.reason,
            "path": status.path,
        }

    @operation
    def document_write(self, project_id: str, file_name: str, content: str) -> dict:
        """Write a phase document, overwriting the copy already in use if there is one."""
        check_enum("file_name", file_name, SPEC_DOCUMENTS)
        if not isinstance(content, str):
            raise ValidationError("content", "must be a string")
        project = self._require_project(project_id)

        result = {
            "project_id": project_id,
            "file_name": file_name,
            "path": None,
            "is_complete": False,
            "reason": None,
            "warnings": [],
        }
        if not self.sync.enabled:
            result["warnings"].append("File sync is disabled; the document was not written")
            return result

        path = self._mirror(
            result["warnings"], self.sync.write_spec_file, project.name, file_name, content
        )
        if path is None:
            return result
        status = self.sync.validate_document_completion(project.name, file_name)
        result.update(path=str(path), is_complete=status.is_complete, reason=status.reason)
        logger.info("Wrote %s for %s at %s", file_name, project.name, path)
        return result

    @operation
    def project_history(self, project_id: str) -> dict:
        project = self._require_project(project_id)
        warnings: list[str] = []
        history = self._mirror(warnings, self.sync.read_project_history, project.name)
        return {"project_id": project_id, "history": history or "", "warnings": warnings}

    @operation
    def reconcile(self, project_id: str) -> dict:
        """Bring the mirror back in line with the store for one project.

        Recreates missing scaffolding, rewrites the overview status and phase
        checklist, and reports dangling dependencies and unfinished documents.
        """
        project = self._require_project(project_id)
        report = {
            "project_id": project_id,
            "file_sync": self.sync.enabled,
            "created": [],
            "overview_updated": False,
            "dangling_dependencies": tasks_mod.find_dangling_dependencies(self.db, project_id),
            "incomplete_documents": {},
            "warnings": [],
        }
        if not self.sync.enabled:
            return report

        warnings = report["warnings"]
        if not self.sync.overview_path(project.name).exists():
            readme = self._mirror(warnings, self.sync.create_project_files, project)
            if readme:
                report["created"].append(str(readme))
        created = self._mirror(warnings, self.sync.create_spec_files, project) or []
        report["created"].extend(str(p) for p in created)
        report["overview_updated"] = bool(
            self._mirror(
                warnings, self.sync.write_overview_status, project, completed_phases(project)
            )
        )
        for file_name in SPEC_DOCUMENTS:
            status = self.sync.validate_document_completion(project.name, file_name)
            if not status.is_complete:
                report["incomplete_documents"][file_name] = status.reason

        logger.info(
            "Reconciled %s: %d files created, overview %s",
            project.name,
            len(report["created"]),
            "updated" if report["overview_updated"] else "unchanged",
        )
        return report

    @operation
    def import_spec_tasks(self, project_id: str, phase: str = "execute") -> dict:
        """Create tasks for new tasks.md checklist items and complete ticked ones.

        Items are matched to existing tasks by title. Unticking an item does
        not reopen its task.
        """
        check_enum("phase", phase, PHASES)
        project = self._require_project(project_id)
        warnings: list[str] = []
        items = self._mirror(warnings, self.sync.parse_task_checklist, project.name) or []

        by_title = {t.title: t for t in tasks_mod.list_tasks(self.db, project_id)}
        created, updated = [], []
        with transaction(self.db):
            for item in items:
                existing = by_title.get(item.title)
                if existing is None:
                    task = tasks_mod.create_task(
                        self.db,
                        project_id,
                        item.title,
                        phase,
                        status="completed" if item.done else "pending",
                    )
                    by_title[task.title] = task
                    created.append(task)
                elif item.done and existing.status != "completed":
                    updated.append(tasks_mod.update_task(self.db, existing.id, status="completed"))

        if created or updated:
            logger.info(
                "Imported tasks.md for %s: %d created, %d completed",
                project.name, len(created), len(updated),
            )
        return {
            "created": [task_to_dict(t) for t in created],
            "updated": [task_to_dict(t) for t in updated],
            "warnings": warnings,
        }

    # ── Helpers ──

    def _require_project(self, project_id: str) -> Project:
        project = projects_mod.get_project(self.db, project_id)
        if not project:
            raise NotFoundError("project", project_id)
        return project

    def _check_mirror_key(self, name: str, project_id: str | None = None) -> None:
        """Reject a name whose mirror directory belongs to another project.

        An exact duplicate is left to the store's unique constraint.
        """
        key = mirror_key(name)
        for other in projects_mod.list_projects(self.db):
            if other.id == project_id or other.name == name:
                continue
            if mirror_key(other.name) == key:
                raise ConstraintError(
                    f"Project name '{name}' shares the document directory '{key}' "
                    f"with project '{other.name}'"
                )

    def _mirror(self, warnings: list[str], func, *args):
        try:
            return func(*args)
        except MirrorError as e:
            logger.warning("Document mirror out of sync: %s", e)
            warnings.append(str(e))
            return None


def completed_phases(project: Project) -> list[str]:
    """Phases a project has moved past."""
    if project.status == "completed":
        return list(PHASES)
    return list(PHASES[: PHASES.index(project.current_phase)])


# ── Serialization ─────────────────────────────────────────────────────────────


def _dt(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def project_to_dict(project: Project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "status": project.status,
        "current_phase": project.current_phase,
        "created_at": _dt(project.created_at),
        "updated_at": _dt(project.updated_at),
    }


def task_to_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "project_id": task.project_id,
        "parent_id": task.parent_id,
        "title": task.title,
        "description": task.description,
        "phase": task.phase,
        "status": task.status,
        "assignee_type": task.assignee_type,
        "priority": task.priority,
        "requirements_refs": task.requirements_refs,
        "dependencies": task.dependencies,
        "created_at": _dt(task.created_at),
        "updated_at": _dt(task.updated_at),
    }


def node_to_dict(node: TaskNode) -> dict:
    d = task_to_dict(node.task)
    d["depth"] = node.depth
    d["children"] = [node_to_dict(c) for c in node.children]
    return d


def session_to_dict(session: AgentSession) -> dict:
    return {
        "id": session.id,
        "project_id": session.project_id,
        "agent_type": session.agent_type,
        "task_id": session.task_id,
        "context": session.context_data,
        "last_active": _dt(session.last_active),
    }


def checkpoint_to_dict(checkpoint: WorkflowCheckpoint) -> dict:
    data = checkpoint.checkpoint_data
    return {
        "id": checkpoint.id,
        "project_id": checkpoint.project_id,
        "phase": checkpoint.phase,
        "completed_tasks": data.completed_tasks,
        "current_task": data.current_task,
        "phase_deliverables": data.phase_deliverables,
        "created_at": _dt(checkpoint.created_at),
    }
