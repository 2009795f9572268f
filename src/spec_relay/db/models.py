"""Data models for spec-relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

PHASES = ("requirements", "design", "tasks", "execute")
PROJECT_STATUSES = ("active", "paused", "completed")
TASK_STATUSES = ("pending", "in_progress", "blocked", "completed")
AGENT_TYPES = ("requirements", "design", "tasks", "implementation")

# Sentinel returned by next_phase() after the last phase.
COMPLETE = "complete"

JSONValue = Union[str, int, float, bool, None, "JSONMap", list["JSONValue"]]
JSONMap = dict[str, JSONValue]


@dataclass
class Project:
    id: str
    name: str
    description: str | None = None
    status: str = "active"
    current_phase: str = "requirements"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    phase: str
    parent_id: str | None = None
    description: str | None = None
    status: str = "pending"
    assignee_type: str | None = None
    priority: int = 1
    requirements_refs: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TaskNode:
    task: Task
    depth: int = 0
    children: list[TaskNode] = field(default_factory=list)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class AgentSession:
    id: str
    project_id: str
    agent_type: str
    task_id: str | None = None
    context_data: JSONMap = field(default_factory=dict)
    last_active: datetime | None = None


@dataclass
class CheckpointData:
    completed_tasks: list[str] = field(default_factory=list)
    current_task: str | None = None
    phase_deliverables: JSONMap = field(default_factory=dict)


@dataclass
class WorkflowCheckpoint:
    id: str
    project_id: str
    phase: str
    checkpoint_data: CheckpointData = field(default_factory=CheckpointData)
    created_at: datetime | None = None


@dataclass
class WorkflowState:
    project: Project
    current_phase: str
    checkpoint: WorkflowCheckpoint | None
    pending_tasks: list[Task] = field(default_factory=list)
    completed_tasks: list[Task] = field(default_factory=list)


@dataclass
class DocumentStatus:
    file_name: str
    is_complete: bool
    reason: str | None = None
    path: str | None = None


@dataclass
class TaskUpdate:
    """One progress entry in a task's mirrored progress log."""

    timestamp: datetime
    status: str
    notes: str
    deliverables: JSONMap | None = None
    next_steps: str | None = None
