"""Markdown mirror of the store.

Two roots are maintained per project, both keyed by project name:

- ``spec_dir/<name>/``: requirements.md, design.md, tasks.md and a metadata
  README. Humans edit these.
- ``tracking_dir/<name>/``: the overview README, ``implementation/task-<id>.md``
  progress logs, ``handoffs/<from>-to-<to>.md`` and ``<agent>-context.json``.

The mirror is written after the store commits. Any filesystem failure is
raised as MirrorError so the caller can report it without undoing the
store change.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from spec_relay.db.models import COMPLETE, PHASES, DocumentStatus, Project, TaskUpdate
from spec_relay.errors import MirrorError, ValidationError

logger = logging.getLogger(__name__)

SPEC_DOCUMENTS = ("requirements.md", "design.md", "tasks.md")

HANDOFF_FILES = {
    "requirements": "requirements-to-design.md",
    "design": "design-to-tasks.md",
    "tasks": "tasks-to-implementation.md",
    "execute": "execute-to-completion.md",
}

NEXT_PHASE_GUIDELINES = {
    "requirements": """The design phase should:
- Create the technical architecture from these requirements
- Define interfaces and data models
- Cover every acceptance criterion""",
    "design": """The tasks phase should:
- Break the design into implementable units
- Give each task clear dependencies
- Map every task to the requirements it serves""",
    "tasks": """The implementation phase should:
- Execute tasks in dependency order
- Report task status as work progresses
- Record any deviation from the plan""",
    "execute": """The project is complete:
- Review the handoff trail for open follow-ups
- Archive or pause the project when nothing remains""",
}

PLACEHOLDER_MARKERS = (
    "[Work with the AI to define",
    "[AI: ",
    "*Not yet started*",
    "*Add user stories here",
    "*Describe the high-level architecture",
    "*Break down the work into specific",
    "WHEN [event] THEN the system SHALL [response]",
    "As a [role], I want [feature]",
)

MIN_CONTENT_CHARS = 200

KEY_POINT_TAGS = ("Note:", "Important:", "Decision:")

_HEADING_RE = re.compile(r"^#.*$", re.M)
_CURRENT_PHASE_RE = re.compile(r"\*\*Current Phase\*\*: \w+")
_STATUS_RE = re.compile(r"\*\*Status\*\*: \w+")
_CHECKBOX_RE = re.compile(r"^\s*[-*] \[( |x|X)\] (.+?)\s*$", re.M)
_TEMPLATE_ITEM_RE = re.compile(r"^Task \d+: Description$")
_UPDATE_RE = re.compile(
    r"^### (?P<ts>\S+) - Status: (?P<status>\w+)\n\n\*\*Notes:\*\*\n(?P<body>.*?)^---$",
    re.M | re.S,
)
_DELIVERABLES_RE = re.compile(r"\*\*Deliverables:\*\*\n```json\n(?P<json>.*?)\n```", re.S)


@dataclass
class ChecklistItem:
    title: str
    done: bool


# ── Document placement ────────────────────────────────────────────────────────


class DocumentResolver:
    """One candidate location for a project's spec document."""

    name = "base"

    def candidate(self, project_name: str, file_name: str) -> Path:
        raise NotImplementedError

    def find(self, project_name: str, file_name: str) -> Path | None:
        path = self.candidate(project_name, file_name)
        return path if path.is_file() else None


class SpecDirResolver(DocumentResolver):
    """``<spec_dir>/<project>/<file>``, the primary location."""

    name = "spec_dir"

    def __init__(self, spec_dir: Path):
        self.spec_dir = Path(spec_dir)

    def candidate(self, project_name: str, file_name: str) -> Path:
        return self.spec_dir / mirror_key(project_name) / file_name


class WorkingDirResolver(DocumentResolver):
    """A document started loose in the working directory."""

    name = "work_dir"

    def __init__(self, work_dir: Path):
        self.work_dir = Path(work_dir)

    def candidate(self, project_name: str, file_name: str) -> Path:
        return self.work_dir / file_name


class LegacySpecDirResolver(DocumentResolver):
    """``<work_dir>/.spec/<project>/<file>`` from before spec_dir was configurable."""

    name = "legacy_spec_dir"

    def __init__(self, work_dir: Path):
        self.work_dir = Path(work_dir)

    def candidate(self, project_name: str, file_name: str) -> Path:
        return self.work_dir / ".spec" / mirror_key(project_name) / file_name


# ── Synchronizer ──────────────────────────────────────────────────────────────


class FileSync:
    """Mirrors projects into the spec_dir and tracking_dir trees.

    With ``enabled=False`` every method returns without touching disk.
    """

    def __init__(
        self,
        spec_dir: Path | str,
        tracking_dir: Path | str,
        work_dir: Path | str | None = None,
        enabled: bool = True,
        resolvers: list[DocumentResolver] | None = None,
    ):
        self.spec_dir = Path(spec_dir)
        self.tracking_dir = Path(tracking_dir)
        self.work_dir = Path(work_dir) if work_dir is not None else Path.cwd()
        self.enabled = enabled
        if resolvers is None:
            resolvers = [
                SpecDirResolver(self.spec_dir),
                WorkingDirResolver(self.work_dir),
                LegacySpecDirResolver(self.work_dir),
            ]
        self.resolvers = resolvers

    @classmethod
    def from_config(cls, config) -> FileSync:
        return cls(
            spec_dir=config.spec_dir,
            tracking_dir=config.tracking_dir,
            work_dir=config.work_dir,
            enabled=config.file_sync,
        )

    def spec_path(self, project_name: str) -> Path:
        return self.spec_dir / mirror_key(project_name)

    def project_path(self, project_name: str) -> Path:
        return self.tracking_dir / mirror_key(project_name)

    def overview_path(self, project_name: str) -> Path:
        return self.project_path(project_name) / "README.md"

    def handoff_path(self, project_name: str, phase: str) -> Path:
        return self.project_path(project_name) / "handoffs" / HANDOFF_FILES[phase]

    def task_log_path(self, project_name: str, task_id: str) -> Path:
        return self.project_path(project_name) / "implementation" / f"task-{task_id}.md"

    # ── Spec documents ──

    def find_existing_document(self, project_name: str, file_name: str) -> Path | None:
        """First resolver hit for ``file_name``, or None."""
        for resolver in self.resolvers:
            path = resolver.find(project_name, file_name)
            if path:
                logger.debug("Found %s for %s via %s: %s", file_name, project_name, resolver.name, path)
                return path
        return None

    def write_spec_file(self, project_name: str, file_name: str, content: str) -> Path | None:
        """Overwrite an existing copy of the document, else create it in spec_dir."""
        if not self.enabled:
            return None
        with _mirror_errors(f"writing {file_name}"):
            path = self.find_existing_document(project_name, file_name)
            if path is None:
                path = self.spec_path(project_name) / file_name
                path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return path

    def create_spec_files(self, project: Project) -> list[Path]:
        """Write skeleton spec documents that do not exist yet anywhere."""
        if not self.enabled:
            return []
        templates = {
            "requirements.md": _requirements_template(project),
            "design.md": _design_template(project),
            "tasks.md": _tasks_template(project),
            "README.md": _spec_readme_template(project),
        }
        written = []
        with _mirror_errors(f"creating spec files for {project.name}"):
            self.spec_path(project.name).mkdir(parents=True, exist_ok=True)
            for file_name, content in templates.items():
                path = self.spec_path(project.name) / file_name
                if path.exists():
                    continue
                if file_name in SPEC_DOCUMENTS and self.find_existing_document(project.name, file_name):
                    continue
                path.write_text(content)
                written.append(path)
        return written

    # ── Tracking tree ──

    def create_project_files(self, project: Project) -> Path | None:
        """Create the tracking directories and overview README if missing."""
        if not self.enabled:
            return None
        root = self.project_path(project.name)
        with _mirror_errors(f"creating tracking files for {project.name}"):
            (root / "implementation").mkdir(parents=True, exist_ok=True)
            (root / "handoffs").mkdir(parents=True, exist_ok=True)
            readme = root / "README.md"
            if not readme.exists():
                readme.write_text(_overview_template(project))
        return readme

    def append_task_update(self, project_name: str, task_id: str, update: TaskUpdate) -> Path | None:
        if not self.enabled:
            return None
        path = self.task_log_path(project_name, task_id)
        with _mirror_errors(f"appending update for task {task_id}"):
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                path.write_text(f"# Task {task_id}\n\n## Progress Updates\n")
            with path.open("a") as f:
                f.write(_format_update(update))
        return path

    def read_task_updates(self, project_name: str, task_id: str) -> list[TaskUpdate]:
        if not self.enabled:
            return []
        path = self.task_log_path(project_name, task_id)
        if not path.exists():
            return []
        with _mirror_errors(f"reading updates for task {task_id}"):
            content = path.read_text()
        return parse_task_updates(content)

    def write_agent_context(
        self,
        project_name: str,
        agent_type: str,
        summary: str | None,
        context: dict,
    ) -> Path | None:
        if not self.enabled:
            return None
        path = self.project_path(project_name) / f"{agent_type}-context.json"
        data = {
            "agent_type": agent_type,
            "timestamp": _now().isoformat(timespec="milliseconds"),
            "summary": summary,
            "context": context,
        }
        with _mirror_errors(f"writing {agent_type} context"):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2) + "\n")
        return path

    def complete_phase(
        self,
        project_name: str,
        phase: str,
        deliverables: dict,
        notes: str,
    ) -> Path | None:
        """Write the handoff document for ``phase`` and tick it off in the overview."""
        if not self.enabled:
            return None
        if phase not in HANDOFF_FILES:
            raise ValidationError("phase", f"no handoff document for phase {phase!r}")

        path = self.handoff_path(project_name, phase)
        with _mirror_errors(f"writing {path.name}"):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(_handoff_document(phase, deliverables, notes))
            self._tick_phase(project_name, phase)
        return path

    def _tick_phase(self, project_name: str, phase: str) -> None:
        readme = self.overview_path(project_name)
        if not readme.exists():
            logger.warning("No overview for %s; run reconcile to recreate it", project_name)
            return
        content = readme.read_text()
        label = phase.capitalize()
        content = content.replace(f"- [ ] {label}", f"- [x] {label}", 1)
        following = _following(phase)
        if following == COMPLETE:
            content = _CURRENT_PHASE_RE.sub("**Current Phase**: completed", content, count=1)
            content = _STATUS_RE.sub("**Status**: completed", content, count=1)
        else:
            content = _CURRENT_PHASE_RE.sub(f"**Current Phase**: {following}", content, count=1)
        readme.write_text(content)

    def write_overview_status(self, project: Project, completed_phases: Iterable[str]) -> bool:
        """Rewrite the overview's status, phase and checklist from the store.

        Returns True when the file changed.
        """
        if not self.enabled:
            return False
        completed_phases = set(completed_phases)
        readme = self.overview_path(project.name)
        with _mirror_errors(f"updating overview for {project.name}"):
            if not readme.exists():
                self.create_project_files(project)
            before = readme.read_text()
            phase_marker = "completed" if project.status == "completed" else project.current_phase
            content = _CURRENT_PHASE_RE.sub(f"**Current Phase**: {phase_marker}", before, count=1)
            content = _STATUS_RE.sub(f"**Status**: {project.status}", content, count=1)
            for phase in PHASES:
                label = phase.capitalize()
                done = "x" if phase in completed_phases else " "
                content = re.sub(
                    rf"^- \[[ x]\] {label}$", f"- [{done}] {label}", content, count=1, flags=re.M
                )
            if content == before:
                return False
            readme.write_text(content)
        return True

    def rename_project(self, old_name: str, new_name: str) -> list[Path]:
        """Move both mirror directories after a project rename."""
        if not self.enabled or old_name == new_name:
            return []
        moved = []
        with _mirror_errors(f"renaming {old_name} to {new_name}"):
            for root in (self.spec_dir, self.tracking_dir):
                src = root / mirror_key(old_name)
                dst = root / mirror_key(new_name)
                if src == dst or not src.exists():
                    continue
                if dst.exists():
                    raise MirrorError(f"Cannot rename {src}: {dst} already exists")
                src.rename(dst)
                moved.append(dst)
            readme = self.overview_path(new_name)
            if readme.exists():
                content = readme.read_text()
                content = content.replace(f"# {old_name}\n", f"# {new_name}\n", 1)
                content = content.replace(f"/{old_name}/", f"/{new_name}/")
                readme.write_text(content)
        return moved

    # ── Reading ──

    def read_project_history(self, project_name: str) -> str:
        """Overview, then each phase document, then each handoff, in phase order."""
        if not self.enabled:
            return ""
        sections = []
        with _mirror_errors(f"reading history for {project_name}"):
            readme = self.overview_path(project_name)
            if readme.exists():
                sections.append("# Project Overview\n\n" + readme.read_text())

            for file_name in SPEC_DOCUMENTS:
                path = self.find_existing_document(project_name, file_name)
                if path:
                    title = file_name.removesuffix(".md").capitalize()
                    sections.append(f"# {title} Phase\n\n{path.read_text()}")

            for phase in PHASES:
                path = self.handoff_path(project_name, phase)
                if path.exists():
                    sections.append(f"# Handoff: {path.name}\n\n{path.read_text()}")
        return "\n\n".join(sections)

    def validate_document_completion(self, project_name: str, file_name: str) -> DocumentStatus:
        if not self.enabled:
            return DocumentStatus(file_name=file_name, is_complete=True)
        path = self.find_existing_document(project_name, file_name)
        if path is None:
            return DocumentStatus(file_name=file_name, is_complete=False, reason=f"{file_name} not found")
        try:
            content = path.read_text()
        except (OSError, UnicodeError) as e:
            return DocumentStatus(
                file_name=file_name,
                is_complete=False,
                reason=f"Error reading {file_name}: {e}",
                path=str(path),
            )
        is_complete, reason = check_document_content(content)
        return DocumentStatus(file_name=file_name, is_complete=is_complete, reason=reason, path=str(path))

    def parse_task_checklist(self, project_name: str) -> list[ChecklistItem]:
        """Checkbox items from tasks.md, skipping untouched template lines."""
        if not self.enabled:
            return []
        path = self.find_existing_document(project_name, "tasks.md")
        if path is None:
            return []
        with _mirror_errors("reading tasks.md"):
            content = path.read_text()
        items = []
        for m in _CHECKBOX_RE.finditer(content):
            title = m.group(2)
            if _TEMPLATE_ITEM_RE.match(title):
                continue
            items.append(ChecklistItem(title=title, done=m.group(1) != " "))
        return items


# ── Content helpers ───────────────────────────────────────────────────────────


def check_document_content(content: str) -> tuple[bool, str | None]:
    """Decide whether a document is real content or an unfilled template."""
    found = [marker for marker in PLACEHOLDER_MARKERS if marker in content]
    if found:
        shown = ", ".join(found[:2]) + ("..." if len(found) > 2 else "")
        return False, f"Document contains template placeholders: {shown}"

    body = _HEADING_RE.sub("", content).strip()
    if len(body) < MIN_CONTENT_CHARS:
        return False, f"Document too short ({len(body)} chars). Needs substantial content."
    return True, None


def extract_key_points(notes: str) -> str:
    points = [
        f"- {line.strip()}"
        for line in notes.splitlines()
        if any(tag in line for tag in KEY_POINT_TAGS)
    ]
    return "\n".join(points) or "- No specific key points identified"


def parse_task_updates(content: str) -> list[TaskUpdate]:
    updates = []
    for m in _UPDATE_RE.finditer(content):
        body = m.group("body")
        next_steps = None
        if "**Next Steps:**\n" in body:
            body, next_steps = body.split("**Next Steps:**\n", 1)
            next_steps = next_steps.strip() or None
        deliverables = None
        dm = _DELIVERABLES_RE.search(body)
        if dm:
            try:
                deliverables = json.loads(dm.group("json"))
            except json.JSONDecodeError:
                deliverables = None
            body = body[: dm.start()]
        updates.append(
            TaskUpdate(
                timestamp=datetime.fromisoformat(m.group("ts")),
                status=m.group("status"),
                notes=body.strip(),
                deliverables=deliverables,
                next_steps=next_steps,
            )
        )
    return updates


def _format_update(update: TaskUpdate) -> str:
    parts = [
        f"\n### {update.timestamp.isoformat(timespec='milliseconds')} - Status: {update.status}\n",
        f"**Notes:**\n{update.notes}\n",
    ]
    if update.deliverables:
        parts.append(
            "**Deliverables:**\n```json\n" + json.dumps(update.deliverables, indent=2) + "\n```\n"
        )
    if update.next_steps:
        parts.append(f"**Next Steps:**\n{update.next_steps}\n")
    parts.append("---\n")
    return "\n".join(parts)


def _handoff_document(phase: str, deliverables: dict, notes: str) -> str:
    return f"""# {phase.capitalize()} Phase Handoff

**Completed**: {_now().isoformat(timespec="milliseconds")}

## Phase Summary

{notes}

## Deliverables

```json
{json.dumps(deliverables, indent=2)}
```

## Key Decisions and Considerations

{extract_key_points(notes)}

## Next Phase Guidelines

{NEXT_PHASE_GUIDELINES[phase]}
"""


def _overview_template(project: Project) -> str:
    created = project.created_at.isoformat() if project.created_at else _now().isoformat()
    checklist = "\n".join(f"- [ ] {p.capitalize()}" for p in PHASES)
    name = mirror_key(project.name)
    return f"""# {project.name}

{project.description or "No description provided."}

## Project Status

- **ID**: {project.id}
- **Status**: {project.status}
- **Current Phase**: {project.current_phase}
- **Created**: {created}

## Phase Progress

{checklist}

## Specifications

- [Requirements](../.spec/{name}/requirements.md)
- [Design](../.spec/{name}/design.md)
- [Tasks](../.spec/{name}/tasks.md)

## Tracking

- [Implementation Progress](./implementation/)
- [Phase Handoffs](./handoffs/)
"""


def _requirements_template(project: Project) -> str:
    return f"""# {project.name} - Requirements

{project.description or "No description provided."}

## User Stories

*Add user stories here in the format: As a [role], I want [feature], so that [benefit]*

## Acceptance Criteria

WHEN [event] THEN the system SHALL [response]
"""


def _design_template(project: Project) -> str:
    return f"""# {project.name} - Design

## Architecture Overview

*Describe the high-level architecture and design decisions*

## Components

## Data Models
"""


def _tasks_template(project: Project) -> str:
    return f"""# {project.name} - Tasks

*Break down the work into specific, actionable tasks*

- [ ] Task 1: Description
- [ ] Task 2: Description
"""


def _spec_readme_template(project: Project) -> str:
    return f"""# Project Metadata

- **ID**: {project.id}
- **Name**: {project.name}
- **Status**: {project.status}
- **Current Phase**: {project.current_phase}

Edit the documents in this directory to update requirements, design and tasks.
"""


def _following(phase: str) -> str:
    index = PHASES.index(phase)
    return PHASES[index + 1] if index + 1 < len(PHASES) else COMPLETE


def mirror_key(project_name: str) -> str:
    # Project names are free text; keep them to a single path component.
    name = re.sub(r"[\\/]", "-", project_name).strip()
    if name in ("", ".", ".."):
        return "_"
    return name


def _now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _mirror_errors(action: str) -> Iterator[None]:
    # Hand-edited documents may not be valid UTF-8.
    try:
        yield
    except (OSError, UnicodeError) as e:
        raise MirrorError(f"Failed {action}: {e}") from e
