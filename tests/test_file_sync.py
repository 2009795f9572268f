"""Tests for the markdown mirror."""

import json
from datetime import datetime, timezone

import pytest

from spec_relay.db.models import Project, TaskUpdate
from spec_relay.errors import MirrorError, ValidationError
from spec_relay.sync import file_sync
from spec_relay.sync.file_sync import FileSync

REAL_CONTENT = "# Requirements\n\n" + (
    "The relay keeps a durable record of every phase so a new session can pick up "
    "exactly where the previous one stopped. "
) * 4


@pytest.fixture
def sync(tmp_path):
    return FileSync(
        spec_dir=tmp_path / "spec",
        tracking_dir=tmp_path / "projects",
        work_dir=tmp_path / "work",
    )


@pytest.fixture
def project():
    return Project(id="abc123", name="relay", description="A relay project")


class TestScaffolding:
    def test_create_project_files(self, sync, project):
        readme = sync.create_project_files(project)
        assert readme == sync.overview_path("relay")
        content = readme.read_text()
        assert content.startswith("# relay\n")
        assert "- **Status**: active" in content
        assert "- **Current Phase**: requirements" in content
        assert "- [ ] Requirements" in content
        assert (sync.project_path("relay") / "implementation").is_dir()
        assert (sync.project_path("relay") / "handoffs").is_dir()

    def test_create_project_files_keeps_existing_readme(self, sync, project):
        readme = sync.create_project_files(project)
        readme.write_text("edited by hand")
        sync.create_project_files(project)
        assert readme.read_text() == "edited by hand"

    def test_create_spec_files(self, sync, project):
        written = sync.create_spec_files(project)
        assert sorted(p.name for p in written) == ["README.md", "design.md", "requirements.md", "tasks.md"]
        assert "- **ID**: abc123" in (sync.spec_path("relay") / "README.md").read_text()

        assert sync.create_spec_files(project) == []

    def test_create_spec_files_skips_document_in_work_dir(self, sync, project):
        sync.work_dir.mkdir()
        (sync.work_dir / "design.md").write_text("started here")
        written = sync.create_spec_files(project)
        assert "design.md" not in [p.name for p in written]
        assert (sync.work_dir / "design.md").read_text() == "started here"

    def test_disabled_touches_nothing(self, tmp_path, project):
        sync = FileSync(tmp_path / "spec", tmp_path / "projects", work_dir=tmp_path, enabled=False)
        assert sync.create_project_files(project) is None
        assert sync.create_spec_files(project) == []
        assert sync.complete_phase("relay", "requirements", {}, "") is None
        assert sync.read_project_history("relay") == ""
        assert sync.validate_document_completion("relay", "tasks.md").is_complete is True
        assert not (tmp_path / "spec").exists()
        assert not (tmp_path / "projects").exists()

    def test_project_name_is_one_path_component(self, sync):
        assert sync.project_path("a/b").name == "a-b"
        assert sync.project_path("..").name == "_"

    def test_unwritable_tracking_dir(self, tmp_path, project):
        blocker = tmp_path / "projects"
        blocker.write_text("not a directory")
        sync = FileSync(tmp_path / "spec", blocker, work_dir=tmp_path)
        with pytest.raises(MirrorError):
            sync.create_project_files(project)


class TestDocumentResolution:
    def test_spec_dir_first(self, sync, project):
        sync.create_spec_files(project)
        sync.work_dir.mkdir()
        (sync.work_dir / "requirements.md").write_text("loose copy")
        found = sync.find_existing_document("relay", "requirements.md")
        assert found == sync.spec_path("relay") / "requirements.md"

    def test_legacy_location(self, sync):
        legacy = sync.work_dir / ".spec" / "relay" / "tasks.md"
        legacy.parent.mkdir(parents=True)
        legacy.write_text("legacy")
        assert sync.find_existing_document("relay", "tasks.md") == legacy

    def test_missing(self, sync):
        assert sync.find_existing_document("relay", "design.md") is None

    def test_write_spec_file_overwrites_found_copy(self, sync):
        sync.work_dir.mkdir()
        loose = sync.work_dir / "design.md"
        loose.write_text("old")
        assert sync.write_spec_file("relay", "design.md", "new") == loose
        assert loose.read_text() == "new"

    def test_write_spec_file_creates_in_spec_dir(self, sync):
        path = sync.write_spec_file("relay", "design.md", "fresh")
        assert path == sync.spec_path("relay") / "design.md"
        assert path.read_text() == "fresh"


class TestDocumentCompletion:
    def test_missing_document(self, sync):
        status = sync.validate_document_completion("relay", "requirements.md")
        assert status.is_complete is False
        assert status.reason == "requirements.md not found"

    def test_template_is_incomplete(self, sync, project):
        sync.create_spec_files(project)
        status = sync.validate_document_completion("relay", "requirements.md")
        assert status.is_complete is False
        assert status.reason.startswith("Document contains template placeholders")

    def test_short_document(self):
        ok, reason = file_sync.check_document_content("# Title\n\nShort body.")
        assert ok is False
        assert reason == "Document too short (11 chars). Needs substantial content."

    def test_headings_do_not_count(self):
        content = "\n".join(f"# Heading number {i}" for i in range(30))
        ok, _ = file_sync.check_document_content(content)
        assert ok is False

    def test_real_content(self, sync):
        sync.write_spec_file("relay", "requirements.md", REAL_CONTENT)
        status = sync.validate_document_completion("relay", "requirements.md")
        assert status.is_complete is True
        assert status.reason is None
        assert status.path.endswith("requirements.md")


class TestPhaseCompletion:
    def test_handoff_document(self, sync, project):
        sync.create_project_files(project)
        notes = "Gathered the stories.\nDecision: use sqlite\nNote: keep markdown editable"
        path = sync.complete_phase("relay", "requirements", {"stories": 3}, notes)

        assert path.name == "requirements-to-design.md"
        content = path.read_text()
        assert content.startswith("# Requirements Phase Handoff")
        assert '"stories": 3' in content
        assert "- Decision: use sqlite" in content
        assert "- Note: keep markdown editable" in content
        assert "The design phase should:" in content

        overview = sync.overview_path("relay").read_text()
        assert "- [x] Requirements" in overview
        assert "- [ ] Design" in overview
        assert "- **Current Phase**: design" in overview

    def test_no_key_points(self):
        assert file_sync.extract_key_points("plain notes") == "- No specific key points identified"

    def test_last_phase_completes_overview(self, sync, project):
        sync.create_project_files(project)
        path = sync.complete_phase("relay", "execute", {}, "done")
        assert path.name == "execute-to-completion.md"
        overview = sync.overview_path("relay").read_text()
        assert "- [x] Execute" in overview
        assert "- **Current Phase**: completed" in overview
        assert "- **Status**: completed" in overview

    def test_missing_overview_still_writes_handoff(self, sync):
        path = sync.complete_phase("relay", "design", {}, "")
        assert path.exists()
        assert not sync.overview_path("relay").exists()

    def test_unknown_phase(self, sync):
        with pytest.raises(ValidationError):
            sync.complete_phase("relay", "review", {}, "")

    def test_write_overview_status(self, sync, project):
        sync.create_project_files(project)
        project.current_phase = "tasks"
        assert sync.write_overview_status(project, ["requirements", "design"]) is True
        overview = sync.overview_path("relay").read_text()
        assert "- [x] Requirements" in overview
        assert "- [x] Design" in overview
        assert "- [ ] Tasks" in overview
        assert "- **Current Phase**: tasks" in overview

        assert sync.write_overview_status(project, ["requirements", "design"]) is False

    def test_write_overview_status_unticks(self, sync, project):
        sync.create_project_files(project)
        sync.complete_phase("relay", "requirements", {}, "")
        sync.write_overview_status(project, [])
        assert "- [ ] Requirements" in sync.overview_path("relay").read_text()


class TestTaskLog:
    def test_append_and_read(self, sync):
        first = TaskUpdate(
            timestamp=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            status="in_progress",
            notes="Started the parser.\nTwo lines of notes.",
        )
        second = TaskUpdate(
            timestamp=datetime(2026, 1, 3, 9, 0, 0, tzinfo=timezone.utc),
            status="completed",
            notes="Parser done.",
            deliverables={"files": ["parser.py"]},
            next_steps="Wire it into the CLI.",
        )
        path = sync.append_task_update("relay", "t1", first)
        sync.append_task_update("relay", "t1", second)

        assert path.name == "task-t1.md"
        assert path.read_text().startswith("# Task t1\n\n## Progress Updates\n")
        assert sync.read_task_updates("relay", "t1") == [first, second]

    def test_read_missing(self, sync):
        assert sync.read_task_updates("relay", "nope") == []


class TestAgentContext:
    def test_write(self, sync):
        path = sync.write_agent_context("relay", "design", "summary text", {"a": 1})
        assert path.name == "design-context.json"
        data = json.loads(path.read_text())
        assert data["agent_type"] == "design"
        assert data["summary"] == "summary text"
        assert data["context"] == {"a": 1}
        assert data["timestamp"]


class TestRename:
    def test_moves_both_trees(self, sync, project):
        sync.create_project_files(project)
        sync.create_spec_files(project)

        moved = sync.rename_project("relay", "baton")
        assert len(moved) == 2
        assert not sync.project_path("relay").exists()
        assert (sync.spec_path("baton") / "requirements.md").exists()
        overview = sync.overview_path("baton").read_text()
        assert overview.startswith("# baton\n")
        assert "/baton/requirements.md" in overview

    def test_target_exists(self, sync, project):
        sync.create_project_files(project)
        sync.project_path("baton").mkdir(parents=True)
        with pytest.raises(MirrorError):
            sync.rename_project("relay", "baton")

    def test_same_directory_only_retitles(self, sync):
        sync.create_project_files(Project(id="abc123", name="team/api"))
        assert sync.rename_project("team/api", "team-api") == []
        assert sync.overview_path("team-api").read_text().startswith("# team-api\n")


class TestHistory:
    def test_order(self, sync, project):
        sync.create_project_files(project)
        sync.write_spec_file("relay", "requirements.md", "REQ BODY")
        sync.write_spec_file("relay", "tasks.md", "TASKS BODY")
        sync.complete_phase("relay", "requirements", {}, "handoff notes")

        history = sync.read_project_history("relay")
        overview = history.index("# Project Overview")
        requirements = history.index("# Requirements Phase\n\nREQ BODY")
        tasks = history.index("# Tasks Phase\n\nTASKS BODY")
        handoff = history.index("# Handoff: requirements-to-design.md")
        assert overview < requirements < tasks < handoff
        assert "# Design Phase" not in history

    def test_empty(self, sync):
        assert sync.read_project_history("relay") == ""


class TestUndecodable:
    def test_completion_reports_read_error(self, sync):
        path = sync.spec_path("relay") / "design.md"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"caf\xe9 " * 100)
        status = sync.validate_document_completion("relay", "design.md")
        assert status.is_complete is False
        assert status.reason.startswith("Error reading design.md")
        assert status.path == str(path)

    def test_history_raises_mirror_error(self, sync, project):
        sync.create_project_files(project)
        sync.overview_path("relay").write_bytes(b"# relay\n\xff\xfe\n")
        with pytest.raises(MirrorError, match="reading history"):
            sync.read_project_history("relay")

    def test_tick_raises_mirror_error(self, sync, project):
        sync.create_project_files(project)
        sync.overview_path("relay").write_bytes(b"\xff\xfe")
        with pytest.raises(MirrorError):
            sync.complete_phase("relay", "requirements", {}, "notes")
        assert sync.handoff_path("relay", "requirements").exists()


class TestChecklist:
    def test_parse(self, sync, project):
        sync.create_spec_files(project)
        content = (sync.spec_path("relay") / "tasks.md").read_text()
        content += "- [ ] Build parser\n- [x] Write schema\n  * [X] Nested item\n"
        sync.write_spec_file("relay", "tasks.md", content)

        items = sync.parse_task_checklist("relay")
        assert [(i.title, i.done) for i in items] == [
            ("Build parser", False),
            ("Write schema", True),
            ("Nested item", True),
        ]

    def test_missing_tasks_file(self, sync):
        assert sync.parse_task_checklist("relay") == []
