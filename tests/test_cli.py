"""Tests for the CLI."""

import json
import logging
import os
import re
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from spec_relay.cli import main


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {
            "SR_DB_PATH": str(Path(tmp) / "test.db"),
            "SR_SPEC_DIR": str(Path(tmp) / "spec"),
            "SR_TRACKING_DIR": str(Path(tmp) / "projects"),
            "SR_WORK_DIR": str(Path(tmp) / "work"),
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner(), Path(tmp)

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        logging.getLogger("spec_relay").handlers.clear()


def _init(runner, name="my-project"):
    result = runner.invoke(main, ["init", name])
    assert result.exit_code == 0, result.output
    return re.search(r"Project created: (\w+)", result.output).group(1)


def _add_task(runner, project_id, title, *args):
    result = runner.invoke(main, ["task", "add", project_id, title, *args])
    assert result.exit_code == 0, result.output
    return re.search(r"Created task: (\w+)", result.output).group(1)


class TestCLI:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "spec-relay" in result.output

    def test_init_scaffolds_documents(self, cli_env):
        runner, tmp = cli_env
        project_id = _init(runner)
        assert len(project_id) == 32
        assert (tmp / "projects" / "my-project" / "README.md").exists()
        assert (tmp / "spec" / "my-project" / "requirements.md").exists()

    def test_duplicate_name_fails(self, cli_env):
        runner, _ = cli_env
        _init(runner)
        result = runner.invoke(main, ["init", "my-project"])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_task_flow(self, cli_env):
        runner, _ = cli_env
        project_id = _init(runner)
        first = _add_task(runner, project_id, "Write schema", "--phase", "execute")
        _add_task(runner, project_id, "Build parser", "--phase", "execute", "--depends-on", first)

        result = runner.invoke(main, ["task", "list", project_id])
        assert result.exit_code == 0
        assert "Write schema" in result.output
        assert "Build parser" in result.output

        result = runner.invoke(main, ["task", "progress", first, "completed", "Schema done"])
        assert result.exit_code == 0
        assert "completed" in result.output

        result = runner.invoke(main, ["task", "show", first])
        assert result.exit_code == 0
        assert "status_changed: pending -> completed" in result.output
        assert "progress: Schema done" in result.output

    def test_task_tree(self, cli_env):
        runner, _ = cli_env
        project_id = _init(runner)
        parent = _add_task(runner, project_id, "Parent", "--phase", "tasks")
        _add_task(runner, project_id, "Child", "--phase", "tasks", "--parent", parent)

        result = runner.invoke(main, ["task", "list", project_id, "--tree"])
        assert result.exit_code == 0
        child_line = next(line for line in result.output.splitlines() if "Child" in line)
        assert child_line.startswith("    ")

    def test_task_list_json(self, cli_env):
        runner, _ = cli_env
        project_id = _init(runner)
        _add_task(runner, project_id, "Only", "--phase", "design")
        result = runner.invoke(main, ["task", "list", project_id, "--json"])
        assert result.exit_code == 0
        assert [t["title"] for t in json.loads(result.output)] == ["Only"]

    def test_deps(self, cli_env):
        runner, _ = cli_env
        project_id = _init(runner)
        first = _add_task(runner, project_id, "First", "--phase", "execute")
        second = _add_task(runner, project_id, "Second", "--phase", "execute", "--depends-on", first)
        result = runner.invoke(main, ["task", "deps", second])
        assert result.exit_code == 0
        assert "Blocked" in result.output
        assert first in result.output

    def test_unknown_task(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "show", "nope"])
        assert result.exit_code == 1
        assert "Task not found: nope" in result.output

    def test_bad_json_argument(self, cli_env):
        runner, _ = cli_env
        project_id = _init(runner)
        result = runner.invoke(main, ["context", "save", project_id, "design", "{not json"])
        assert result.exit_code == 2


class TestWorkflowCommands:
    def test_handoff_and_resume(self, cli_env):
        runner, tmp = cli_env
        project_id = _init(runner)

        result = runner.invoke(
            main,
            ["workflow", "handoff", project_id, "requirements", "-n", "Decision: ship it",
             "--deliverables", '{"stories": 2}'],
        )
        assert result.exit_code == 0, result.output
        assert "now in phase: design" in result.output
        assert (tmp / "projects" / "my-project" / "handoffs" / "requirements-to-design.md").exists()

        result = runner.invoke(main, ["workflow", "resume", project_id, "--json"])
        state = json.loads(result.output)
        assert state["current_phase"] == "design"
        assert state["checkpoint"]["phase_deliverables"] == {"stories": 2}

    def test_handoff_to_completion(self, cli_env):
        runner, _ = cli_env
        project_id = _init(runner)
        for phase in ("requirements", "design", "tasks", "execute"):
            result = runner.invoke(main, ["workflow", "handoff", project_id, phase])
            assert result.exit_code == 0, result.output
        assert "Project my-project completed" in result.output

    def test_next(self, cli_env):
        runner, _ = cli_env
        project_id = _init(runner)
        task_id = _add_task(runner, project_id, "Build", "--phase", "execute")
        result = runner.invoke(main, ["workflow", "next", project_id])
        assert result.exit_code == 0
        assert f"Started: {task_id} (Build)" in result.output

    def test_next_with_nothing_ready(self, cli_env):
        runner, _ = cli_env
        project_id = _init(runner)
        result = runner.invoke(main, ["workflow", "next", project_id])
        assert result.exit_code == 1
        assert "No ready tasks" in result.output

    def test_context_round_trip(self, cli_env):
        runner, _ = cli_env
        project_id = _init(runner)
        runner.invoke(main, ["context", "save", project_id, "design", '{"a": 1}'])
        runner.invoke(main, ["context", "save", project_id, "design", '{"b": 2}'])
        result = runner.invoke(main, ["context", "load", project_id])
        assert json.loads(result.output) == {"design": {"a": 1, "b": 2}}


class TestDocCommands:
    def test_status_of_templates(self, cli_env):
        runner, _ = cli_env
        project_id = _init(runner)
        result = runner.invoke(main, ["doc", "status", project_id])
        assert result.exit_code == 0
        assert result.output.count("✗") == 3

    def test_import_tasks(self, cli_env):
        runner, tmp = cli_env
        project_id = _init(runner)
        (tmp / "spec" / "my-project" / "tasks.md").write_text("- [ ] One\n- [x] Two\n")
        result = runner.invoke(main, ["doc", "import-tasks", project_id])
        assert result.exit_code == 0
        assert "Created 2, completed 0" in result.output

    def test_reconcile(self, cli_env):
        runner, tmp = cli_env
        project_id = _init(runner)
        (tmp / "projects" / "my-project" / "README.md").unlink()
        result = runner.invoke(main, ["doc", "reconcile", project_id])
        assert result.exit_code == 0
        assert "Created" in result.output
        assert (tmp / "projects" / "my-project" / "README.md").exists()

    def test_write(self, cli_env):
        runner, tmp = cli_env
        project_id = _init(runner)
        source = tmp / "draft.md"
        source.write_text("# Design\n\nShort draft.")
        result = runner.invoke(main, ["doc", "write", project_id, "design.md", str(source)])
        assert result.exit_code == 0, result.output
        assert "✗ Wrote" in result.output
        assert "Document too short" in result.output
        assert (tmp / "spec" / "my-project" / "design.md").read_text() == "# Design\n\nShort draft."

    def test_write_from_stdin(self, cli_env):
        runner, tmp = cli_env
        project_id = _init(runner)
        result = runner.invoke(
            main, ["doc", "write", project_id, "tasks.md", "-"], input="- [ ] From stdin\n"
        )
        assert result.exit_code == 0, result.output
        assert (tmp / "spec" / "my-project" / "tasks.md").read_text() == "- [ ] From stdin\n"
