"""Tests for task management, the task hierarchy and dependency gating."""

import random
import tempfile
from pathlib import Path

import pytest

from spec_relay.core import projects as projects_mod
from spec_relay.core import tasks as tasks_mod
from spec_relay.db.engine import init_db
from spec_relay.db.models import Task
from spec_relay.errors import ConstraintError, NotFoundError, ValidationError


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


@pytest.fixture
def project(db):
    return projects_mod.create_project(db, "test")


class TestTaskCRUD:
    def test_create_defaults(self, db, project):
        task = tasks_mod.create_task(db, project.id, "t1", "requirements")
        assert task.status == "pending"
        assert task.priority == 1
        assert task.requirements_refs == []
        assert task.dependencies == []
        assert task.parent_id is None
        assert len(task.id) == 32

    def test_create_with_lists(self, db, project):
        task = tasks_mod.create_task(
            db, project.id, "t", "design",
            requirements_refs=["R2", "R1"], dependencies=["x", "y"],
        )
        assert task.requirements_refs == ["R2", "R1"]
        assert task.dependencies == ["x", "y"]

    def test_create_invalid_phase(self, db, project):
        with pytest.raises(ValidationError) as exc:
            tasks_mod.create_task(db, project.id, "t", "review")
        assert exc.value.field == "phase"

    def test_create_invalid_status(self, db, project):
        with pytest.raises(ValidationError):
            tasks_mod.create_task(db, project.id, "t", "design", status="done")

    def test_create_missing_title(self, db, project):
        with pytest.raises(ValidationError) as exc:
            tasks_mod.create_task(db, project.id, "", "design")
        assert exc.value.field == "title"

    def test_create_unknown_project(self, db):
        with pytest.raises(ConstraintError):
            tasks_mod.create_task(db, "no-such-project", "t", "design")

    def test_parent_must_be_in_same_project(self, db, project):
        other = projects_mod.create_project(db, "other")
        parent = tasks_mod.create_task(db, other.id, "parent", "tasks")
        with pytest.raises(ConstraintError):
            tasks_mod.create_task(db, project.id, "child", "tasks", parent_id=parent.id)

    def test_get_nonexistent(self, db):
        assert tasks_mod.get_task(db, "nope") is None

    def test_list_ordering(self, db, project):
        tasks_mod.create_task(db, project.id, "low-first", "tasks", priority=1)
        tasks_mod.create_task(db, project.id, "high", "tasks", priority=5)
        tasks_mod.create_task(db, project.id, "low-second", "tasks", priority=1)
        titles = [t.title for t in tasks_mod.list_tasks(db, project.id)]
        assert titles == ["high", "low-first", "low-second"]

    def test_list_filters(self, db, project):
        a = tasks_mod.create_task(db, project.id, "a", "design", assignee_type="design")
        tasks_mod.create_task(db, project.id, "b", "tasks")
        tasks_mod.update_task_status(db, a.id, "in_progress")

        assert [t.title for t in tasks_mod.list_tasks(db, project.id, phase="tasks")] == ["b"]
        assert [t.title for t in tasks_mod.list_tasks(db, project.id, status="in_progress")] == ["a"]
        assert [t.title for t in tasks_mod.list_tasks(db, project.id, assignee_type="design")] == ["a"]

    def test_list_top_level_and_children(self, db, project):
        parent = tasks_mod.create_task(db, project.id, "parent", "tasks")
        tasks_mod.create_task(db, project.id, "child", "tasks", parent_id=parent.id)

        top = tasks_mod.list_tasks(db, project.id, parent_id=None)
        assert [t.title for t in top] == ["parent"]
        assert [t.title for t in tasks_mod.get_children(db, parent.id)] == ["child"]
        assert len(tasks_mod.list_tasks(db, project.id)) == 2

    def test_update(self, db, project):
        task = tasks_mod.create_task(db, project.id, "t", "tasks")
        updated = tasks_mod.update_task(db, task.id, title="renamed", priority=3, dependencies=["d"])
        assert updated.title == "renamed"
        assert updated.priority == 3
        assert updated.dependencies == ["d"]

    def test_update_clears_optional_fields(self, db, project):
        task = tasks_mod.create_task(
            db, project.id, "t", "tasks", description="notes", assignee_type="design"
        )
        updated = tasks_mod.update_task(db, task.id, description="", assignee_type="")
        assert updated.description is None
        assert updated.assignee_type is None
        assert updated.title == "t"

    def test_update_unknown_field(self, db, project):
        task = tasks_mod.create_task(db, project.id, "t", "tasks")
        with pytest.raises(ValidationError) as exc:
            tasks_mod.update_task(db, task.id, project_id="elsewhere")
        assert exc.value.field == "project_id"

    def test_update_bad_priority(self, db, project):
        task = tasks_mod.create_task(db, project.id, "t", "tasks")
        with pytest.raises(ValidationError):
            tasks_mod.update_task(db, task.id, priority="high")

    def test_update_missing_returns_none(self, db):
        assert tasks_mod.update_task(db, "nope", status="completed") is None

    def test_events_logged(self, db, project):
        task = tasks_mod.create_task(db, project.id, "t", "tasks")
        tasks_mod.update_task_status(db, task.id, "in_progress")
        tasks_mod.update_task(db, task.id, title="renamed")
        tasks_mod.log_progress(db, task.id, "halfway")

        events = tasks_mod.get_task_events(db, task.id)
        assert [e.event_type for e in events] == ["created", "status_changed", "updated", "progress"]
        assert events[1].old_value == "pending"
        assert events[1].new_value == "in_progress"
        assert events[3].new_value == "halfway"


class TestDelete:
    def test_delete_removes_subtree(self, db, project):
        root = tasks_mod.create_task(db, project.id, "root", "tasks")
        child = tasks_mod.create_task(db, project.id, "child", "tasks", parent_id=root.id)
        grandchild = tasks_mod.create_task(db, project.id, "grandchild", "tasks", parent_id=child.id)
        sibling = tasks_mod.create_task(db, project.id, "sibling", "tasks")

        assert tasks_mod.delete_task(db, root.id) is True
        for t in (root, child, grandchild):
            assert tasks_mod.get_task(db, t.id) is None
        assert tasks_mod.get_task(db, sibling.id) is not None

    def test_delete_leaves_dependents(self, db, project):
        dep = tasks_mod.create_task(db, project.id, "dep", "tasks")
        dependent = tasks_mod.create_task(db, project.id, "dependent", "tasks", dependencies=[dep.id])
        assert tasks_mod.check_dependencies(db, dependent.id) is False

        tasks_mod.delete_task(db, dep.id)
        survivor = tasks_mod.get_task(db, dependent.id)
        assert survivor.dependencies == [dep.id]
        assert tasks_mod.check_dependencies(db, dependent.id) is True

    def test_delete_missing(self, db):
        assert tasks_mod.delete_task(db, "nope") is False


def _task(id, parent_id=None):
    return Task(id=id, project_id="p", title=id, phase="tasks", parent_id=parent_id)


def _hops(by_id, task):
    hops = 0
    while task.parent_id and task.parent_id in by_id:
        task = by_id[task.parent_id]
        hops += 1
    return hops


class TestTaskTree:
    def test_depths(self):
        tasks = [_task("a"), _task("b", "a"), _task("c", "b"), _task("d", "a"), _task("e")]
        roots = tasks_mod.build_task_tree(tasks)

        assert [n.task.id for n in roots] == ["a", "e"]
        depths = {n.task.id: n.depth for n in tasks_mod.iter_tree(roots)}
        assert depths == {"a": 0, "b": 1, "c": 2, "d": 1, "e": 0}

    def test_input_order_does_not_matter(self):
        tasks = [_task("root")]
        for i in range(1, 30):
            tasks.append(_task(f"n{i}", random.choice([t.id for t in tasks])))
        by_id = {t.id: t for t in tasks}
        shuffled = tasks[:]
        random.shuffle(shuffled)

        nodes = list(tasks_mod.iter_tree(tasks_mod.build_task_tree(shuffled)))
        assert sorted(n.task.id for n in nodes) == sorted(by_id)
        for node in nodes:
            assert node.depth == _hops(by_id, node.task)

    def test_orphan_becomes_root(self):
        roots = tasks_mod.build_task_tree([_task("a", "missing"), _task("b", "a")])
        assert [n.task.id for n in roots] == ["a"]
        assert roots[0].depth == 0
        assert roots[0].children[0].depth == 1

    def test_parent_cycle_is_broken(self):
        nodes = list(tasks_mod.iter_tree(tasks_mod.build_task_tree([_task("a", "b"), _task("b", "a")])))
        assert sorted(n.task.id for n in nodes) == ["a", "b"]

    def test_tree_from_store(self, db, project):
        parent = tasks_mod.create_task(db, project.id, "parent", "tasks")
        tasks_mod.create_task(db, project.id, "child", "tasks", parent_id=parent.id)
        roots = tasks_mod.get_task_tree(db, project.id)
        assert len(roots) == 1
        assert roots[0].children[0].task.title == "child"


class TestDependencies:
    def test_scenario(self, db, project):
        t1 = tasks_mod.create_task(db, project.id, "t1", "requirements")
        t2 = tasks_mod.create_task(db, project.id, "t2", "requirements", dependencies=[t1.id])
        assert tasks_mod.check_dependencies(db, t2.id) is False

        tasks_mod.update_task_status(db, t1.id, "completed")
        assert tasks_mod.check_dependencies(db, t2.id) is True

    def test_flips_on_last_dependency(self, db, project):
        a = tasks_mod.create_task(db, project.id, "a", "tasks")
        b = tasks_mod.create_task(db, project.id, "b", "tasks")
        c = tasks_mod.create_task(db, project.id, "c", "tasks", dependencies=[a.id, b.id])

        tasks_mod.update_task_status(db, a.id, "completed")
        assert tasks_mod.check_dependencies(db, c.id) is False
        assert [t.id for t in tasks_mod.get_blocking_tasks(db, c.id)] == [b.id]

        tasks_mod.update_task_status(db, b.id, "completed")
        assert tasks_mod.check_dependencies(db, c.id) is True
        assert tasks_mod.get_blocking_tasks(db, c.id) == []

    def test_no_dependencies(self, db, project):
        t = tasks_mod.create_task(db, project.id, "t", "tasks")
        assert tasks_mod.check_dependencies(db, t.id) is True

    def test_dangling_dependency_does_not_block(self, db, project):
        t = tasks_mod.create_task(db, project.id, "t", "tasks", dependencies=["ghost"])
        assert tasks_mod.check_dependencies(db, t.id) is True
        assert tasks_mod.find_dangling_dependencies(db, project.id) == {t.id: ["ghost"]}

    def test_missing_task(self, db):
        with pytest.raises(NotFoundError):
            tasks_mod.check_dependencies(db, "nope")

    def test_ready_tasks(self, db, project):
        a = tasks_mod.create_task(db, project.id, "a", "execute")
        b = tasks_mod.create_task(db, project.id, "b", "execute", dependencies=[a.id])
        tasks_mod.create_task(db, project.id, "c", "design")

        assert [t.title for t in tasks_mod.get_ready_tasks(db, project.id, phase="execute")] == ["a"]
        tasks_mod.update_task_status(db, a.id, "completed")
        assert [t.id for t in tasks_mod.get_ready_tasks(db, project.id, phase="execute")] == [b.id]
