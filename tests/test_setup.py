import json
import os

import pytest
import yaml

from rover.core.iteration import IterationStore
from rover.errors import ValidationError, WorkflowNotFoundError
from rover.sandbox.setup import SetupBuilder


@pytest.fixture()
def task(store):
    return store.create("Fix bug", "Fix the login bug", inputs={"ticket": "ABC-1"})


def test_build_writes_all_files(task):
    iteration = IterationStore(task.task_dir, task.id).create_initial(task.title, task.description)

    files = SetupBuilder(task).build(iteration)

    assert files.directory == task.task_dir / "sandbox"
    assert os.access(files.entrypoint, os.X_OK)
    assert files.entrypoint.read_text(encoding="utf-8").startswith("#!")
    assert json.loads(files.inputs.read_text(encoding="utf-8")) == {
        "title": "Fix bug",
        "description": "Fix the login bug",
        "ticket": "ABC-1",
    }
    assert yaml.safe_load(files.workflow.read_text(encoding="utf-8"))["name"] == "swe"
    assert files.pre_context == []


def test_pre_context_files_for_earlier_iterations(task):
    iterations = IterationStore(task.task_dir, task.id)
    first = iterations.create_initial(task.title, task.description)
    (first.iteration_path / "changes.md").write_text("- fixed login", encoding="utf-8")
    (first.iteration_path / "summary.md").write_text("Fixed login", encoding="utf-8")
    iterations.create_next(2, "Logout", "Fix logout too")
    third = iterations.create_next(3, "Tests", "Add tests")

    files = SetupBuilder(task).build(third)

    assert [p.name for p in files.pre_context] == ["__pre_context__.json"]
    data = json.loads(files.pre_context[0].read_text(encoding="utf-8"))
    assert data == {
        "version": "1.0",
        "taskId": str(task.id),
        "initialTask": {"title": "Fix bug", "description": "Fix the login bug"},
        "previousIterations": [
            {
                "number": 1,
                "title": "Fix bug",
                "description": "Fix the login bug",
                "changes": "- fixed login",
            },
            {"number": 2, "title": "Logout", "description": "Fix logout too"},
        ],
        "currentIteration": {"number": 3, "title": "Tests", "description": "Add tests"},
    }


def test_pre_context_is_rewritten_for_each_run(task):
    iterations = IterationStore(task.task_dir, task.id)
    first = iterations.create_initial(task.title, task.description)
    builder = SetupBuilder(task)
    builder.build(iterations.create_next(2, "Logout", "Fix logout too"))

    files = builder.build(first)

    assert files.pre_context == []
    assert not (builder.directory / "pre-context").exists()


def test_missing_required_input(task):
    iteration = IterationStore(task.task_dir, task.id).create_initial(task.title, "")

    with pytest.raises(ValidationError):
        SetupBuilder(task).build(iteration)


def test_unknown_workflow(store):
    task = store.create("t", "d", workflow_name="does-not-exist")
    iteration = IterationStore(task.task_dir, task.id).create_initial("t", "d")

    with pytest.raises(WorkflowNotFoundError):
        SetupBuilder(task).build(iteration)
