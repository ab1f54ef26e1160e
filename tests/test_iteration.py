import json

import pytest

from rover.core.iteration import (
    CURRENT_ITERATION_SCHEMA_VERSION,
    ITERATION_FILENAME,
    IterationStore,
)
from rover.errors import IterationNotFoundError, ValidationError


@pytest.fixture()
def iterations(store) -> IterationStore:
    task = store.create("Task", "Description")
    return IterationStore(task.task_dir, task.id)


def test_initial_iteration_has_no_context(iterations):
    config = iterations.create_initial("Task", "Description")

    assert config.iteration == 1
    assert config.previous_context.is_empty()
    assert config.previous_context.iteration_number is None
    assert (iterations.path(1) / ITERATION_FILENAME).exists()


def test_next_iteration_carries_previous_artifacts(iterations):
    first = iterations.create_initial("Task", "Description")
    (first.iteration_path / "plan.md").write_text("the plan", encoding="utf-8")
    (first.iteration_path / "summary.md").write_text("the summary", encoding="utf-8")

    second = iterations.create_next(2, "Refine", "Handle edge cases")

    assert second.previous_context.iteration_number == 1
    assert second.previous_context.plan == "the plan"
    assert second.previous_context.summary == "the summary"
    assert second.previous_context.changes is None

    reloaded = iterations.load(2)
    assert reloaded.previous_context.plan == "the plan"


def test_iteration_numbers_must_increase(iterations):
    iterations.create_initial("Task", "Description")
    iterations.create_next(2, "Second", "More")

    with pytest.raises(ValidationError):
        iterations.create_next(2, "Again", "Duplicate")
    with pytest.raises(ValidationError):
        iterations.create_next(1, "Back", "Older")


def test_numbers_and_listing(iterations):
    iterations.create_initial("Task", "Description")
    iterations.create_next(2, "Second", "More")
    iterations.create_next(3, "Third", "Even more")
    # A directory without iteration.json is not an iteration
    iterations.path(9).mkdir(parents=True)

    assert iterations.numbers() == [1, 2, 3]
    assert iterations.latest_number() == 3
    assert [c.iteration for c in iterations.list()] == [3, 2, 1]
    assert iterations.latest().title == "Third"


def test_load_missing_iteration(iterations):
    with pytest.raises(IterationNotFoundError):
        iterations.load(4)


def test_legacy_iteration_is_migrated(iterations):
    path = iterations.path(1)
    path.mkdir(parents=True)
    (path / ITERATION_FILENAME).write_text(
        json.dumps(
            {
                "id": "1",
                "iteration": 1,
                "title": "Old",
                "description": "Old iteration",
                "createdAt": "2024-05-01T10:00:00+00:00",
                "previousContext": None,
            }
        ),
        encoding="utf-8",
    )

    config = iterations.load(1)

    assert config.id == 1
    assert config.version == CURRENT_ITERATION_SCHEMA_VERSION
    saved = json.loads((path / ITERATION_FILENAME).read_text(encoding="utf-8"))
    assert saved["version"] == CURRENT_ITERATION_SCHEMA_VERSION


def test_clear_removes_all_iterations(iterations):
    iterations.create_initial("Task", "Description")
    iterations.create_next(2, "Second", "More")

    iterations.clear()

    assert iterations.numbers() == []
    assert iterations.latest() is None


def test_read_artifact(iterations):
    config = iterations.create_initial("Task", "Description")
    (config.iteration_path / "changes.md").write_text("- fixed", encoding="utf-8")

    assert config.read_artifact("changes.md") == "- fixed"
    assert config.read_artifact("plan.md") is None
