import pytest

from rover.errors import LoadError, ValidationError, WorkflowNotFoundError
from rover.workflows import Workflow, available_workflows, load_workflow

MINIMAL = """
name: check
description: Minimal workflow
inputs:
  - name: description
    type: string
    required: true
  - name: depth
    type: number
    required: true
    default: 1
steps:
  - id: only
    name: Only step
    prompt: Do it
"""


def test_bundled_workflows():
    assert {"swe", "tech-writer"} <= set(available_workflows())

    for name in available_workflows():
        workflow = load_workflow(name)
        assert workflow.name == name
        assert workflow.required_inputs() == ["description"]


def test_unknown_workflow():
    with pytest.raises(WorkflowNotFoundError):
        load_workflow("nope")


def test_parse_minimal_workflow():
    workflow = Workflow.parse(MINIMAL)

    assert workflow.version == "1.0"
    assert workflow.steps[0].type == "agent"
    # Inputs with a default are not required from the user
    assert workflow.required_inputs() == ["description"]


def test_duplicate_step_ids():
    content = MINIMAL + "  - id: only\n    name: Again\n    prompt: Again\n"

    with pytest.raises(ValidationError, match="duplicate step IDs"):
        Workflow.parse(content)


def test_file_output_needs_filename():
    content = MINIMAL + "outputs:\n  - name: report\n    type: file\n"

    with pytest.raises(ValidationError):
        Workflow.parse(content)


def test_invalid_yaml():
    with pytest.raises(LoadError):
        Workflow.parse("name: [unclosed")


def test_non_mapping_yaml():
    with pytest.raises(ValidationError):
        Workflow.parse("- a\n- b\n")


def test_load_from_path(tmp_path):
    path = tmp_path / "custom.yml"
    path.write_text(MINIMAL, encoding="utf-8")

    assert Workflow.load(path).name == "check"
    with pytest.raises(LoadError):
        Workflow.load(tmp_path / "missing.yml")
