"""Workflow definitions shipped with Rover.

A workflow is a YAML file that the agent runtime executes step by step.
The host only validates it and copies it next to the task so it can be
mounted at /workflow.yml.
"""

from importlib import resources
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from rover.errors import LoadError, ValidationError, WorkflowNotFoundError

CURRENT_WORKFLOW_SCHEMA_VERSION = "1.0"

DataType = Literal["string", "number", "boolean", "file"]


class WorkflowInput(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    type: DataType
    required: bool
    default: Optional[Any] = None


class WorkflowOutput(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    type: DataType
    filename: Optional[str] = None
    required: Optional[bool] = None

    @model_validator(mode="after")
    def _file_needs_filename(self) -> "WorkflowOutput":
        if self.type == "file" and not self.filename:
            raise ValueError(f"output {self.name!r} of type file needs a filename")
        return self


class StepConfig(BaseModel):
    timeout: Optional[int] = None
    retries: Optional[int] = None


class AgentStep(BaseModel):
    id: str = Field(min_length=1)
    type: Literal["agent"] = "agent"
    name: str = Field(min_length=1)
    tool: Optional[str] = None
    model: Optional[str] = None
    prompt: str = Field(min_length=1)
    outputs: list[WorkflowOutput] = Field(default_factory=list)
    config: Optional[StepConfig] = None


class WorkflowDefaults(BaseModel):
    tool: Optional[str] = None
    model: Optional[str] = None


class WorkflowConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timeout: Optional[int] = None
    continue_on_error: bool = Field(default=False, alias="continueOnError")


class Workflow(BaseModel):
    """An agent workflow definition."""

    model_config = ConfigDict(extra="allow")

    version: str = CURRENT_WORKFLOW_SCHEMA_VERSION
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    inputs: list[WorkflowInput] = Field(default_factory=list)
    outputs: list[WorkflowOutput] = Field(default_factory=list)
    defaults: Optional[WorkflowDefaults] = None
    config: Optional[WorkflowConfig] = None
    steps: list[AgentStep]

    @model_validator(mode="after")
    def _unique_step_ids(self) -> "Workflow":
        seen = set()
        duplicates = []
        for step in self.steps:
            if step.id in seen:
                duplicates.append(step.id)
            seen.add(step.id)
        if duplicates:
            raise ValueError(f"duplicate step IDs found: {', '.join(duplicates)}")
        return self

    @classmethod
    def parse(cls, content: str, source: str = "<string>") -> "Workflow":
        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise LoadError(f"Invalid YAML in workflow {source}: {e}") from e

        if not isinstance(data, dict):
            raise ValidationError(f"Workflow {source} must be a mapping")
        data.setdefault("version", CURRENT_WORKFLOW_SCHEMA_VERSION)

        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ValidationError(f"Workflow validation error in {source}: {e}") from e

    @classmethod
    def load(cls, path: Path) -> "Workflow":
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise LoadError(f"Failed to read workflow {path}: {e}") from e
        return cls.parse(content, str(path))

    def required_inputs(self) -> list[str]:
        return [i.name for i in self.inputs if i.required and i.default is None]


def available_workflows() -> list[str]:
    """Names of the workflows bundled with the package."""
    return sorted(
        entry.name.removesuffix(".yml")
        for entry in resources.files(__name__).iterdir()
        if entry.name.endswith(".yml")
    )


def workflow_source(name: str) -> str:
    """Raw YAML of a bundled workflow."""
    entry = resources.files(__name__).joinpath(f"{name}.yml")
    if not entry.is_file():
        raise WorkflowNotFoundError(name)
    return entry.read_text(encoding="utf-8")


def load_workflow(name: str) -> Workflow:
    return Workflow.parse(workflow_source(name), f"{name}.yml")
