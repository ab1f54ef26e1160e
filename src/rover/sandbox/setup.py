"""Files mounted into the sandbox for one run.

All run configuration reaches the container through JSON/YAML files; the
entrypoint script itself is static and copied verbatim.
"""

import logging
import shutil
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Optional

from rover.core.iteration import CHANGES_FILENAME, IterationConfig, IterationStore
from rover.core.storage import atomic_write_json
from rover.core.task import TaskDescription
from rover.errors import SaveError, ValidationError
from rover.workflows import Workflow, workflow_source

logger = logging.getLogger(__name__)

SANDBOX_DIRNAME = "sandbox"
PRE_CONTEXT_FILENAME = "__pre_context__.json"
PRE_CONTEXT_SCHEMA_VERSION = "1.0"


@dataclass
class SetupFiles:
    """Host paths of the generated files."""

    directory: Path
    entrypoint: Path
    inputs: Path
    workflow: Path
    pre_context: list[Path] = field(default_factory=list)


class SetupBuilder:
    """Writes the entrypoint, inputs, workflow and pre-context files for a run."""

    def __init__(self, task: TaskDescription):
        self.task = task
        self.directory = task.task_dir / SANDBOX_DIRNAME

    def generate_entrypoint(self) -> Path:
        path = self.directory / "entrypoint.sh"
        source = resources.files("rover.sandbox").joinpath("entrypoint.sh")
        try:
            with resources.as_file(source) as script:
                shutil.copyfile(script, path)
            path.chmod(0o755)
        except OSError as e:
            raise SaveError(f"Failed to write entrypoint script: {e}") from e
        return path

    def workflow_inputs(self, iteration: IterationConfig) -> dict[str, str]:
        """Title and description of the iteration, plus the task inputs."""
        return {
            "title": iteration.title,
            "description": iteration.description,
            **self.task.inputs,
        }

    def generate_inputs(self, iteration: IterationConfig) -> Path:
        path = self.directory / "inputs.json"
        atomic_write_json(path, self.workflow_inputs(iteration))
        return path

    def save_workflow(self, required_inputs: dict[str, str]) -> Path:
        """Validate the task's workflow and copy it next to the other files."""
        source = workflow_source(self.task.workflow_name)
        workflow = Workflow.parse(source, f"{self.task.workflow_name}.yml")

        missing = [name for name in workflow.required_inputs() if not required_inputs.get(name)]
        if missing:
            raise ValidationError(
                f"Workflow '{workflow.name}' is missing required inputs: {', '.join(missing)}"
            )

        path = self.directory / "workflow.yml"
        try:
            path.write_text(source, encoding="utf-8")
        except OSError as e:
            raise SaveError(f"Failed to write workflow file: {e}") from e
        return path

    def pre_context_data(self, iteration: IterationConfig) -> Optional[dict[str, Any]]:
        """Pre-context for the agent runtime, or None on a first iteration.

        Earlier iterations are listed oldest first under `previousIterations`
        and the iteration about to run is `currentIteration`.
        """
        store = IterationStore(self.task.task_dir, self.task.id)
        previous = []
        for number in store.numbers():
            if number >= iteration.iteration:
                break
            config = store.load(number)
            entry: dict[str, Any] = {"number": number}
            if config.title:
                entry["title"] = config.title
            if config.description:
                entry["description"] = config.description
            changes = config.read_artifact(CHANGES_FILENAME)
            if changes:
                entry["changes"] = changes
            previous.append(entry)

        if not previous:
            return None

        return {
            "version": PRE_CONTEXT_SCHEMA_VERSION,
            "taskId": str(self.task.id),
            "initialTask": {
                "title": self.task.title,
                "description": self.task.description,
            },
            "previousIterations": previous,
            "currentIteration": {
                "number": iteration.iteration,
                "title": iteration.title,
                "description": iteration.description,
            },
        }

    def generate_pre_context_files(self, iteration: IterationConfig) -> list[Path]:
        """Write the pre-context file when earlier iterations exist."""
        pre_context_dir = self.directory / "pre-context"
        if pre_context_dir.exists():
            shutil.rmtree(pre_context_dir)

        data = self.pre_context_data(iteration)
        if data is None:
            return []

        path = pre_context_dir / PRE_CONTEXT_FILENAME
        atomic_write_json(path, data)
        logger.debug(
            f"Generated pre-context for task {self.task.id} with "
            f"{len(data['previousIterations'])} earlier iteration(s)"
        )
        return [path]

    def build(self, iteration: IterationConfig) -> SetupFiles:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SaveError(f"Failed to create {self.directory}: {e}") from e

        return SetupFiles(
            directory=self.directory,
            entrypoint=self.generate_entrypoint(),
            inputs=self.generate_inputs(iteration),
            workflow=self.save_workflow(self.workflow_inputs(iteration)),
            pre_context=self.generate_pre_context_files(iteration),
        )
