"""Error taxonomy for Rover.

Load, save and validation errors are fatal to the invoking command.
Cleanup paths catch `ContainerOperationError` and `WorktreeError` and log
them as warnings instead.
"""


class RoverError(Exception):
    """Base class for all Rover errors."""


class NotFoundError(RoverError):
    """A task, iteration or workflow does not exist."""


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class IterationNotFoundError(NotFoundError):
    def __init__(self, task_id: int, iteration: int):
        super().__init__(f"Iteration {iteration} not found for task {task_id}")
        self.task_id = task_id
        self.iteration = iteration


class WorkflowNotFoundError(NotFoundError):
    def __init__(self, name: str):
        super().__init__(f"Workflow '{name}' not found")
        self.name = name


class ValidationError(RoverError):
    """A persisted document does not match the current schema after migration."""


class LoadError(RoverError):
    """A document could not be read or parsed."""


class SaveError(RoverError):
    """A document could not be written."""


class BackendUnavailableError(RoverError):
    """No usable container runtime was found."""


class ContainerOperationError(RoverError):
    """A container create/start/stop/remove/logs call failed."""


class WorktreeError(RoverError):
    """A git operation failed."""


class AgentError(RoverError):
    """Unknown agent or missing agent credentials."""


class MergeConflictError(WorktreeError):
    """Merging a task branch stopped on conflicts. The merge was aborted."""

    def __init__(self, branch: str, target: str):
        super().__init__(f"Merging {branch} into {target} hit conflicts and was aborted")
        self.branch = branch
        self.target = target
