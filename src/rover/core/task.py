"""Task records stored at .rover/tasks/<id>/description.json.

A task is created once per user request and mutated by the start, iterate,
stop, merge and push flows. Every mutator updates the in-memory record and
saves it immediately. There is no file locking: a single writer per task
directory is assumed.
"""

import logging
import shutil
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic import ValidationError as PydanticValidationError

from rover.config import ROVER_DIR
from rover.core.status import IterationState, IterationStatus
from rover.core.storage import atomic_write_json, read_json
from rover.errors import RoverError, SaveError, TaskNotFoundError, ValidationError

logger = logging.getLogger(__name__)

CURRENT_TASK_SCHEMA_VERSION = "1.1"
DESCRIPTION_FILENAME = "description.json"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    ITERATING = "ITERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    MERGED = "MERGED"
    PUSHED = "PUSHED"


_LEGACY_STATUS = {
    "new": TaskStatus.NEW,
    "in_progress": TaskStatus.IN_PROGRESS,
    "running": TaskStatus.IN_PROGRESS,
    "iterating": TaskStatus.ITERATING,
    "completed": TaskStatus.COMPLETED,
    "failed": TaskStatus.FAILED,
    "merged": TaskStatus.MERGED,
    "pushed": TaskStatus.PUSHED,
}

_TIMESTAMP_FIELDS = (
    "createdAt",
    "startedAt",
    "completedAt",
    "failedAt",
    "lastIterationAt",
    "lastStatusCheck",
    "runningAt",
    "errorAt",
    "lastRestartAt",
)


def migrate_task_data(data: dict[str, Any], task_id: int) -> dict[str, Any]:
    """Bring a raw description.json document up to the current schema.

    Unknown fields are preserved.
    """
    if data.get("version") == CURRENT_TASK_SCHEMA_VERSION:
        return data

    migrated = dict(data)

    raw_id = data.get("id")
    if isinstance(raw_id, str) and raw_id.strip().isdigit():
        migrated["id"] = int(raw_id)
    else:
        migrated["id"] = raw_id or task_id

    migrated["uuid"] = data.get("uuid") or str(uuid4())
    migrated["title"] = data.get("title") or "Unknown Task"
    migrated["description"] = data.get("description") or ""
    migrated["inputs"] = data.get("inputs") or {}
    migrated["workflowName"] = data.get("workflowName") or "swe"
    migrated["status"] = migrate_status(data.get("status")).value
    migrated["iterations"] = data.get("iterations") or 1
    migrated["worktreePath"] = data.get("worktreePath") or ""
    migrated["branchName"] = data.get("branchName") or ""
    migrated["restartCount"] = data.get("restartCount") or 0
    migrated["createdAt"] = data.get("createdAt") or utcnow().isoformat()

    # Older writers stored "" for unset timestamps and ids
    for field in _TIMESTAMP_FIELDS:
        if migrated.get(field) == "":
            migrated.pop(field)
    for field in ("containerId", "executionStatus", "error", "agent", "sourceBranch"):
        if migrated.get(field) == "":
            migrated.pop(field)

    migrated["version"] = CURRENT_TASK_SCHEMA_VERSION
    return migrated


def migrate_status(old_status: Any) -> TaskStatus:
    if not isinstance(old_status, str):
        return TaskStatus.NEW
    return _LEGACY_STATUS.get(old_status.lower(), TaskStatus.NEW)


class TaskDescription(BaseModel):
    """A persisted task record."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    # Identity
    id: int = Field(ge=1)
    uuid: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    inputs: dict[str, str] = Field(default_factory=dict)

    # Lifecycle
    status: TaskStatus = TaskStatus.NEW
    created_at: datetime = Field(alias="createdAt")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    failed_at: Optional[datetime] = Field(default=None, alias="failedAt")
    last_iteration_at: Optional[datetime] = Field(default=None, alias="lastIterationAt")
    last_status_check: Optional[datetime] = Field(default=None, alias="lastStatusCheck")

    # Execution context
    iterations: int = Field(default=1, ge=1)
    workflow_name: str = Field(default="swe", alias="workflowName")
    worktree_path: str = Field(default="", alias="worktreePath")
    branch_name: str = Field(default="", alias="branchName")
    agent: Optional[str] = None
    agent_image: Optional[str] = Field(default=None, alias="agentImage")
    source_branch: Optional[str] = Field(default=None, alias="sourceBranch")

    # Container execution
    container_id: Optional[str] = Field(default=None, alias="containerId")
    execution_status: Optional[str] = Field(default=None, alias="executionStatus")
    running_at: Optional[datetime] = Field(default=None, alias="runningAt")
    error_at: Optional[datetime] = Field(default=None, alias="errorAt")
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    error: Optional[str] = None

    # Restart tracking
    restart_count: int = Field(default=0, alias="restartCount")
    last_restart_at: Optional[datetime] = Field(default=None, alias="lastRestartAt")

    version: str = CURRENT_TASK_SCHEMA_VERSION

    _path: Optional[Path] = PrivateAttr(default=None)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    @classmethod
    def from_data(cls, data: dict[str, Any], path: Optional[Path] = None) -> "TaskDescription":
        try:
            task = cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Task validation error: {e}") from e
        task._path = path
        return task

    @classmethod
    def load(cls, path: Path, task_id: int) -> "TaskDescription":
        """Load a task, migrating and re-saving it when the schema is older."""
        if not path.exists():
            raise TaskNotFoundError(task_id)

        data = read_json(path)
        if not isinstance(data, dict):
            raise ValidationError(f"Task {task_id}: description.json must be a JSON object")

        migrated = migrate_task_data(data, task_id)
        task = cls.from_data(migrated, path)

        if data.get("version") != migrated["version"]:
            logger.info(
                f"Migrated task {task_id} from schema {data.get('version')!r} "
                f"to {CURRENT_TASK_SCHEMA_VERSION}"
            )
            try:
                shutil.copyfile(path, path.with_name(path.name + ".backup"))
            except OSError as e:
                logger.warning(f"Failed to create backup for {path}: {e}")
            task.save()

        return task

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def save(self) -> None:
        if self._path is None:
            raise SaveError(f"Task {self.id} is not bound to a file")
        atomic_write_json(self._path, self.to_json())

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def task_dir(self) -> Path:
        if self._path is None:
            raise SaveError(f"Task {self.id} is not bound to a file")
        return self._path.parent

    @property
    def iterations_dir(self) -> Path:
        return self.task_dir / "iterations"

    # -------------------------------------------------------------------------
    # Status management
    # -------------------------------------------------------------------------

    def set_status(
        self,
        status: TaskStatus,
        timestamp: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None:
        """Set the status and the timestamp that goes with it."""
        timestamp = timestamp or utcnow()
        self.status = status

        if status == TaskStatus.IN_PROGRESS:
            if self.started_at is None:
                self.started_at = timestamp
        elif status == TaskStatus.ITERATING:
            self.last_iteration_at = timestamp
        elif status == TaskStatus.COMPLETED:
            self.completed_at = timestamp
        elif status == TaskStatus.FAILED:
            self.failed_at = timestamp
            if error:
                self.error = error
        elif status in (TaskStatus.MERGED, TaskStatus.PUSHED):
            if self.completed_at is None:
                self.completed_at = timestamp

        self.last_status_check = timestamp
        self.save()

    def mark_in_progress(self, timestamp: Optional[datetime] = None) -> None:
        self.set_status(TaskStatus.IN_PROGRESS, timestamp)

    def mark_iterating(self, timestamp: Optional[datetime] = None) -> None:
        self.set_status(TaskStatus.ITERATING, timestamp)

    def mark_completed(self, timestamp: Optional[datetime] = None) -> None:
        self.set_status(TaskStatus.COMPLETED, timestamp)

    def mark_failed(self, error: str, timestamp: Optional[datetime] = None) -> None:
        self.set_status(TaskStatus.FAILED, timestamp, error=error)

    def mark_merged(self, timestamp: Optional[datetime] = None) -> None:
        self.set_status(TaskStatus.MERGED, timestamp)

    def mark_pushed(self, timestamp: Optional[datetime] = None) -> None:
        self.set_status(TaskStatus.PUSHED, timestamp)

    def reset_to_new(self, timestamp: Optional[datetime] = None) -> None:
        """Used when the sandbox could not be started."""
        self.set_status(TaskStatus.NEW, timestamp)

    def restart(self, timestamp: Optional[datetime] = None) -> None:
        timestamp = timestamp or utcnow()
        self.restart_count += 1
        self.last_restart_at = timestamp
        self.set_status(TaskStatus.IN_PROGRESS, timestamp)

    def refresh_status(self, status: IterationStatus) -> None:
        """Derive the task status from the latest iteration's status.json."""
        error = None
        if status.status == IterationState.COMPLETED:
            new_status = TaskStatus.COMPLETED
            timestamp = status.completed_at or status.updated_at
        elif status.status == IterationState.FAILED:
            new_status = TaskStatus.FAILED
            timestamp = status.completed_at or status.updated_at
            error = status.error
        elif status.status == IterationState.RUNNING:
            new_status = TaskStatus.ITERATING
            timestamp = status.updated_at
        else:
            new_status = TaskStatus.IN_PROGRESS
            timestamp = status.updated_at

        # Merged and pushed are already completed states
        if new_status == TaskStatus.COMPLETED and self.status in (
            TaskStatus.MERGED,
            TaskStatus.PUSHED,
        ):
            return

        self.set_status(new_status, timestamp, error=error)

    # -------------------------------------------------------------------------
    # Iterations, workspace and container bookkeeping
    # -------------------------------------------------------------------------

    def increment_iteration(self) -> None:
        self.iterations += 1
        self.last_iteration_at = utcnow()
        self.save()

    def set_workspace(self, worktree_path: str, branch_name: str) -> None:
        self.worktree_path = worktree_path
        self.branch_name = branch_name
        self.save()

    def set_container_info(self, container_id: str, execution_status: str) -> None:
        self.container_id = container_id
        self.execution_status = execution_status
        if execution_status == "running":
            self.running_at = utcnow()
        self.save()

    def update_execution_status(
        self,
        status: str,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        self.execution_status = status

        if exit_code is not None:
            self.exit_code = exit_code

        if error:
            self.error = error
            self.error_at = utcnow()

        if status == "completed":
            self.completed_at = utcnow()
        elif status == "failed":
            self.failed_at = utcnow()

        self.save()

    def update_title(self, title: str) -> None:
        self.title = title
        self.save()

    def update_description(self, description: str) -> None:
        self.description = description
        self.save()

    @property
    def duration(self) -> Optional[float]:
        """Seconds between start and completion/failure, if both are known."""
        end = self.completed_at or self.failed_at
        if self.started_at is None or end is None:
            return None
        return (end - self.started_at).total_seconds()

    def is_terminal(self) -> bool:
        return self.status in (
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.MERGED,
            TaskStatus.PUSHED,
        )


class TaskStore:
    """Finds, creates and deletes task records under <project>/.rover/tasks."""

    def __init__(self, project_root: Path):
        self.project_root = project_root.resolve()
        self.tasks_dir = self.project_root / ROVER_DIR / "tasks"

    def task_dir(self, task_id: int) -> Path:
        return self.tasks_dir / str(task_id)

    def description_path(self, task_id: int) -> Path:
        return self.task_dir(task_id) / DESCRIPTION_FILENAME

    def exists(self, task_id: int) -> bool:
        return self.description_path(task_id).exists()

    def task_ids(self) -> list[int]:
        """Numeric task directory names, highest first."""
        if not self.tasks_dir.exists():
            return []
        return sorted(
            (int(p.name) for p in self.tasks_dir.iterdir() if p.is_dir() and p.name.isdigit()),
            reverse=True,
        )

    def next_id(self) -> int:
        ids = self.task_ids()
        return ids[0] + 1 if ids else 1

    def create(
        self,
        title: str,
        description: str,
        task_id: Optional[int] = None,
        inputs: Optional[dict[str, str]] = None,
        workflow_name: str = "swe",
        agent: Optional[str] = None,
        agent_image: Optional[str] = None,
        source_branch: Optional[str] = None,
    ) -> TaskDescription:
        """Create and persist a new task in the NEW state."""
        task_id = task_id or self.next_id()
        now = utcnow()
        path = self.description_path(task_id)

        task = TaskDescription.from_data(
            {
                "id": task_id,
                "uuid": str(uuid4()),
                "title": title,
                "description": description,
                "inputs": dict(inputs or {}),
                "status": TaskStatus.NEW,
                "createdAt": now,
                "startedAt": now,
                "lastIterationAt": now,
                "iterations": 1,
                "workflowName": workflow_name,
                "agent": agent,
                "agentImage": agent_image,
                "sourceBranch": source_branch,
                "version": CURRENT_TASK_SCHEMA_VERSION,
            },
            path,
        )
        task.save()
        logger.info(f"Created task {task_id}: {title}")
        return task

    def load(self, task_id: int) -> TaskDescription:
        return TaskDescription.load(self.description_path(task_id), task_id)

    def list_tasks(self) -> list[TaskDescription]:
        """All loadable tasks, highest id first. Broken records are skipped."""
        tasks = []
        for task_id in self.task_ids():
            try:
                tasks.append(self.load(task_id))
            except RoverError as e:
                logger.debug(f"Skipping task {task_id}: {e}")
        return tasks

    def delete(self, task_id: int) -> None:
        """Remove the whole task directory, including iterations."""
        task_dir = self.task_dir(task_id)
        if not task_dir.exists():
            raise TaskNotFoundError(task_id)
        try:
            shutil.rmtree(task_dir)
        except OSError as e:
            raise SaveError(f"Failed to delete task {task_id}: {e}") from e
