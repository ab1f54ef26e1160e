"""Per-iteration metadata stored at .rover/tasks/<id>/iterations/<n>/iteration.json.

Iteration N+1 carries the artifacts of iteration N (plan, changes, summary)
in its previousContext so the agent runtime can continue without
re-deriving them.
"""

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic import ValidationError as PydanticValidationError

from rover.core.status import IterationStatus, StatusChannel
from rover.core.storage import atomic_write_json, read_json
from rover.core.task import utcnow
from rover.errors import IterationNotFoundError, SaveError, ValidationError

logger = logging.getLogger(__name__)

CURRENT_ITERATION_SCHEMA_VERSION = "1.0"
ITERATION_FILENAME = "iteration.json"

# Markdown artifacts the agent runtime leaves in the output mount
PLAN_FILENAME = "plan.md"
CHANGES_FILENAME = "changes.md"
SUMMARY_FILENAME = "summary.md"


class PreviousContext(BaseModel):
    """Artifacts of the iteration before this one."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    plan: Optional[str] = None
    changes: Optional[str] = None
    summary: Optional[str] = None
    iteration_number: Optional[int] = Field(default=None, alias="iterationNumber")

    def is_empty(self) -> bool:
        return not (self.plan or self.changes or self.summary)


class IterationConfig(BaseModel):
    """A persisted iteration record."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    version: str = CURRENT_ITERATION_SCHEMA_VERSION
    id: int = Field(ge=1)
    iteration: int = Field(ge=1)
    title: str
    description: str
    created_at: datetime = Field(alias="createdAt")
    previous_context: PreviousContext = Field(
        default_factory=PreviousContext, alias="previousContext"
    )

    _path: Optional[Path] = PrivateAttr(default=None)

    @classmethod
    def load(cls, iteration_path: Path, task_id: int) -> "IterationConfig":
        path = iteration_path / ITERATION_FILENAME
        if not path.exists():
            raise IterationNotFoundError(task_id, _number_from_path(iteration_path))

        data = read_json(path)
        if not isinstance(data, dict):
            raise ValidationError(f"{path} must contain a JSON object")

        migrated = migrate_iteration_data(data)
        try:
            config = cls.model_validate(migrated)
        except PydanticValidationError as e:
            raise ValidationError(f"Iteration validation error in {path}: {e}") from e
        config._path = path

        if data.get("version") != migrated["version"]:
            config.save()
        return config

    @property
    def iteration_path(self) -> Path:
        if self._path is None:
            raise SaveError(f"Iteration {self.iteration} is not bound to a file")
        return self._path.parent

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def save(self) -> None:
        if self._path is None:
            raise SaveError(f"Iteration {self.iteration} is not bound to a file")
        atomic_write_json(self._path, self.to_json())

    def status(self) -> Optional[IterationStatus]:
        """Current status.json for this iteration, or None if not ready."""
        return StatusChannel.for_iteration(self.iteration_path).read()

    def read_artifact(self, filename: str) -> Optional[str]:
        path = self.iteration_path / filename
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")


def migrate_iteration_data(data: dict[str, Any]) -> dict[str, Any]:
    if data.get("version") == CURRENT_ITERATION_SCHEMA_VERSION:
        return data

    migrated = dict(data)
    if isinstance(migrated.get("id"), str) and migrated["id"].isdigit():
        migrated["id"] = int(migrated["id"])
    migrated.setdefault("previousContext", {})
    migrated["previousContext"] = migrated["previousContext"] or {}
    migrated["version"] = CURRENT_ITERATION_SCHEMA_VERSION
    return migrated


def _number_from_path(iteration_path: Path) -> int:
    try:
        return int(iteration_path.name)
    except ValueError:
        return 0


class IterationStore:
    """The ever-growing sequence of iterations for one task."""

    def __init__(self, task_dir: Path, task_id: int):
        self.task_dir = task_dir
        self.task_id = task_id
        self.iterations_dir = task_dir / "iterations"

    def path(self, number: int) -> Path:
        return self.iterations_dir / str(number)

    def numbers(self) -> list[int]:
        """Iteration numbers present on disk, ascending."""
        if not self.iterations_dir.exists():
            return []
        return sorted(
            int(p.name)
            for p in self.iterations_dir.iterdir()
            if p.is_dir() and p.name.isdigit() and (p / ITERATION_FILENAME).exists()
        )

    def exists(self, number: int) -> bool:
        return (self.path(number) / ITERATION_FILENAME).exists()

    def _write(
        self,
        number: int,
        title: str,
        description: str,
        previous_context: PreviousContext,
    ) -> IterationConfig:
        config = IterationConfig(
            id=self.task_id,
            iteration=number,
            title=title,
            description=description,
            created_at=utcnow(),
            previous_context=previous_context,
        )
        iteration_path = self.path(number)
        try:
            iteration_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SaveError(f"Failed to create {iteration_path}: {e}") from e
        config._path = iteration_path / ITERATION_FILENAME
        config.save()
        logger.debug(f"Wrote iteration {number} for task {self.task_id}")
        return config

    def create_initial(self, title: str, description: str) -> IterationConfig:
        return self._write(1, title, description, PreviousContext())

    def create_at(self, number: int, title: str, description: str) -> IterationConfig:
        """(Re)write iteration `number`, carrying context from the one before it."""
        return self._write(number, title, description, self.previous_context(number))

    def create_next(self, number: int, title: str, description: str) -> IterationConfig:
        """Create iteration `number`, which must follow every existing one."""
        latest = self.latest_number()
        if latest is not None and number <= latest:
            raise ValidationError(
                f"Iteration {number} must be greater than the latest iteration {latest}"
            )
        return self.create_at(number, title, description)

    def previous_context(self, number: int) -> PreviousContext:
        """Gather the artifacts of the closest iteration before `number`."""
        earlier = [n for n in self.numbers() if n < number]
        if not earlier:
            return PreviousContext()

        previous = earlier[-1]
        prev_path = self.path(previous)
        context = PreviousContext(iteration_number=previous)
        for field, filename in (
            ("plan", PLAN_FILENAME),
            ("changes", CHANGES_FILENAME),
            ("summary", SUMMARY_FILENAME),
        ):
            artifact = prev_path / filename
            if artifact.is_file():
                setattr(context, field, artifact.read_text(encoding="utf-8"))
        return context

    def load(self, number: int) -> IterationConfig:
        return IterationConfig.load(self.path(number), self.task_id)

    def latest_number(self) -> Optional[int]:
        numbers = self.numbers()
        return numbers[-1] if numbers else None

    def latest(self) -> Optional[IterationConfig]:
        number = self.latest_number()
        if number is None:
            return None
        return self.load(number)

    def list(self) -> list[IterationConfig]:
        """All iterations, newest first."""
        return [self.load(n) for n in reversed(self.numbers())]

    def status(self, number: int) -> Optional[IterationStatus]:
        return StatusChannel.for_iteration(self.path(number)).read()

    def clear(self) -> None:
        """Remove every iteration directory. Used when a task is stopped."""
        if not self.iterations_dir.exists():
            return
        try:
            shutil.rmtree(self.iterations_dir)
        except OSError as e:
            raise SaveError(f"Failed to clear iterations of task {self.task_id}: {e}") from e
