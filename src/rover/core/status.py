"""Iteration status channel.

The agent runtime inside the container periodically overwrites
<iteration>/status.json on the shared output mount. The host never pushes;
it reads the file whenever a status-aware command runs. Writes on the
producer side are not guaranteed to be atomic, so a missing, empty or
half-written file is reported as "not ready yet" rather than as an error.
"""

import asyncio
import json
import logging
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from rover.core.storage import atomic_write_json
from rover.errors import LoadError

logger = logging.getLogger(__name__)

CURRENT_STATUS_SCHEMA_VERSION = "1.0"
STATUS_FILENAME = "status.json"


class IterationState(str, Enum):
    """Status values written by the agent runtime, in expected order."""

    INITIALIZING = "initializing"
    INSTALLING = "installing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (IterationState.COMPLETED, IterationState.FAILED)


class IterationStatus(BaseModel):
    """Contents of status.json. Read-only to the host."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    task_id: str = Field(alias="taskId", coerce_numbers_to_str=True)
    status: IterationState
    current_step: str = Field(default="", alias="currentStep")
    progress: int = Field(default=0, ge=0, le=100)
    started_at: datetime = Field(alias="startedAt")
    updated_at: datetime = Field(alias="updatedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    error: Optional[str] = None
    version: str = CURRENT_STATUS_SCHEMA_VERSION

    @field_validator("progress", mode="before")
    @classmethod
    def round_progress(cls, value):
        # Some runtimes report fractional percentages
        if isinstance(value, float):
            return round(value)
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def migrate_status_data(data: dict) -> dict:
    if data.get("version") == CURRENT_STATUS_SCHEMA_VERSION:
        return data

    migrated = dict(data)
    if isinstance(migrated.get("status"), str):
        migrated["status"] = migrated["status"].lower()
    # Older runtimes wrote numeric task ids
    if isinstance(migrated.get("taskId"), int):
        migrated["taskId"] = str(migrated["taskId"])
    if migrated.get("completedAt") == "":
        migrated.pop("completedAt")
    if migrated.get("error") == "":
        migrated.pop("error")
    migrated["version"] = CURRENT_STATUS_SCHEMA_VERSION
    return migrated


class StatusChannel:
    """One-way, file-based status reporting for a single iteration."""

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def for_iteration(cls, iteration_path: Path) -> "StatusChannel":
        return cls(iteration_path / STATUS_FILENAME)

    def read(self) -> Optional[IterationStatus]:
        """Return the current status, or None if it is not ready yet.

        Raises LoadError only for I/O failures other than a missing file.
        """
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError:
            logger.debug(f"Status file {self.path} is partially written")
            return None
        except OSError as e:
            raise LoadError(f"Failed to read {self.path}: {e}") from e

        if not content.strip():
            return None

        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            logger.debug(f"Status file {self.path} is partially written")
            return None

        if not isinstance(data, dict):
            return None

        try:
            return IterationStatus.model_validate(migrate_status_data(data))
        except PydanticValidationError as e:
            logger.debug(f"Status file {self.path} is not valid yet: {e}")
            return None

    def write(self, status: IterationStatus) -> None:
        """Producer-side helper. Always replaces the file atomically."""
        atomic_write_json(self.path, status.to_json())

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    async def wait(
        self,
        poll_interval: float = 2.0,
        timeout: Optional[float] = None,
    ) -> Optional[IterationStatus]:
        """Poll until a terminal status appears or the timeout expires.

        Returns the last status seen (possibly None) on timeout.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        last: Optional[IterationStatus] = None

        while True:
            status = self.read()
            if status is not None:
                if last is not None and status.progress < last.progress:
                    logger.debug(
                        f"Progress went backwards in {self.path}: "
                        f"{last.progress} -> {status.progress}"
                    )
                last = status
                if status.is_terminal:
                    return status

            if deadline is not None and time.monotonic() >= deadline:
                return last

            await asyncio.sleep(poll_interval)
