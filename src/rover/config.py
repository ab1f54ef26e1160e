"""Configuration management for Rover.

Two layers:
- Settings: host-level knobs loaded from environment variables
- ProjectConfig: per-project options stored in <project>/rover.json
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from rover.errors import LoadError, ValidationError

PROJECT_CONFIG_FILENAME = "rover.json"
ROVER_DIR = ".rover"

# Reference image the agent runtime is tested against
DEFAULT_AGENT_IMAGE = "ghcr.io/endorhq/rover/node:v1.3.4"


class Settings(BaseSettings):
    """Host settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ROVER_",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Image override (highest precedence)
    agent_image: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AGENT_IMAGE", "ROVER_AGENT_IMAGE"),
        description="Agent image override, takes precedence over any stored image",
    )

    # Container backend
    backend: Optional[str] = Field(
        default=None,
        description="Force a container backend (docker or podman)",
    )
    backend_timeout: float = Field(
        default=300.0,
        description="Seconds before a blocking container runtime call is abandoned",
    )
    shell_image: str = Field(
        default="node:24-alpine",
        description="Image used for debugging shells over a task worktree",
    )

    # Git
    git_timeout: float = Field(
        default=120.0,
        description="Seconds before a git invocation is killed",
    )

    # Task defaults
    default_agent: str = "claude"
    default_workflow: str = "swe"
    status_poll_interval: float = Field(
        default=2.0,
        description="Seconds between status.json reads while waiting",
    )

    verbose: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class ProjectConfig(BaseModel):
    """The rover.json file at the project root."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    version: str = "1.0"
    agent_image: Optional[str] = Field(default=None, alias="agentImage")
    init_script: Optional[str] = Field(default=None, alias="initScript")
    envs: list[str] = Field(default_factory=list)
    envs_file: Optional[str] = Field(default=None, alias="envsFile")
    attribution: bool = True

    project_root: Path = Field(default_factory=Path.cwd, exclude=True)

    @classmethod
    def load(cls, project_root: Path) -> "ProjectConfig":
        """Load rover.json from the project root. Missing file means defaults."""
        project_root = project_root.resolve()
        path = project_root / PROJECT_CONFIG_FILENAME
        if not path.exists():
            return cls(project_root=project_root)

        try:
            data = json.loads(path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as e:
            raise LoadError(f"Failed to load {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValidationError(f"{path} must contain a JSON object")

        try:
            return cls(**data, project_root=project_root)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid project config {path}: {e}") from e

    @property
    def init_script_path(self) -> Optional[Path]:
        if not self.init_script:
            return None
        return self.project_root / self.init_script

    @property
    def envs_file_path(self) -> Optional[Path]:
        if not self.envs_file:
            return None
        return self.project_root / self.envs_file


def find_project_root(start: Optional[Path] = None) -> Path:
    """Walk up from `start` to the first directory holding rover.json or .git."""
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / PROJECT_CONFIG_FILENAME).exists() or (candidate / ".git").exists():
            return candidate
    return current
