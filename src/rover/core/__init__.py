"""Core modules for Rover.

Contains the fundamental building blocks:
- task: persisted task records and their lifecycle
- iteration: per-iteration metadata and carried-forward context
- status: file-based status channel written by the agent runtime
- git / workspace: git worktree isolation per task
"""

from rover.core.git import Git
from rover.core.iteration import (
    IterationConfig,
    IterationStore,
    PreviousContext,
)
from rover.core.status import (
    IterationState,
    IterationStatus,
    StatusChannel,
)
from rover.core.task import (
    TaskDescription,
    TaskStatus,
    TaskStore,
)
from rover.core.workspace import (
    WorkspaceInfo,
    WorktreeProvisioner,
)

__all__ = [
    # Tasks
    "TaskDescription",
    "TaskStatus",
    "TaskStore",
    # Iterations
    "IterationConfig",
    "IterationStore",
    "PreviousContext",
    # Status
    "IterationState",
    "IterationStatus",
    "StatusChannel",
    # Workspace
    "Git",
    "WorkspaceInfo",
    "WorktreeProvisioner",
]
