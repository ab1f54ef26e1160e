"""Workspace management for Rover.

Each task gets its own git worktree at .rover/tasks/<id>/workspace on a
dedicated branch, so agents never touch the user's checkout.
"""

import logging
import secrets
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rover.core.git import Git
from rover.errors import WorktreeError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "rover/task"
WORKSPACE_DIRNAME = "workspace"


@dataclass
class WorkspaceInfo:
    """Information about a task worktree."""

    path: Path
    branch: str
    created: bool = True


def ensure_within_project(path: Path | str, project_root: Path) -> Path:
    """Resolve `path` and refuse anything outside `project_root`."""
    if not str(path):
        raise WorktreeError("Task has no worktree path")
    resolved = Path(path).resolve()
    if not resolved.is_relative_to(project_root.resolve()):
        raise WorktreeError(
            f"Worktree path {resolved} is outside the project root {project_root}"
        )
    return resolved


class WorktreeProvisioner:
    """Creates and removes one isolated worktree + branch per task."""

    def __init__(self, project_root: Path, git: Optional[Git] = None):
        self.project_root = project_root.resolve()
        self.git = git or Git(self.project_root)

    @staticmethod
    def generate_branch_name(task_id: int, suffix: Optional[str] = None) -> str:
        """Branch for a task. A random suffix avoids collisions with old branches."""
        suffix = suffix or secrets.token_hex(4)
        return f"{BRANCH_PREFIX}-{task_id}-{suffix}"

    def worktree_path(self, task_dir: Path) -> Path:
        return task_dir / WORKSPACE_DIRNAME

    def ensure_within_project(self, path: Path | str) -> Path:
        return ensure_within_project(path, self.project_root)

    async def create(
        self,
        task_id: int,
        task_dir: Path,
        branch: Optional[str] = None,
        base: Optional[str] = None,
    ) -> WorkspaceInfo:
        """Create the worktree for a task.

        Args:
            task_id: Numeric task id, used for the generated branch name
            task_dir: The task's directory under .rover/tasks
            branch: Branch to use instead of a generated one
            base: Base branch or commit for a new branch (defaults to HEAD)

        Returns:
            WorkspaceInfo with the resolved path and branch
        """
        path = self.ensure_within_project(self.worktree_path(task_dir))

        if (path / ".git").exists():
            # The checked out branch wins over a requested or generated name
            current = await self.git.current_branch(cwd=path)
            logger.info(f"Reusing existing worktree at {path} on branch {current}")
            return WorkspaceInfo(path=path, branch=current or branch or "", created=False)

        if path.exists() and any(path.iterdir()):
            logger.warning(f"Deleting leftover directory {path}, it is not a git worktree")
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise WorktreeError(f"Failed to delete leftover directory {path}: {e}") from e
            await self.git.prune_worktrees()

        branch = branch or self.generate_branch_name(task_id)

        path.parent.mkdir(parents=True, exist_ok=True)
        await self.git.create_worktree(path, branch, base)
        logger.info(f"Created worktree {path} on branch {branch}")

        self.copy_environment_files(path)
        return WorkspaceInfo(path=path, branch=branch)

    async def remove(self, path: Optional[Path | str], branch: Optional[str]) -> None:
        """Best-effort removal of a worktree and its branch.

        Failures are logged as warnings. A worktree or branch that is
        already gone counts as removed.
        """
        if path:
            await self._remove_worktree(Path(path))
        if branch:
            await self._remove_branch(branch)

    async def _remove_worktree(self, path: Path) -> None:
        if not path.exists():
            logger.debug(f"Worktree {path} already removed")
            try:
                await self.git.prune_worktrees()
            except WorktreeError as e:
                logger.warning(f"Failed to prune worktrees: {e}")
            return

        try:
            await self.git.remove_worktree(path)
            logger.info(f"Removed worktree {path}")
            return
        except WorktreeError as e:
            logger.warning(f"git worktree remove failed, deleting {path} manually: {e}")

        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning(f"Failed to delete worktree directory {path}: {e}")

        try:
            await self.git.prune_worktrees()
        except WorktreeError as e:
            logger.warning(f"Failed to prune worktrees: {e}")

    async def _remove_branch(self, branch: str) -> None:
        try:
            if not await self.git.branch_exists(branch):
                logger.debug(f"Branch {branch} already removed")
                return
            await self.git.delete_branch(branch)
            logger.info(f"Deleted branch {branch}")
        except WorktreeError as e:
            logger.warning(f"Failed to delete branch {branch}: {e}")

    def copy_environment_files(self, worktree: Path) -> list[Path]:
        """Copy untracked .env* files from the project root into a new worktree."""
        copied = []
        for source in sorted(self.project_root.glob(".env*")):
            if not source.is_file():
                continue
            target = worktree / source.name
            if target.exists():
                continue
            try:
                shutil.copy2(source, target)
            except OSError as e:
                logger.warning(f"Failed to copy {source.name} into worktree: {e}")
                continue
            copied.append(target)

        if copied:
            logger.debug(f"Copied {len(copied)} environment file(s) into {worktree}")
        return copied
