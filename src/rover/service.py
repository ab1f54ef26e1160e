"""Task service for Rover.

The service is responsible for:
1. Creating and loading task records
2. Setting up an isolated worktree for each task
3. Recording iterations with the context of the previous one
4. Starting, stopping and inspecting the sandbox of the current iteration
5. Refreshing task status from the iteration status files
6. Delivering the result: diff, merge into the project or push the branch
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from rover.agents import get_agent
from rover.agents.base import AgentTool
from rover.config import ProjectConfig, Settings, find_project_root, get_settings
from rover.core.git import Git
from rover.core.iteration import IterationConfig, IterationStore
from rover.core.status import IterationStatus, StatusChannel
from rover.core.task import TaskDescription, TaskStatus, TaskStore
from rover.core.workspace import WorktreeProvisioner
from rover.errors import (
    BackendUnavailableError,
    ContainerOperationError,
    IterationNotFoundError,
    MergeConflictError,
    RoverError,
    ValidationError,
    WorktreeError,
)
from rover.sandbox import Sandbox, create_sandbox

logger = logging.getLogger(__name__)

ATTRIBUTION_TRAILER = "Co-Authored-By: Rover <noreply@endor.dev>"

SandboxFactory = Callable[
    [TaskDescription, ProjectConfig, AgentTool, Settings], Awaitable[Sandbox]
]


@dataclass
class TaskOverview:
    """A task with the latest status of its current iteration."""

    task: TaskDescription
    status: Optional[IterationStatus] = None


@dataclass
class TaskInspection:
    """Detailed view of one task iteration."""

    task: TaskDescription
    iteration_number: int
    iteration: Optional[IterationConfig] = None
    status: Optional[IterationStatus] = None
    files: list[str] = field(default_factory=list)


@dataclass
class MergeResult:
    """Outcome of merging a task branch into the current branch."""

    task: TaskDescription
    merged: bool
    target_branch: str = ""
    committed: bool = False
    merged_commits: list[str] = field(default_factory=list)
    cleaned_up: bool = False


@dataclass
class PushResult:
    task: TaskDescription
    pushed: bool
    committed: bool = False
    commit_message: Optional[str] = None


class TaskService:
    """Runs the task lifecycle for one project."""

    def __init__(
        self,
        project_root: Optional[Path] = None,
        settings: Optional[Settings] = None,
        sandbox_factory: SandboxFactory = create_sandbox,
        git: Optional[Git] = None,
    ):
        self.settings = settings or get_settings()
        self.project_root = (project_root or find_project_root()).resolve()
        self.project_config = ProjectConfig.load(self.project_root)
        self.store = TaskStore(self.project_root)
        self.git = git or Git(self.project_root, timeout=self.settings.git_timeout)
        self.workspaces = WorktreeProvisioner(self.project_root, self.git)
        self.sandbox_factory = sandbox_factory

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def iterations(self, task: TaskDescription) -> IterationStore:
        return IterationStore(task.task_dir, task.id)

    def agent_for(self, task: TaskDescription) -> AgentTool:
        return get_agent(task.agent or self.settings.default_agent)

    async def sandbox_for(self, task: TaskDescription) -> Sandbox:
        return await self.sandbox_factory(
            task, self.project_config, self.agent_for(task), self.settings
        )

    async def _ensure_workspace(self, task: TaskDescription, branch: Optional[str] = None) -> None:
        if task.worktree_path and Path(task.worktree_path).exists():
            self.workspaces.ensure_within_project(task.worktree_path)
            return

        info = await self.workspaces.create(
            task.id,
            task.task_dir,
            branch=branch or task.branch_name or None,
            base=task.source_branch,
        )
        task.set_workspace(str(info.path), info.branch)

    def _ensure_current_iteration(self, task: TaskDescription) -> IterationConfig:
        """The iteration the next sandbox runs, recreated if its files are gone."""
        store = self.iterations(task)
        if store.exists(task.iterations):
            return store.load(task.iterations)
        if task.iterations == 1:
            return store.create_initial(task.title, task.description)
        return store.create_at(task.iterations, task.title, task.description)

    async def _launch(self, task: TaskDescription) -> str:
        """Create and start the sandbox for the task's current iteration."""
        agent = self.agent_for(task)
        agent.ensure_credentials()

        sandbox = await self.sandbox_factory(task, self.project_config, agent, self.settings)
        container_id = await sandbox.create_and_start()
        task.set_container_info(container_id, "running")
        logger.info(f"Task {task.id} running in {sandbox.sandbox_name}")
        return container_id

    def _refresh(self, task: TaskDescription) -> Optional[IterationStatus]:
        status = self.iterations(task).status(task.iterations)
        if status is not None and task.status != TaskStatus.NEW:
            task.refresh_status(status)
        return status

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_task(
        self,
        title: str,
        description: str,
        agent: Optional[str] = None,
        workflow: Optional[str] = None,
        inputs: Optional[dict[str, str]] = None,
        source_branch: Optional[str] = None,
        target_branch: Optional[str] = None,
        start: bool = True,
    ) -> TaskDescription:
        """Create a task, its worktree and first iteration, then start it.

        When the sandbox cannot be started the task is kept and reset to NEW.
        """
        agent_name = (agent or self.settings.default_agent).lower()
        get_agent(agent_name)

        if not await self.git.is_git_repo():
            raise ValidationError(f"{self.project_root} is not a git repository")
        if not await self.git.has_commits():
            raise ValidationError(f"{self.project_root} has no commits to branch from")

        task = self.store.create(
            title=title,
            description=description,
            inputs=inputs,
            workflow_name=workflow or self.settings.default_workflow,
            agent=agent_name,
            agent_image=self.settings.agent_image,
            source_branch=source_branch,
        )

        try:
            await self._ensure_workspace(task, branch=target_branch)
        except RoverError:
            task.reset_to_new()
            raise

        self.iterations(task).create_initial(task.title, task.description)

        if not start:
            return task

        task.mark_in_progress()
        try:
            await self._launch(task)
        except RoverError as e:
            logger.error(f"Task {task.id} was created but its sandbox failed to start: {e}")
            task.reset_to_new()
            raise
        return task

    async def start_task(self, task_id: int) -> TaskDescription:
        """Start a task that is in NEW status."""
        task = self.store.load(task_id)
        if task.status != TaskStatus.NEW:
            raise ValidationError(
                f"Task {task_id} is not in NEW status (current: {task.status.value})"
            )

        try:
            await self._ensure_workspace(task)
        except RoverError:
            task.reset_to_new()
            raise

        self._ensure_current_iteration(task)
        task.mark_in_progress()
        try:
            await self._launch(task)
        except RoverError:
            task.reset_to_new()
            raise
        return task

    async def restart_task(self, task_id: int) -> TaskDescription:
        """Run the current iteration again.

        The iteration number is kept; its directory is recreated when a stop
        removed it and any previous status.json is discarded.
        """
        task = self.store.load(task_id)
        if task.status in (TaskStatus.MERGED, TaskStatus.PUSHED):
            raise ValidationError(f"Task {task_id} is already {task.status.value.lower()}")

        await self._ensure_workspace(task)
        iteration = self._ensure_current_iteration(task)
        StatusChannel.for_iteration(iteration.iteration_path).clear()

        task.restart()
        try:
            await self._launch(task)
        except RoverError as e:
            task.mark_failed(f"Restart failed: {e}")
            raise
        return task

    async def iterate_task(
        self,
        task_id: int,
        title: str,
        description: str,
    ) -> IterationConfig:
        """Add iteration N+1 carrying the previous iteration's artifacts, and start it."""
        task = self.store.load(task_id)
        if not task.worktree_path or not Path(task.worktree_path).exists():
            raise ValidationError(f"Task {task_id} has no workspace. Start it first")
        self.workspaces.ensure_within_project(task.worktree_path)

        number = task.iterations + 1
        iteration = self.iterations(task).create_next(number, title, description)

        task.increment_iteration()
        task.mark_iterating()
        try:
            await self._launch(task)
        except RoverError as e:
            task.update_execution_status("failed", error=str(e))
            raise
        return iteration

    async def stop_task(
        self,
        task_id: int,
        remove_container: bool = True,
        remove_worktree: bool = True,
    ) -> TaskDescription:
        """Best-effort teardown. The task goes back to NEW so it can be restarted."""
        task = self.store.load(task_id)

        try:
            sandbox = await self.sandbox_for(task)
        except BackendUnavailableError as e:
            logger.warning(f"Skipping container cleanup for task {task_id}: {e}")
            sandbox = None

        if sandbox is not None:
            if remove_container:
                await sandbox.stop_and_remove()
            else:
                try:
                    await sandbox.stop()
                except ContainerOperationError as e:
                    logger.warning(f"Container was already stopped or removed: {e}")

        task.update_execution_status("cancelled")

        if remove_worktree:
            await self.workspaces.remove(task.worktree_path or None, task.branch_name or None)
            if task.worktree_path and Path(task.worktree_path).exists():
                logger.warning(
                    f"Worktree {task.worktree_path} could not be removed, "
                    f"keeping it on task {task_id}"
                )
            else:
                task.set_workspace("", "")

        self.iterations(task).clear()
        task.reset_to_new()
        logger.info(f"Stopped task {task_id}")
        return task

    async def delete_task(self, task_id: int) -> None:
        """Remove the container, worktree, branch and the task directory."""
        task = self.store.load(task_id)

        try:
            sandbox = await self.sandbox_for(task)
            await sandbox.stop_and_remove()
        except BackendUnavailableError as e:
            logger.warning(f"Skipping container cleanup for task {task_id}: {e}")

        await self.workspaces.remove(task.worktree_path or None, task.branch_name or None)
        self.store.delete(task_id)
        logger.info(f"Deleted task {task_id}")

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def _require_worktree(self, task: TaskDescription) -> Path:
        if not task.worktree_path or not Path(task.worktree_path).exists():
            raise ValidationError(f"No worktree found for task {task.id}")
        return self.workspaces.ensure_within_project(task.worktree_path)

    def _commit_message(self, message: str) -> str:
        if self.project_config.attribution:
            return f"{message}\n\n{ATTRIBUTION_TRAILER}"
        return message

    async def merge_task(self, task_id: int, cleanup: bool = True) -> MergeResult:
        """Merge the task branch into the branch checked out in the project.

        Uncommitted work in the worktree is committed first. A conflicting
        merge is aborted and raises MergeConflictError.
        """
        task = self.store.load(task_id)
        worktree = self._require_worktree(task)

        if await self.git.has_uncommitted_changes(untracked=False):
            raise ValidationError(
                "The project has uncommitted changes. Commit or stash them before merging"
            )

        target = await self.git.current_branch()
        worktree_changes = await self.git.has_uncommitted_changes(cwd=worktree)
        commits = await self.git.unmerged_commits(task.branch_name, target)
        if not worktree_changes and not commits:
            logger.info(f"Task {task_id} has nothing to merge")
            return MergeResult(task=task, merged=False, target_branch=target)

        if worktree_changes:
            message = self._commit_message(f"{task.title}\n\n{task.description}")
            await self.git.add_and_commit(message, cwd=worktree)
            commits = await self.git.unmerged_commits(task.branch_name, target)

        if not await self.git.merge_branch(task.branch_name, f"merge: {task.title}"):
            await self.git.abort_merge()
            raise MergeConflictError(task.branch_name, target)

        task.mark_merged()
        logger.info(f"Merged task {task_id} ({task.branch_name}) into {target}")

        result = MergeResult(
            task=task,
            merged=True,
            target_branch=target,
            committed=worktree_changes,
            merged_commits=commits,
        )
        if cleanup:
            await self.workspaces.remove(worktree, task.branch_name)
            result.cleaned_up = not worktree.exists()
            if result.cleaned_up:
                task.set_workspace("", "")
        return result

    async def push_task(self, task_id: int, message: Optional[str] = None) -> PushResult:
        """Commit pending worktree changes and push the task branch to origin."""
        task = self.store.load(task_id)
        worktree = self._require_worktree(task)

        has_changes = await self.git.has_uncommitted_changes(cwd=worktree)
        if not has_changes:
            try:
                unpushed = await self.git.unmerged_commits(
                    task.branch_name, f"origin/{task.branch_name}", cwd=worktree
                )
            except WorktreeError:
                # The branch is not on the remote yet
                unpushed = None
            if unpushed == []:
                logger.info(f"Task {task_id} has nothing to push")
                return PushResult(task=task, pushed=False)

        commit_message = None
        if has_changes:
            commit_message = self._commit_message(message or f"Task {task.id}: {task.title}")
            await self.git.add_and_commit(commit_message, cwd=worktree)

        await self.git.push(task.branch_name, cwd=worktree)
        task.mark_pushed()
        logger.info(f"Pushed branch {task.branch_name} for task {task_id}")
        return PushResult(
            task=task,
            pushed=True,
            committed=has_changes,
            commit_message=commit_message,
        )

    async def diff_task(
        self,
        task_id: int,
        file_path: Optional[str] = None,
        only_files: bool = False,
        base: Optional[str] = None,
    ) -> str:
        """Changes in the task worktree, against HEAD or `base`."""
        task = self.store.load(task_id)
        worktree = self._require_worktree(task)
        return await self.git.diff(
            cwd=worktree, base=base, file_path=file_path, only_files=only_files
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list_tasks(self) -> list[TaskOverview]:
        overviews = []
        for task in self.store.list_tasks():
            overviews.append(TaskOverview(task=task, status=self._refresh(task)))
        return overviews

    def inspect_task(self, task_id: int, iteration: Optional[int] = None) -> TaskInspection:
        task = self.store.load(task_id)
        store = self.iterations(task)
        number = iteration or task.iterations

        if number == task.iterations:
            status = self._refresh(task)
        else:
            status = store.status(number)

        config = None
        if store.exists(number):
            config = store.load(number)
        elif iteration is not None:
            raise IterationNotFoundError(task_id, number)

        files = []
        iteration_path = store.path(number)
        if iteration_path.exists():
            files = sorted(
                str(p.relative_to(iteration_path))
                for p in iteration_path.rglob("*")
                if p.is_file()
            )

        return TaskInspection(
            task=task,
            iteration_number=number,
            iteration=config,
            status=status,
            files=files,
        )

    async def task_logs(self, task_id: int) -> str:
        task = self.store.load(task_id)
        sandbox = await self.sandbox_for(task)
        return await sandbox.logs()

    async def follow_task_logs(self, task_id: int) -> AsyncIterator[str]:
        task = self.store.load(task_id)
        sandbox = await self.sandbox_for(task)
        async for line in sandbox.follow_logs():
            yield line

    async def open_shell(self, task_id: int) -> int:
        task = self.store.load(task_id)
        sandbox = await self.sandbox_for(task)
        return await sandbox.open_shell_at_worktree()

    async def run_session(self, task_id: int, prompt: Optional[str] = None) -> int:
        task = self.store.load(task_id)
        if not task.worktree_path:
            raise ValidationError(f"Task {task_id} has no workspace. Start it first")
        self._ensure_current_iteration(task)
        sandbox = await self.sandbox_for(task)
        return await sandbox.run_interactive(prompt)
