import json
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from rover.agents.claude import ClaudeAgent
from rover.core.task import TaskStatus
from rover.errors import (
    AgentError,
    ContainerOperationError,
    IterationNotFoundError,
    MergeConflictError,
    TaskNotFoundError,
    ValidationError,
)
from rover.service import TaskService


class FakeSandboxFactory:
    """Records the sandboxes handed out to the service."""

    def __init__(self):
        self.sandboxes = []
        self.start_error = None

    async def __call__(self, task, project_config, agent, settings):
        sandbox = Mock()
        sandbox.sandbox_name = f"rover-task-{task.id}-{task.iterations}"
        sandbox.create_and_start = AsyncMock(
            return_value=f"cid-{task.id}-{task.iterations}",
            side_effect=self.start_error,
        )
        sandbox.stop_and_remove = AsyncMock(return_value=sandbox.sandbox_name)
        sandbox.stop = AsyncMock()
        sandbox.logs = AsyncMock(return_value="log output")
        self.sandboxes.append(sandbox)
        return sandbox


@pytest.fixture()
def factory():
    return FakeSandboxFactory()


@pytest.fixture()
def service(git_repo, settings, factory, tmp_path):
    service = TaskService(project_root=git_repo, settings=settings, sandbox_factory=factory)
    agent = ClaudeAgent(
        home=tmp_path / "home", environ={"CLAUDE_CODE_USE_BEDROCK": "1"}, platform="linux"
    )
    service.agent_for = lambda task: agent
    return service


def _write_status(service, task, state, progress=100):
    now = datetime.now(timezone.utc).isoformat()
    path = service.iterations(task).path(task.iterations) / "status.json"
    path.write_text(
        json.dumps(
            {
                "taskId": str(task.id),
                "status": state,
                "currentStep": "done",
                "progress": progress,
                "startedAt": now,
                "updatedAt": now,
            }
        ),
        encoding="utf-8",
    )


@pytest.mark.asyncio
async def test_create_task_starts_sandbox(service, factory):
    task = await service.create_task("Fix bug", "Fix the login bug")

    assert task.status == TaskStatus.IN_PROGRESS
    assert task.container_id == "cid-1-1"
    assert task.execution_status == "running"
    assert task.branch_name.startswith("rover/task-1-")
    assert (service.project_root / ".rover" / "tasks" / "1" / "workspace" / "README.md").exists()
    assert service.iterations(task).numbers() == [1]
    factory.sandboxes[0].create_and_start.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_task_without_start(service, factory):
    task = await service.create_task("Fix bug", "Fix the login bug", start=False)

    assert task.status == TaskStatus.NEW
    assert factory.sandboxes == []


@pytest.mark.asyncio
async def test_failed_start_resets_task(service, factory):
    factory.start_error = ContainerOperationError("image not found")

    with pytest.raises(ContainerOperationError):
        await service.create_task("Fix bug", "Fix the login bug")

    task = service.store.load(1)
    assert task.status == TaskStatus.NEW
    assert task.worktree_path


@pytest.mark.asyncio
async def test_start_requires_new_status(service):
    task = await service.create_task("Fix bug", "Fix the login bug")

    with pytest.raises(ValidationError, match="not in NEW status"):
        await service.start_task(task.id)


@pytest.mark.asyncio
async def test_start_new_task(service):
    created = await service.create_task("Fix bug", "Fix the login bug", start=False)

    task = await service.start_task(created.id)

    assert task.status == TaskStatus.IN_PROGRESS
    assert task.container_id == "cid-1-1"


@pytest.mark.asyncio
async def test_iterate_carries_context(service, factory):
    task = await service.create_task("Fix bug", "Fix the login bug")
    first = service.iterations(task).load(1)
    (first.iteration_path / "plan.md").write_text("the plan", encoding="utf-8")

    iteration = await service.iterate_task(task.id, "Logout", "Fix logout too")

    assert iteration.iteration == 2
    assert iteration.previous_context.iteration_number == 1
    assert iteration.previous_context.plan == "the plan"
    task = service.store.load(task.id)
    assert task.iterations == 2
    assert task.status == TaskStatus.ITERATING
    assert task.container_id == "cid-1-2"


@pytest.mark.asyncio
async def test_iterate_without_workspace(service):
    task = await service.create_task("Fix bug", "Fix the login bug", start=False)
    task.set_workspace("", "")

    with pytest.raises(ValidationError):
        await service.iterate_task(task.id, "More", "More work")


@pytest.mark.asyncio
async def test_stop_task_cleans_up(service, factory):
    task = await service.create_task("Fix bug", "Fix the login bug")
    worktree = task.worktree_path

    stopped = await service.stop_task(task.id)

    assert stopped.status == TaskStatus.NEW
    assert stopped.execution_status == "cancelled"
    assert stopped.worktree_path == ""
    assert stopped.branch_name == ""
    assert not (service.project_root / worktree).exists()
    assert service.iterations(stopped).numbers() == []
    factory.sandboxes[-1].stop_and_remove.assert_awaited_once()


@pytest.mark.asyncio
async def test_stop_keeps_worktree_that_could_not_be_removed(service):
    task = await service.create_task("Fix bug", "Fix the login bug")
    branch = task.branch_name
    service.workspaces.remove = AsyncMock()

    stopped = await service.stop_task(task.id)

    assert stopped.status == TaskStatus.NEW
    assert stopped.worktree_path == task.worktree_path
    assert stopped.branch_name == branch

    started = await service.start_task(task.id)

    assert started.branch_name == branch


@pytest.mark.asyncio
async def test_restart_after_stop(service, factory):
    task = await service.create_task("Fix bug", "Fix the login bug")
    await service.stop_task(task.id)

    restarted = await service.restart_task(task.id)

    assert restarted.status == TaskStatus.IN_PROGRESS
    assert restarted.restart_count == 1
    assert restarted.worktree_path
    assert service.iterations(restarted).numbers() == [1]


@pytest.mark.asyncio
async def test_restart_clears_stale_status(service):
    task = await service.create_task("Fix bug", "Fix the login bug")
    _write_status(service, task, "failed", 30)

    restarted = await service.restart_task(task.id)

    assert service.iterations(restarted).status(1) is None


@pytest.mark.asyncio
async def test_restart_refuses_merged_task(service):
    task = await service.create_task("Fix bug", "Fix the login bug")
    task.mark_merged()

    with pytest.raises(ValidationError):
        await service.restart_task(task.id)


@pytest.mark.asyncio
async def test_delete_task(service):
    task = await service.create_task("Fix bug", "Fix the login bug")

    await service.delete_task(task.id)

    assert not service.store.exists(task.id)
    with pytest.raises(TaskNotFoundError):
        service.store.load(task.id)


@pytest.mark.asyncio
async def test_list_refreshes_status(service):
    task = await service.create_task("Fix bug", "Fix the login bug")
    await service.create_task("Other", "Another task", start=False)
    _write_status(service, task, "completed")

    overviews = service.list_tasks()

    assert [o.task.id for o in overviews] == [2, 1]
    assert overviews[1].task.status == TaskStatus.COMPLETED
    assert overviews[1].status.progress == 100
    assert overviews[0].status is None
    assert service.store.load(task.id).status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_inspect_task(service):
    task = await service.create_task("Fix bug", "Fix the login bug")
    _write_status(service, task, "running", 50)

    inspection = service.inspect_task(task.id)

    assert inspection.iteration_number == 1
    assert inspection.iteration.title == "Fix bug"
    assert inspection.status.progress == 50
    assert inspection.task.status == TaskStatus.ITERATING
    assert inspection.files == ["iteration.json", "status.json"]

    with pytest.raises(IterationNotFoundError):
        service.inspect_task(task.id, iteration=5)


@pytest.mark.asyncio
async def test_task_logs(service):
    task = await service.create_task("Fix bug", "Fix the login bug")

    assert await service.task_logs(task.id) == "log output"


@pytest.mark.asyncio
async def test_create_task_rejects_unknown_agent(service):
    with pytest.raises(AgentError, match="Unknown agent"):
        await service.create_task("Fix bug", "Fix the login bug", agent="copilot")


def _git(cwd, *args) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


@pytest.fixture()
def identity(git_repo):
    _git(git_repo, "config", "user.name", "Rover Tests")
    _git(git_repo, "config", "user.email", "tests@example.com")


@pytest.mark.asyncio
async def test_merge_commits_and_merges_worktree(service, identity):
    task = await service.create_task("Add notes", "Add a notes file")
    worktree = Path(task.worktree_path)
    branch = task.branch_name
    (worktree / "notes.txt").write_text("notes\n", encoding="utf-8")

    result = await service.merge_task(task.id)

    assert result.merged
    assert result.committed
    assert result.target_branch == "main"
    assert len(result.merged_commits) == 1
    assert (service.project_root / "notes.txt").read_text(encoding="utf-8") == "notes\n"
    task_commit = _git(service.project_root, "log", "-1", "--format=%B", "HEAD^2")
    assert "Co-Authored-By: Rover" in task_commit
    assert result.cleaned_up
    assert not worktree.exists()
    assert branch not in _git(service.project_root, "branch", "--format=%(refname:short)").split()
    assert service.store.load(task.id).status == TaskStatus.MERGED


@pytest.mark.asyncio
async def test_merge_without_changes(service, identity):
    task = await service.create_task("Fix bug", "Fix the login bug")

    result = await service.merge_task(task.id)

    assert not result.merged
    assert Path(task.worktree_path).exists()
    assert service.store.load(task.id).status == TaskStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_merge_refuses_dirty_project(service, identity):
    task = await service.create_task("Fix bug", "Fix the login bug")
    (service.project_root / "README.md").write_text("# edited\n", encoding="utf-8")

    with pytest.raises(ValidationError, match="uncommitted changes"):
        await service.merge_task(task.id)


@pytest.mark.asyncio
async def test_merge_conflict_is_aborted(service, identity):
    task = await service.create_task("Fix bug", "Fix the login bug")
    worktree = Path(task.worktree_path)
    (worktree / "README.md").write_text("# from the task\n", encoding="utf-8")
    _git(worktree, "commit", "-q", "-am", "task change")
    (service.project_root / "README.md").write_text("# from main\n", encoding="utf-8")
    _git(service.project_root, "commit", "-q", "-am", "main change")

    with pytest.raises(MergeConflictError):
        await service.merge_task(task.id)

    assert _git(service.project_root, "status", "--porcelain", "--untracked-files=no") == ""
    assert (service.project_root / "README.md").read_text(encoding="utf-8") == "# from main\n"
    assert service.store.load(task.id).status != TaskStatus.MERGED
    assert worktree.exists()


@pytest.mark.asyncio
async def test_push_commits_and_pushes_branch(service, identity, tmp_path):
    remote = tmp_path / "remote.git"
    _git(tmp_path, "init", "-q", "--bare", str(remote))
    _git(service.project_root, "remote", "add", "origin", str(remote))
    task = await service.create_task("Add notes", "Add a notes file")
    (Path(task.worktree_path) / "notes.txt").write_text("notes\n", encoding="utf-8")

    result = await service.push_task(task.id, "Add notes file")

    assert result.pushed
    assert result.committed
    assert result.commit_message.startswith("Add notes file\n")
    assert task.branch_name in _git(remote, "branch", "--format=%(refname:short)").split()
    assert service.store.load(task.id).status == TaskStatus.PUSHED

    again = await service.push_task(task.id)

    assert not again.pushed


@pytest.mark.asyncio
async def test_diff_task(service):
    task = await service.create_task("Fix bug", "Fix the login bug")
    (Path(task.worktree_path) / "README.md").write_text("# changed\n", encoding="utf-8")

    assert await service.diff_task(task.id, only_files=True) == "README.md"
    assert "+# changed" in await service.diff_task(task.id, file_path="README.md")


@pytest.mark.asyncio
async def test_delivery_requires_worktree(service):
    task = await service.create_task("Fix bug", "Fix the login bug", start=False)
    task.set_workspace("", "")

    with pytest.raises(ValidationError, match="No worktree"):
        await service.diff_task(task.id)
