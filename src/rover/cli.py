"""CLI entrypoint for rover."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import rich_click as click
from dotenv import load_dotenv

from rover import __version__
from rover.config import get_settings
from rover.errors import RoverError
from rover.logging_setup import configure_logging
from rover.service import TaskInspection, TaskService

logger = logging.getLogger(__name__)


def _service(ctx: click.Context) -> TaskService:
    settings = get_settings()
    if ctx.obj.get("verbose"):
        settings = settings.model_copy(update={"verbose": True})
    return TaskService(project_root=ctx.obj.get("project_root"), settings=settings)


def _emit(data: dict[str, Any], as_json: bool, text: str) -> None:
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(text)


def _fail(error: Exception, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps({"success": False, "error": str(error)}, indent=2))
    else:
        click.secho(f"Error: {error}", fg="red", err=True)
    raise SystemExit(1)


def _title_from(text: str, param_hint: str) -> str:
    if not text.strip():
        raise click.BadParameter("must not be empty", param_hint=param_hint)
    return text.strip().splitlines()[0][:80]


def _inspection_json(inspection: TaskInspection) -> dict[str, Any]:
    return {
        "success": True,
        "task": inspection.task.to_json(),
        "iteration": inspection.iteration_number,
        "iterationConfig": inspection.iteration.to_json() if inspection.iteration else None,
        "status": inspection.status.to_json() if inspection.status else None,
        "files": inspection.files,
    }


@click.group()
@click.version_option(version=__version__, prog_name="rover")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
@click.option(
    "--project",
    "project_root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project root. Defaults to the nearest directory with rover.json or .git.",
)
@click.pass_context
def rover(ctx: click.Context, verbose: bool, project_root: Optional[Path]) -> None:
    """Run coding agents on tasks inside isolated containers."""
    load_dotenv()
    verbose = verbose or get_settings().verbose
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["project_root"] = project_root
    ctx.obj["verbose"] = verbose


@rover.command("task")
@click.argument("description")
@click.option("--title", default=None, help="Task title. Defaults to the first line of the description.")
@click.option("--agent", "-a", default=None, help="Agent to run (claude, codex, gemini, qwen).")
@click.option("--workflow", "-w", default=None, help="Workflow name.")
@click.option("--source-branch", default=None, help="Branch the worktree starts from.")
@click.option("--target-branch", default=None, help="Branch name for the task worktree.")
@click.option("--no-start", is_flag=True, default=False, help="Create the task without starting it.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def task_command(
    ctx: click.Context,
    description: str,
    title: Optional[str],
    agent: Optional[str],
    workflow: Optional[str],
    source_branch: Optional[str],
    target_branch: Optional[str],
    no_start: bool,
    as_json: bool,
) -> None:
    """Create a task and start it in a sandbox."""
    default_title = _title_from(description, "DESCRIPTION")
    title = title or default_title
    try:
        task = asyncio.run(
            _service(ctx).create_task(
                title=title,
                description=description,
                agent=agent,
                workflow=workflow,
                source_branch=source_branch,
                target_branch=target_branch,
                start=not no_start,
            )
        )
    except RoverError as e:
        _fail(e, as_json)
        return

    _emit(
        {"success": True, "task": task.to_json()},
        as_json,
        f"Task {task.id} created ({task.status.value}) on branch {task.branch_name}",
    )


@rover.command("start")
@click.argument("task_id", type=int)
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def start_command(ctx: click.Context, task_id: int, as_json: bool) -> None:
    """Start a task that has not started yet."""
    try:
        task = asyncio.run(_service(ctx).start_task(task_id))
    except RoverError as e:
        _fail(e, as_json)
        return
    _emit({"success": True, "task": task.to_json()}, as_json, f"Task {task.id} started")


@rover.command("restart")
@click.argument("task_id", type=int)
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def restart_command(ctx: click.Context, task_id: int, as_json: bool) -> None:
    """Run the current iteration of a task again."""
    try:
        task = asyncio.run(_service(ctx).restart_task(task_id))
    except RoverError as e:
        _fail(e, as_json)
        return
    _emit(
        {"success": True, "task": task.to_json()},
        as_json,
        f"Task {task.id} restarted (restart #{task.restart_count})",
    )


@rover.command("iterate")
@click.argument("task_id", type=int)
@click.argument("instructions")
@click.option("--title", default=None, help="Iteration title.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def iterate_command(
    ctx: click.Context,
    task_id: int,
    instructions: str,
    title: Optional[str],
    as_json: bool,
) -> None:
    """Refine a task with new instructions in a new iteration."""
    default_title = _title_from(instructions, "INSTRUCTIONS")
    title = title or default_title
    try:
        iteration = asyncio.run(_service(ctx).iterate_task(task_id, title, instructions))
    except RoverError as e:
        _fail(e, as_json)
        return
    _emit(
        {"success": True, "taskId": task_id, "iteration": iteration.to_json()},
        as_json,
        f"Task {task_id} iteration {iteration.iteration} started",
    )


@rover.command("stop")
@click.argument("task_id", type=int)
@click.option("--keep-container", is_flag=True, default=False, help="Stop without removing the container.")
@click.option("--keep-worktree", is_flag=True, default=False, help="Keep the worktree and branch.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def stop_command(
    ctx: click.Context,
    task_id: int,
    keep_container: bool,
    keep_worktree: bool,
    as_json: bool,
) -> None:
    """Stop a task and clean up its resources."""
    try:
        task = asyncio.run(
            _service(ctx).stop_task(
                task_id,
                remove_container=not keep_container,
                remove_worktree=not keep_worktree,
            )
        )
    except RoverError as e:
        _fail(e, as_json)
        return
    _emit({"success": True, "task": task.to_json()}, as_json, f"Task {task.id} stopped")


@rover.command("delete")
@click.argument("task_id", type=int)
@click.option("--yes", "-y", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def delete_command(ctx: click.Context, task_id: int, yes: bool, as_json: bool) -> None:
    """Delete a task, its worktree, branch and container."""
    if not yes and not as_json:
        click.confirm(f"Delete task {task_id}?", abort=True)
    try:
        asyncio.run(_service(ctx).delete_task(task_id))
    except RoverError as e:
        _fail(e, as_json)
        return
    _emit({"success": True, "taskId": task_id}, as_json, f"Task {task_id} deleted")


@rover.command("merge")
@click.argument("task_id", type=int)
@click.option("--force", "-f", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.option("--keep-worktree", is_flag=True, default=False, help="Keep the worktree and branch after merging.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def merge_command(
    ctx: click.Context,
    task_id: int,
    force: bool,
    keep_worktree: bool,
    as_json: bool,
) -> None:
    """Merge the task branch into the current branch."""
    if not force and not as_json:
        click.confirm(f"Merge task {task_id} into the current branch?", abort=True)
    try:
        result = asyncio.run(_service(ctx).merge_task(task_id, cleanup=not keep_worktree))
    except RoverError as e:
        _fail(e, as_json)
        return

    if result.merged:
        text = f"Task {task_id} merged into {result.target_branch}"
        if result.merged_commits:
            text += f" ({len(result.merged_commits)} commit(s))"
    else:
        text = f"Task {task_id} has no changes to merge"
    _emit(
        {
            "success": True,
            "taskId": task_id,
            "merged": result.merged,
            "targetBranch": result.target_branch,
            "committed": result.committed,
            "mergedCommits": result.merged_commits,
            "cleanedUp": result.cleaned_up,
        },
        as_json,
        text,
    )


@rover.command("push")
@click.argument("task_id", type=int)
@click.option("--message", "-m", default=None, help="Commit message for pending changes.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def push_command(ctx: click.Context, task_id: int, message: Optional[str], as_json: bool) -> None:
    """Commit pending changes and push the task branch."""
    try:
        result = asyncio.run(_service(ctx).push_task(task_id, message))
    except RoverError as e:
        _fail(e, as_json)
        return

    if result.pushed:
        text = f"Branch {result.task.branch_name} pushed"
    else:
        text = f"Task {task_id} has no changes to push"
    _emit(
        {
            "success": True,
            "taskId": task_id,
            "pushed": result.pushed,
            "committed": result.committed,
            "commitMessage": result.commit_message,
        },
        as_json,
        text,
    )


@rover.command("diff")
@click.argument("task_id", type=int)
@click.argument("file_path", required=False)
@click.option("--only-files", is_flag=True, default=False, help="List changed file names only.")
@click.option("--branch", "-b", default=None, help="Compare against this branch instead of HEAD.")
@click.pass_context
def diff_command(
    ctx: click.Context,
    task_id: int,
    file_path: Optional[str],
    only_files: bool,
    branch: Optional[str],
) -> None:
    """Show the changes in a task worktree."""
    try:
        output = asyncio.run(
            _service(ctx).diff_task(task_id, file_path=file_path, only_files=only_files, base=branch)
        )
    except RoverError as e:
        _fail(e, False)
        return
    click.echo(output or "No changes")


@rover.command("list")
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def list_command(ctx: click.Context, as_json: bool) -> None:
    """List tasks with their current status."""
    try:
        overviews = _service(ctx).list_tasks()
    except RoverError as e:
        _fail(e, as_json)
        return

    if as_json:
        _emit(
            {
                "success": True,
                "tasks": [
                    {
                        **o.task.to_json(),
                        "iterationStatus": o.status.to_json() if o.status else None,
                    }
                    for o in overviews
                ],
            },
            True,
            "",
        )
        return

    if not overviews:
        click.echo("No tasks found")
        return

    for o in overviews:
        progress = ""
        if o.status is not None:
            progress = f" {o.status.progress}% {o.status.current_step}"
        click.echo(f"{o.task.id:>4}  {o.task.status.value:<12} {o.task.title}{progress}")


@rover.command("inspect")
@click.argument("task_id", type=int)
@click.option("--iteration", "-i", type=click.IntRange(min=1), default=None, help="Iteration number.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def inspect_command(ctx: click.Context, task_id: int, iteration: Optional[int], as_json: bool) -> None:
    """Show details of a task iteration."""
    try:
        inspection = _service(ctx).inspect_task(task_id, iteration)
    except RoverError as e:
        _fail(e, as_json)
        return

    task = inspection.task
    lines = [
        f"Task {task.id}: {task.title}",
        f"Status: {task.status.value}",
        f"Iteration: {inspection.iteration_number}/{task.iterations}",
        f"Workflow: {task.workflow_name}",
        f"Branch: {task.branch_name or '-'}",
        f"Worktree: {task.worktree_path or '-'}",
    ]
    if task.duration is not None:
        lines.append(f"Duration: {task.duration:.0f}s")
    if inspection.status is not None:
        lines.append(
            f"Progress: {inspection.status.progress}% ({inspection.status.status.value}, "
            f"{inspection.status.current_step})"
        )
        if inspection.status.error:
            lines.append(f"Error: {inspection.status.error}")
    if inspection.files:
        lines.append("Files: " + ", ".join(inspection.files))

    _emit(_inspection_json(inspection), as_json, "\n".join(lines))


@rover.command("logs")
@click.argument("task_id", type=int)
@click.option("--follow", "-f", is_flag=True, default=False, help="Stream logs until the container exits.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def logs_command(ctx: click.Context, task_id: int, follow: bool, as_json: bool) -> None:
    """Show the container logs of a task."""
    try:
        service = _service(ctx)
    except RoverError as e:
        _fail(e, as_json)
        return

    if follow:
        async def _follow() -> None:
            async for line in service.follow_task_logs(task_id):
                click.echo(line)

        try:
            asyncio.run(_follow())
        except RoverError as e:
            _fail(e, as_json)
        except KeyboardInterrupt:
            logger.debug("Stopped following logs")
        return

    try:
        output = asyncio.run(service.task_logs(task_id))
    except RoverError as e:
        _fail(e, as_json)
        return
    _emit({"success": True, "taskId": task_id, "logs": output}, as_json, output)


@rover.command("shell")
@click.argument("task_id", type=int)
@click.pass_context
def shell_command(ctx: click.Context, task_id: int) -> None:
    """Open a debugging shell over the task worktree."""
    try:
        code = asyncio.run(_service(ctx).open_shell(task_id))
    except RoverError as e:
        _fail(e, False)
        return
    raise SystemExit(code)


@rover.command("session")
@click.argument("task_id", type=int)
@click.argument("prompt", required=False)
@click.pass_context
def session_command(ctx: click.Context, task_id: int, prompt: Optional[str]) -> None:
    """Run the task's agent interactively in its sandbox."""
    try:
        code = asyncio.run(_service(ctx).run_session(task_id, prompt))
    except RoverError as e:
        _fail(e, False)
        return
    raise SystemExit(code)


if __name__ == "__main__":
    rover()
