"""Sandbox lifecycle shared by every container backend.

Uses python-on-whales for container runtime interactions. Each backend only
decides how it detects its runtime and how a ContainerSpec is written as
CLI flags.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Optional

from python_on_whales import DockerClient, DockerException
from python_on_whales.utils import run

from rover.config import ProjectConfig, Settings, get_settings
from rover.core.iteration import IterationStore
from rover.core.task import TaskDescription
from rover.core.workspace import ensure_within_project
from rover.errors import ContainerOperationError, WorktreeError
from rover.sandbox.setup import SetupBuilder
from rover.sandbox.spec import (
    WORKSPACE_DIR,
    ContainerSpec,
    ContainerSpecBuilder,
    EnvVar,
    Mount,
)

if TYPE_CHECKING:
    from rover.agents.base import AgentTool

logger = logging.getLogger(__name__)


class ContainerBackend(str, Enum):
    """Supported container runtimes."""

    DOCKER = "docker"
    PODMAN = "podman"


class Sandbox(ABC):
    """
    One task iteration's container.

    State per instance: absent -> created -> running -> stopped -> absent.
    Nothing is persisted: the container name is derived from the task id
    and its current iteration number.
    """

    backend: ContainerBackend

    def __init__(
        self,
        task: TaskDescription,
        project_config: ProjectConfig,
        agent: "AgentTool",
        settings: Optional[Settings] = None,
    ):
        self.task = task
        self.project_config = project_config
        self.agent = agent
        self.settings = settings or get_settings()
        self.client = DockerClient(client_call=[self.binary])

    @property
    def binary(self) -> str:
        return self.backend.value

    @property
    def sandbox_name(self) -> str:
        return f"rover-task-{self.task.id}-{self.task.iterations}"

    # -------------------------------------------------------------------------
    # Backend dialect
    # -------------------------------------------------------------------------

    @abstractmethod
    async def is_backend_available(self) -> bool:
        """Whether the runtime is installed and really is this backend."""
        pass

    @abstractmethod
    def mount_args(self, mount: Mount) -> list[str]:
        pass

    @abstractmethod
    def env_args(self, env: EnvVar) -> list[str]:
        pass

    def serialize(self, spec: ContainerSpec) -> list[str]:
        """Flags and command for `create`/`run`, in mount and env order."""
        args = ["--user", spec.user.user_arg]
        for mount in spec.mounts:
            args.extend(self.mount_args(mount))
        for env in spec.env:
            args.extend(self.env_args(env))
        args.extend(["-w", spec.workdir, "--entrypoint", spec.entrypoint, spec.image])
        args.extend(spec.command)
        return args

    # -------------------------------------------------------------------------
    # Runtime calls
    # -------------------------------------------------------------------------

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking python-on-whales call off the event loop, with a timeout."""
        timeout = self.settings.backend_timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ContainerOperationError(
                f"{self.binary} call timed out after {timeout}s"
            ) from e
        except DockerException as e:
            raise ContainerOperationError(f"{self.binary} call failed: {e}") from e
        except OSError as e:
            raise ContainerOperationError(f"Failed to run {self.binary}: {e}") from e

    async def _run(self, args: list[str]) -> str:
        """Run a raw CLI invocation verbatim and return its stdout."""
        logger.debug(f"Running: {self.binary} {' '.join(args)}")
        output = await self._call(run, [self.binary, *args])
        return (output or "").strip()

    async def _run_attached(self, args: list[str], name: str) -> int:
        """Run with host stdio attached. Stops the container on interrupt."""
        proc = await asyncio.create_subprocess_exec(self.binary, *args)
        try:
            return await proc.wait()
        except (asyncio.CancelledError, KeyboardInterrupt):
            logger.info(f"Interrupted, stopping {name}")
            try:
                await self._call(self.client.container.stop, name)
            except ContainerOperationError as e:
                logger.warning(f"Failed to stop {name}: {e}")
            raise

    async def cat_file(self, image: str, path: str) -> str:
        """Contents of a file in `image`, or "" when it cannot be read."""
        try:
            output = await self._call(
                self.client.run,
                image,
                ["-c", f"/bin/cat {path}"],
                entrypoint="/bin/sh",
                remove=True,
            )
        except ContainerOperationError as e:
            logger.debug(f"Could not read {path} from {image}: {e}")
            return ""
        return (output or "").strip()

    # -------------------------------------------------------------------------
    # Spec
    # -------------------------------------------------------------------------

    async def build_spec(
        self,
        name: str,
        interactive: bool = False,
        initial_prompt: Optional[str] = None,
    ) -> ContainerSpec:
        ensure_within_project(self.task.worktree_path, self.project_config.project_root)

        iteration = IterationStore(self.task.task_dir, self.task.id).load(self.task.iterations)
        setup = SetupBuilder(self.task).build(iteration)
        builder = ContainerSpecBuilder(
            self.project_config,
            self.agent,
            self.cat_file,
            self.settings,
        )
        return await builder.build(
            name,
            self.task,
            iteration,
            setup,
            interactive=interactive,
            initial_prompt=initial_prompt,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create(self) -> str:
        spec = await self.build_spec(self.sandbox_name)

        # A stale container from an earlier run would block the name
        try:
            await self._call(self.client.container.remove, spec.name, force=True)
        except ContainerOperationError as e:
            logger.debug(f"No stale container {spec.name} to remove: {e}")

        output = await self._run(["create", "--name", spec.name, *self.serialize(spec)])
        return output or spec.name

    async def start(self) -> str:
        await self._call(self.client.container.start, self.sandbox_name)
        return self.sandbox_name

    async def stop(self) -> str:
        await self._call(self.client.container.stop, self.sandbox_name)
        return self.sandbox_name

    async def remove(self) -> str:
        await self._call(self.client.container.remove, self.sandbox_name, force=True)
        return self.sandbox_name

    async def create_and_start(self) -> str:
        """Create then start. A created container is not rolled back if start fails.

        Temporary credential files stay on the host after a successful start,
        the running container reads them from its mounts.
        """
        logger.info(f"Preparing sandbox ({self.binary}) {self.sandbox_name}")
        try:
            sandbox_id = await self.create()
            logger.info(f"Starting sandbox ({self.binary}) {self.sandbox_name}")
            await self.start()
        except Exception:
            self.agent.cleanup()
            raise
        return sandbox_id

    async def stop_and_remove(self) -> str:
        """Best-effort teardown: remove is attempted even if stop fails."""
        try:
            await self.stop()
            logger.info(f"Stopped sandbox {self.sandbox_name}")
        except ContainerOperationError as e:
            logger.warning(f"Failed to stop sandbox {self.sandbox_name}: {e}")

        try:
            await self.remove()
            logger.info(f"Removed sandbox {self.sandbox_name}")
        except ContainerOperationError as e:
            logger.warning(f"Failed to remove sandbox {self.sandbox_name}: {e}")

        return self.sandbox_name

    async def logs(self) -> str:
        return await self._call(self.client.container.logs, self.sandbox_name)

    async def follow_logs(self) -> AsyncIterator[str]:
        """Yield log lines until the container exits or the caller stops."""
        proc = await asyncio.create_subprocess_exec(
            self.binary,
            "logs",
            "--follow",
            self.sandbox_name,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                yield line.decode(errors="replace").rstrip("\n")
        finally:
            if proc.returncode is None:
                proc.terminate()
                await proc.wait()

    async def run_interactive(self, initial_prompt: Optional[str] = None) -> int:
        """Run an agent session attached to the terminal. Returns the exit code."""
        name = f"{self.sandbox_name}-i-{secrets.token_hex(4)}"
        try:
            spec = await self.build_spec(name, interactive=True, initial_prompt=initial_prompt)
            return await self._run_attached(
                ["run", "--name", name, "-it", "--rm", *self.serialize(spec)],
                name,
            )
        finally:
            self.agent.cleanup()

    async def open_shell_at_worktree(self) -> int:
        """Debugging shell over the task's worktree, in a throwaway container."""
        worktree = self.task.worktree_path
        if not worktree or not Path(worktree).exists():
            raise WorktreeError(f"No worktree found for task {self.task.id}")
        worktree_path = ensure_within_project(worktree, self.project_config.project_root)

        name = f"rover-shell-{self.task.id}-{secrets.token_hex(4)}"
        args = [
            "run",
            "--rm",
            "-it",
            "--name",
            name,
            *self.mount_args(Mount(worktree_path, WORKSPACE_DIR, read_only=False)),
            "-w",
            WORKSPACE_DIR,
            self.settings.shell_image,
            "/bin/sh",
        ]
        return await self._run_attached(args, name)
