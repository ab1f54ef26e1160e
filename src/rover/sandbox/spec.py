"""Backend-neutral container descriptors.

ContainerSpecBuilder resolves the image, the host identity, the mounts, the
environment and the agent runtime command for one run. It never talks to a
container runtime directly: image files are read through a callback supplied
by the sandbox, and each backend serializes the resulting ContainerSpec into
its own flag dialect.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from dotenv import dotenv_values

from rover.config import DEFAULT_AGENT_IMAGE, ProjectConfig, Settings, get_settings
from rover.core.iteration import ITERATION_FILENAME, IterationConfig
from rover.core.status import STATUS_FILENAME
from rover.core.task import TaskDescription
from rover.core.workspace import ensure_within_project

if TYPE_CHECKING:
    from rover.agents.base import AgentTool
    from rover.sandbox.setup import SetupFiles

logger = logging.getLogger(__name__)

FALLBACK_ID = 1000
AGENT_USERNAME = "agent"

# Container-side paths
WORKSPACE_DIR = "/workspace"
OUTPUT_DIR = "/output"
ENTRYPOINT = "/entrypoint.sh"
WORKFLOW_FILE = "/workflow.yml"
INPUTS_FILE = "/inputs.json"
DESCRIPTION_FILE = "/task/description.json"
INIT_SCRIPT = "/init-script.sh"

ImageFileReader = Callable[[str, str], Awaitable[str]]


# =============================================================================
# Descriptors
# =============================================================================


@dataclass(frozen=True)
class Mount:
    """A bind mount. SELinux relabeling (:Z) is on by default."""

    source: Path
    target: str
    read_only: bool = True
    relabel: bool = True

    @property
    def options(self) -> str:
        opts = ["Z"] if self.relabel else []
        opts.append("ro" if self.read_only else "rw")
        return ",".join(opts)

    def volume(self) -> str:
        return f"{self.source}:{self.target}:{self.options}"


@dataclass(frozen=True)
class EnvVar:
    """An environment entry. Without a value the host variable is passed through."""

    name: str
    value: Optional[str] = None

    def arg(self) -> str:
        if self.value is None:
            return self.name
        return f"{self.name}={self.value}"


@dataclass(frozen=True)
class UserIdentity:
    uid: int
    gid: int
    username: str = AGENT_USERNAME
    groupname: str = AGENT_USERNAME

    @property
    def user_arg(self) -> str:
        return f"{self.uid}:{self.gid}"


@dataclass
class ContainerSpec:
    """Everything a backend needs to create one sandbox container."""

    name: str
    image: str
    user: UserIdentity
    mounts: list[Mount] = field(default_factory=list)
    env: list[EnvVar] = field(default_factory=list)
    workdir: str = WORKSPACE_DIR
    entrypoint: str = ENTRYPOINT
    command: list[str] = field(default_factory=list)
    interactive: bool = False


# =============================================================================
# Image resolution
# =============================================================================


def resolve_agent_image(
    override: Optional[str] = None,
    task_image: Optional[str] = None,
    project_image: Optional[str] = None,
) -> str:
    """Environment override > task image > project image > default."""
    return override or task_image or project_image or DEFAULT_AGENT_IMAGE


def is_custom_image(image: str) -> bool:
    return image != DEFAULT_AGENT_IMAGE


def warn_if_custom_image(image: str) -> None:
    if is_custom_image(image):
        logger.warning(
            f"Using custom agent image {image}. This might have side effects "
            f"if it is incompatible with the reference image {DEFAULT_AGENT_IMAGE}"
        )


# =============================================================================
# Host identity and /etc/passwd, /etc/group reconciliation
# =============================================================================


def host_identity() -> tuple[int, int]:
    """Host uid/gid, or 1000/1000 where there is no POSIX identity."""
    getuid = getattr(os, "getuid", None)
    getgid = getattr(os, "getgid", None)
    uid = getuid() if getuid else -1
    gid = getgid() if getgid else -1
    return (uid if uid >= 0 else FALLBACK_ID, gid if gid >= 0 else FALLBACK_ID)


def parse_uid_map(content: str) -> dict[int, str]:
    """Map the third field of passwd/group lines to the first one."""
    ids = {}
    for line in content.splitlines():
        if not line.strip():
            continue
        fields = line.split(":")
        if len(fields) < 3:
            continue
        try:
            ids[int(fields[2])] = fields[0]
        except ValueError:
            continue
    return ids


def reconcile_passwd(content: str, uid: int, gid: int) -> tuple[str, str]:
    """Return the passwd to mount and the user name for `uid`."""
    existing = parse_uid_map(content)
    if uid in existing:
        return content, existing[uid]
    entry = f"{AGENT_USERNAME}:x:{uid}:{gid}:{AGENT_USERNAME}:/home/{AGENT_USERNAME}:/bin/sh"
    return f"{content}\n{entry}\n", AGENT_USERNAME


def reconcile_group(content: str, gid: int) -> tuple[str, str]:
    """Return the group file to mount and the group name for `gid`."""
    existing = parse_uid_map(content)
    if gid in existing:
        return content, existing[gid]
    entry = f"{AGENT_USERNAME}:x:{gid}:{AGENT_USERNAME}"
    return f"{content}\n{entry}\n", AGENT_USERNAME


# =============================================================================
# Environment layering
# =============================================================================


def parse_custom_env(entries: list[str]) -> list[EnvVar]:
    """Parse project `envs` entries: NAME (pass-through) or NAME=value."""
    env = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        name, sep, value = entry.partition("=")
        name = name.strip()
        if not name:
            logger.warning(f"Ignoring invalid environment entry {entry!r}")
            continue
        env.append(EnvVar(name, value if sep else None))
    return env


def load_env_file(path: Path) -> list[EnvVar]:
    """Entries of a dotenv file, in file order."""
    if not path.is_file():
        logger.warning(f"Environment file {path} does not exist")
        return []
    return [EnvVar(name, value) for name, value in dotenv_values(path).items()]


def layer_environment(*layers: list[EnvVar]) -> list[EnvVar]:
    """Concatenate layers in order, keeping duplicates.

    The container runtime applies the last occurrence of a name, so later
    layers win without any merging here.
    """
    env: list[EnvVar] = []
    for layer in layers:
        env.extend(layer)
    return env


def project_environment(project_config: ProjectConfig) -> list[EnvVar]:
    env = parse_custom_env(project_config.envs)
    if project_config.envs_file_path is not None:
        env.extend(load_env_file(project_config.envs_file_path))
    return env


# =============================================================================
# Builder
# =============================================================================


def pre_context_target(index: int) -> str:
    return f"/__pre_context_{index}__.json"


class ContainerSpecBuilder:
    """Computes the ContainerSpec for one task iteration."""

    def __init__(
        self,
        project_config: ProjectConfig,
        agent: "AgentTool",
        read_image_file: ImageFileReader,
        settings: Optional[Settings] = None,
    ):
        self.project_config = project_config
        self.agent = agent
        self.read_image_file = read_image_file
        self.settings = settings or get_settings()

    def resolve_image(self, task: TaskDescription) -> str:
        return resolve_agent_image(
            self.settings.agent_image,
            task.agent_image,
            self.project_config.agent_image,
        )

    async def resolve_user(self, image: str, files_dir: Path) -> tuple[UserIdentity, list[Mount]]:
        """Reconcile the image's passwd/group with the host identity.

        Writes the reconciled files under `files_dir` and returns the mounts
        that place them over /etc/passwd and /etc/group.
        """
        uid, gid = host_identity()
        passwd, username = reconcile_passwd(
            await self.read_image_file(image, "/etc/passwd"), uid, gid
        )
        group, groupname = reconcile_group(await self.read_image_file(image, "/etc/group"), gid)

        files_dir.mkdir(parents=True, exist_ok=True)
        passwd_path = files_dir / "passwd"
        group_path = files_dir / "group"
        passwd_path.write_text(passwd, encoding="utf-8")
        group_path.write_text(group, encoding="utf-8")

        user = UserIdentity(uid, gid, username, groupname)
        mounts = [
            Mount(passwd_path, "/etc/passwd", read_only=True),
            Mount(group_path, "/etc/group", read_only=True),
        ]
        return user, mounts

    def environment(self) -> list[EnvVar]:
        return layer_environment(self.agent.environment(), project_environment(self.project_config))

    def init_script_mount(self) -> Optional[Mount]:
        path = self.project_config.init_script_path
        if path is None:
            return None
        if not path.is_file():
            logger.warning(f"initScript '{self.project_config.init_script}' does not exist")
            return None
        return Mount(path, INIT_SCRIPT, read_only=True)

    def run_command(self, task: TaskDescription, pre_context_count: int) -> list[str]:
        command = [
            "rover-agent",
            "run",
            WORKFLOW_FILE,
            "--agent-tool",
            self.agent.name,
            "--task-id",
            str(task.id),
            "--status-file",
            f"{OUTPUT_DIR}/{STATUS_FILENAME}",
            "--output",
            OUTPUT_DIR,
            "--inputs-json",
            INPUTS_FILE,
        ]
        if self.settings.verbose:
            command.append("-v")
        for index in range(pre_context_count):
            command.extend(["--pre-context-file", pre_context_target(index)])
        return command

    def session_command(self, pre_context_count: int, initial_prompt: Optional[str]) -> list[str]:
        command = ["rover-agent", "session", self.agent.name]
        if initial_prompt:
            command.append(initial_prompt)
        if self.settings.verbose:
            command.append("-v")
        for index in range(pre_context_count):
            command.extend(["--pre-context-file", pre_context_target(index)])
        return command

    async def build(
        self,
        name: str,
        task: TaskDescription,
        iteration: IterationConfig,
        setup: "SetupFiles",
        interactive: bool = False,
        initial_prompt: Optional[str] = None,
    ) -> ContainerSpec:
        """Assemble the descriptor for one run.

        The worktree is checked first so that a task pointing outside the
        project never reaches the container runtime.
        """
        worktree = ensure_within_project(task.worktree_path, self.project_config.project_root)

        image = self.resolve_image(task)
        warn_if_custom_image(image)

        user, identity_mounts = await self.resolve_user(image, setup.directory)

        mounts = [
            *identity_mounts,
            Mount(worktree, WORKSPACE_DIR, read_only=False),
            Mount(iteration.iteration_path, OUTPUT_DIR, read_only=False),
            *self.agent.container_mounts(),
            Mount(setup.entrypoint, ENTRYPOINT, read_only=True),
        ]

        if not interactive:
            mounts.extend(
                [
                    Mount(setup.workflow, WORKFLOW_FILE, read_only=True),
                    Mount(setup.inputs, INPUTS_FILE, read_only=True),
                    Mount(
                        iteration.iteration_path / ITERATION_FILENAME,
                        DESCRIPTION_FILE,
                        read_only=True,
                    ),
                ]
            )

        for index, path in enumerate(setup.pre_context):
            mounts.append(Mount(path, pre_context_target(index), read_only=True))

        if not interactive:
            init_script = self.init_script_mount()
            if init_script is not None:
                mounts.append(init_script)

        if interactive:
            command = self.session_command(len(setup.pre_context), initial_prompt)
        else:
            command = self.run_command(task, len(setup.pre_context))

        return ContainerSpec(
            name=name,
            image=image,
            user=user,
            mounts=mounts,
            env=self.environment(),
            command=command,
            interactive=interactive,
        )
