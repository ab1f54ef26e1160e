"""Container sandboxes for task iterations.

- spec: backend-neutral mount/env/identity descriptors
- setup: files mounted into the container
- docker / podman: backend dialects of the shared Sandbox lifecycle
"""

from typing import TYPE_CHECKING, Optional

from rover.config import ProjectConfig, Settings, get_settings
from rover.core.task import TaskDescription
from rover.errors import BackendUnavailableError
from rover.sandbox.base import ContainerBackend, Sandbox
from rover.sandbox.docker import DockerSandbox
from rover.sandbox.podman import PodmanSandbox
from rover.sandbox.spec import ContainerSpec, ContainerSpecBuilder, EnvVar, Mount, UserIdentity

if TYPE_CHECKING:
    from rover.agents.base import AgentTool

SANDBOX_CLASSES: dict[ContainerBackend, type[Sandbox]] = {
    ContainerBackend.DOCKER: DockerSandbox,
    ContainerBackend.PODMAN: PodmanSandbox,
}


async def create_sandbox(
    task: TaskDescription,
    project_config: ProjectConfig,
    agent: "AgentTool",
    settings: Optional[Settings] = None,
) -> Sandbox:
    """Pick the forced backend, or the first available of Docker then Podman."""
    settings = settings or get_settings()

    if settings.backend:
        try:
            backend = ContainerBackend(settings.backend.lower())
        except ValueError as e:
            raise BackendUnavailableError(f"Unknown container backend: {settings.backend}") from e
        candidates = [backend]
    else:
        candidates = [ContainerBackend.DOCKER, ContainerBackend.PODMAN]

    for backend in candidates:
        sandbox = SANDBOX_CLASSES[backend](task, project_config, agent, settings)
        if await sandbox.is_backend_available():
            return sandbox

    names = " or ".join(b.value for b in candidates)
    raise BackendUnavailableError(f"No container backend available ({names} not found)")


__all__ = [
    "ContainerBackend",
    "ContainerSpec",
    "ContainerSpecBuilder",
    "DockerSandbox",
    "EnvVar",
    "Mount",
    "PodmanSandbox",
    "Sandbox",
    "UserIdentity",
    "create_sandbox",
]
