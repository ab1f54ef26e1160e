"""Docker backend."""

import json
import logging

from rover.errors import ContainerOperationError
from rover.sandbox.base import ContainerBackend, Sandbox
from rover.sandbox.spec import EnvVar, Mount

logger = logging.getLogger(__name__)


class DockerSandbox(Sandbox):
    backend = ContainerBackend.DOCKER

    async def is_backend_available(self) -> bool:
        try:
            output = await self._run(["info", "--format", "json"])
            info = json.loads(output or "{}")
        except (ContainerOperationError, json.JSONDecodeError) as e:
            logger.debug(f"docker is not available: {e}")
            return False
        # Podman aliased as docker has no ServerVersion
        return isinstance(info, dict) and info.get("ServerVersion") is not None

    def mount_args(self, mount: Mount) -> list[str]:
        return ["-v", mount.volume()]

    def env_args(self, env: EnvVar) -> list[str]:
        return ["-e", env.arg()]
