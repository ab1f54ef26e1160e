"""Podman backend."""

import json
import logging

from rover.errors import ContainerOperationError
from rover.sandbox.base import ContainerBackend, Sandbox
from rover.sandbox.spec import EnvVar, Mount

logger = logging.getLogger(__name__)


class PodmanSandbox(Sandbox):
    backend = ContainerBackend.PODMAN

    async def is_backend_available(self) -> bool:
        try:
            output = await self._run(["info", "--format", "json"])
            info = json.loads(output or "{}")
        except (ContainerOperationError, json.JSONDecodeError) as e:
            logger.debug(f"podman is not available: {e}")
            return False
        return isinstance(info, dict) and "host" in info and "version" in info

    def mount_args(self, mount: Mount) -> list[str]:
        return ["--volume", mount.volume()]

    def env_args(self, env: EnvVar) -> list[str]:
        return ["--env", env.arg()]
